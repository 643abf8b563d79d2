"""Ledger-level discrepancy detection, independent of any reconciliation run.

Each detector scans one ledger table (donations, event orders) against the
``payments`` table it links to through ``payment_id``. Detection is read-only;
``reconcile_one``/``reconcile_all`` are the only writers and only ever copy an
authoritative payment status onto the ledger row.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine, Row

logger = logging.getLogger(__name__)

AUTHORITATIVE_PAYMENT_STATUSES = frozenset({"paid", "failed", "refunded"})


class DetectorError(RuntimeError):
    """A single ledger row could not be evaluated."""


class LedgerRecordNotFoundError(LookupError):
    """No ledger row with the given id."""


def _money(value: Any) -> Decimal:  # noqa: ANN401
    if value is None:
        msg = "amount is missing"
        raise DetectorError(msg)
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        msg = f"unreadable amount {value!r}"
        raise DetectorError(msg) from None


def _count(value: Any, name: str) -> int:  # noqa: ANN401
    try:
        return int(value)
    except (TypeError, ValueError):
        msg = f"unreadable {name} {value!r}"
        raise DetectorError(msg) from None


class DiscrepancyDetector:
    """Base class; subclasses name their table and secondary check."""

    entity: ClassVar[str]
    table: ClassVar[str]
    id_key: ClassVar[str]
    amount_column: ClassVar[str]
    payable_type: ClassVar[str]
    secondary_bucket: ClassVar[str]

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _extra_columns(self) -> str:
        return ""

    def _secondary(
        self, row: Row[Any], payment_status: str | None
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    def _select(self, where: str = "") -> str:
        return f"""
            SELECT l.id, l.reference, l.{self.amount_column} AS amount, l.status,
                   l.payment_id, p.id AS p_id, p.payable_type AS p_type,
                   p.status AS p_status, p.amount AS p_amount
                   {self._extra_columns()}
            FROM {self.table} l
            LEFT JOIN payments p ON p.id = l.payment_id
            {where}
            ORDER BY l.id
        """  # noqa: S608

    def _linked_payment(self, row: Row[Any]) -> bool:
        """Whether the row links to a readable payment of the right type.

        Raises:
            DetectorError: If the link dangles or points at another entity
        """
        if row.payment_id is None:
            return False
        if row.p_id is None:
            msg = f"linked payment {row.payment_id} not found"
            raise DetectorError(msg)
        if row.p_type != self.payable_type:
            msg = (
                f"linked payment {row.payment_id} belongs to {row.p_type}, "
                f"not {self.payable_type}"
            )
            raise DetectorError(msg)
        return True

    def detect_discrepancies(self) -> dict[str, Any]:
        """Classify every ledger row into discrepancy buckets.

        A row that cannot be evaluated becomes an ``errors`` entry and the scan
        continues. Output is ordered by ledger id.
        """
        report: dict[str, Any] = {
            "entity": self.entity,
            "missing_payments": [],
            "amount_mismatches": [],
            self.secondary_bucket: [],
            "errors": [],
        }

        with self.engine.connect() as conn:
            rows = conn.execute(text(self._select())).fetchall()

        for row in rows:
            try:
                self._classify(row, report)
            except DetectorError as e:
                logger.error(
                    "%s discrepancy check failed for %s=%s: %s",
                    self.entity,
                    self.id_key,
                    row.id,
                    e,
                )
                report["errors"].append({self.id_key: row.id, "error": str(e)})

        return report

    def _classify(self, row: Row[Any], report: dict[str, Any]) -> None:
        # All checks run before any bucket is written
        amount = _money(row.amount)
        linked = self._linked_payment(row)
        payment_amount = _money(row.p_amount) if linked else None
        issue = self._secondary(row, row.p_status if linked else None)

        if not linked and row.status == "paid":
            report["missing_payments"].append({
                self.id_key: row.id,
                "reference": row.reference,
                "amount": str(amount),
            })
        if payment_amount is not None and payment_amount != amount:
            report["amount_mismatches"].append({
                self.id_key: row.id,
                "reference": row.reference,
                f"{self.entity_label}_amount": str(amount),
                "payment_amount": str(payment_amount),
            })

        if issue is not None:
            report[self.secondary_bucket].append(issue)

    @property
    def entity_label(self) -> str:
        return self.id_key.removesuffix("_id")

    def reconcile_one(self, conn: Connection, record_id: int) -> bool:
        """Pull an authoritative payment status onto one ledger row.

        Runs in the caller's transaction.

        Returns:
            True if the ledger row changed; False when already consistent,
            unpaid-for, or the payment status is not authoritative

        Raises:
            LedgerRecordNotFoundError: If the row does not exist
            DetectorError: If the linked payment cannot be read
        """
        row = conn.execute(
            text(self._select("WHERE l.id = :record_id")),
            {"record_id": record_id},
        ).fetchone()
        if row is None:
            msg = f"{self.entity} record not found: {record_id}"
            raise LedgerRecordNotFoundError(msg)

        if not self._linked_payment(row):
            return False

        if _money(row.p_amount) != _money(row.amount):
            logger.warning(
                "%s amount mismatch for %s=%s: ledger %s, payment %s",
                self.entity,
                self.id_key,
                row.id,
                row.amount,
                row.p_amount,
            )

        if row.p_status not in AUTHORITATIVE_PAYMENT_STATUSES:
            return False
        if row.status == row.p_status:
            return False

        self._set_status(conn, row.id, row.p_status)
        logger.info(
            "%s %s=%s status %s -> %s",
            self.entity,
            self.id_key,
            row.id,
            row.status,
            row.p_status,
        )
        return True

    def _set_status(self, conn: Connection, record_id: int, status: str) -> None:
        conn.execute(
            text(f"UPDATE {self.table} SET status = :status WHERE id = :id"),  # noqa: S608, E501
            {"status": status, "id": record_id},
        )

    def reconcile_all(self) -> dict[str, Any]:
        """Heal every pending row, each in its own transaction."""
        with self.engine.connect() as conn:
            pending = [
                row[0]
                for row in conn.execute(
                    text(
                        f"SELECT id FROM {self.table} "  # noqa: S608
                        "WHERE status = 'pending' ORDER BY id"
                    )
                ).fetchall()
            ]

        results: dict[str, Any] = {
            "entity": self.entity,
            "total_checked": len(pending),
            "reconciled": 0,
            "unchanged": 0,
            "errors": [],
        }
        for record_id in pending:
            try:
                with self.engine.begin() as conn:
                    changed = self.reconcile_one(conn, record_id)
            except (DetectorError, SQLAlchemyError) as e:
                logger.error(
                    "%s reconciliation error for %s=%s: %s",
                    self.entity,
                    self.id_key,
                    record_id,
                    e,
                )
                results["errors"].append({self.id_key: record_id, "error": str(e)})
                continue
            results["reconciled" if changed else "unchanged"] += 1
        return results

    def summary(self) -> dict[str, Any]:
        """Counts and totals per ledger status."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(f"""
                    SELECT status, COUNT(*) AS n,
                           COALESCE(SUM({self.amount_column}), 0) AS total
                    FROM {self.table}
                    GROUP BY status
                    ORDER BY status
                """)  # noqa: S608
            ).fetchall()

        by_status = {
            row.status: {"count": int(row.n), "amount": str(_money(row.total))}
            for row in rows
        }
        return {
            "entity": self.entity,
            "total_count": sum(s["count"] for s in by_status.values()),
            "by_status": by_status,
        }


class DonationDetector(DiscrepancyDetector):
    entity = "donations"
    table = "donations"
    id_key = "donation_id"
    amount_column = "amount"
    payable_type = "donation"
    secondary_bucket = "status_mismatches"

    def _secondary(
        self, row: Row[Any], payment_status: str | None
    ) -> dict[str, Any] | None:
        if payment_status not in AUTHORITATIVE_PAYMENT_STATUSES:
            return None
        if row.status == payment_status:
            return None
        return {
            "donation_id": row.id,
            "reference": row.reference,
            "donation_status": row.status,
            "payment_status": payment_status,
        }


class EventOrderDetector(DiscrepancyDetector):
    entity = "event_orders"
    table = "event_orders"
    id_key = "order_id"
    amount_column = "total_amount"
    payable_type = "event_order"
    secondary_bucket = "quantity_issues"

    def _extra_columns(self) -> str:
        return (
            ", l.quantity, l.unit_price, (SELECT COUNT(*) FROM event_tickets t "
            "WHERE t.order_id = l.id) AS tickets_issued"
        )

    def _secondary(  # noqa: ARG002
        self, row: Row[Any], payment_status: str | None
    ) -> dict[str, Any] | None:
        if row.status != "paid":
            return None
        quantity = None if row.quantity is None else _count(row.quantity, "quantity")
        tickets_issued = _count(row.tickets_issued, "tickets_issued")
        if quantity is None or quantity <= 0:
            problem = "non_positive_quantity"
        elif tickets_issued != quantity:
            problem = "tickets_issued_mismatch"
        elif _money(row.unit_price) * quantity != _money(row.amount):
            problem = "total_mismatch"
        else:
            return None
        return {
            "order_id": row.id,
            "reference": row.reference,
            "quantity": quantity,
            "tickets_issued": tickets_issued,
            "issue": problem,
        }


DETECTORS: dict[str, type[DiscrepancyDetector]] = {
    DonationDetector.entity: DonationDetector,
    EventOrderDetector.entity: EventOrderDetector,
}
