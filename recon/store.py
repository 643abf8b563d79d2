"""Run/Item store: auditable history of reconciliation runs.

All functions take a SQLAlchemy Connection and never commit; the caller owns
the transaction (``with engine.begin() as conn``). Works on Postgres and SQLite.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from sqlalchemy.engine import Connection, Row

    from recon.tolerance import ToleranceConfig

CENTS = Decimal("0.01")


class RunStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class Source(StrEnum):
    APP = "app"
    GATEWAY = "gateway"


class ItemStatus(StrEnum):
    MATCHED = "matched"
    UNMATCHED_APP = "unmatched_app"
    UNMATCHED_GATEWAY = "unmatched_gateway"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCESS, RunStatus.FAILED})


class RunNotFoundError(LookupError):
    """No live run with the given identifier."""


class RunStateError(RuntimeError):
    """The run is not in a state that allows the requested operation."""


class ItemError(ValueError):
    """An item's source, status and match reference are inconsistent."""


@dataclass(frozen=True)
class Run:
    id: int
    run_id: str
    status: RunStatus
    started_at: str
    completed_at: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    total_matched: int = 0
    total_unmatched_app: int = 0
    total_unmatched_gateway: int = 0
    total_app_amount: Decimal = Decimal("0.00")
    total_gateway_amount: Decimal = Decimal("0.00")
    error_message: str | None = None
    created_by: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": str(self.status),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "period_start": _iso_or_none(self.period_start),
            "period_end": _iso_or_none(self.period_end),
            "created_by": self.created_by,
            "error_message": self.error_message,
            "metadata": self.metadata,
            "summary": run_summary(self),
        }


@dataclass(frozen=True)
class Item:
    id: int
    reconciliation_run_id: int
    source: Source
    amount: Decimal
    reconciliation_status: ItemStatus
    transaction_id: str | None = None
    reference: str | None = None
    currency: str | None = None
    transaction_date: date | None = None
    match_reference: str | None = None
    match_rule: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Page:
    runs: list[Run]
    page: int
    per_page: int
    total: int

    @property
    def pages(self) -> int:
        return max(1, -(-self.total // self.per_page))


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _iso_or_none(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def new_run_id() -> str:
    """Opaque identifier that sorts lexicographically by creation time."""
    return f"{datetime.now(UTC):%Y%m%d%H%M%S%f}-{uuid.uuid4().hex[:12]}"


def _decimal(value: Any) -> Decimal:  # noqa: ANN401
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS)


def _as_date(value: Any) -> date | None:  # noqa: ANN401
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _as_timestamp(value: Any) -> str | None:  # noqa: ANN401
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _load_json(value: Any) -> dict[str, Any]:  # noqa: ANN401
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    return dict(json.loads(value))


def _dump_json(value: Mapping[str, Any] | None) -> str | None:
    if not value:
        return None
    return json.dumps(value, sort_keys=True, default=str)


_RUN_COLUMNS = """
    id, run_id, status, started_at, completed_at, period_start, period_end,
    total_matched, total_unmatched_app, total_unmatched_gateway,
    total_app_amount, total_gateway_amount, error_message, created_by, metadata
"""

_ITEM_COLUMNS = """
    id, reconciliation_run_id, source, transaction_id, reference, amount,
    currency, transaction_date, reconciliation_status, match_reference,
    match_rule, metadata
"""


def _row_to_run(row: Row[Any]) -> Run:
    return Run(
        id=int(row.id),
        run_id=row.run_id,
        status=RunStatus(row.status),
        started_at=_as_timestamp(row.started_at) or "",
        completed_at=_as_timestamp(row.completed_at),
        period_start=_as_date(row.period_start),
        period_end=_as_date(row.period_end),
        total_matched=int(row.total_matched or 0),
        total_unmatched_app=int(row.total_unmatched_app or 0),
        total_unmatched_gateway=int(row.total_unmatched_gateway or 0),
        total_app_amount=_decimal(row.total_app_amount),
        total_gateway_amount=_decimal(row.total_gateway_amount),
        error_message=row.error_message,
        created_by=row.created_by,
        metadata=_load_json(row.metadata),
    )


def _row_to_item(row: Row[Any]) -> Item:
    return Item(
        id=int(row.id),
        reconciliation_run_id=int(row.reconciliation_run_id),
        source=Source(row.source),
        transaction_id=row.transaction_id,
        reference=row.reference,
        amount=_decimal(row.amount),
        currency=row.currency,
        transaction_date=_as_date(row.transaction_date),
        reconciliation_status=ItemStatus(row.reconciliation_status),
        match_reference=row.match_reference,
        match_rule=row.match_rule,
        metadata=_load_json(row.metadata),
    )


def create_run(
    conn: Connection,
    *,
    tolerance: ToleranceConfig,
    created_by: str | None = None,
    period_start: date | None = None,
    period_end: date | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> Run:
    """Insert a new run in ``running`` status with a tolerance snapshot."""
    run_id = new_run_id()
    conn.execute(
        text("""
            INSERT INTO reconciliation_runs (
                run_id, status, started_at, period_start, period_end,
                created_by, metadata
            )
            VALUES (
                :run_id, :status, :started_at, :period_start, :period_end,
                :created_by, :metadata
            )
        """),
        {
            "run_id": run_id,
            "status": RunStatus.RUNNING.value,
            "started_at": _now(),
            "period_start": _iso_or_none(period_start),
            "period_end": _iso_or_none(period_end),
            "created_by": created_by,
            "metadata": _dump_json({
                **(metadata or {}),
                "tolerance": tolerance.as_dict(),
            }),
        },
    )
    return get_run(conn, run_id)


def _validate_item(item: Mapping[str, Any]) -> None:
    """Enforce source/status consistency and match-reference presence.

    Raises:
        ItemError: If the combination is not allowed
    """
    try:
        source = Source(item["source"])
        status = ItemStatus(item["reconciliation_status"])
    except (KeyError, ValueError) as e:
        msg = f"invalid item source/status: {e}"
        raise ItemError(msg) from None

    if source is Source.APP and status is ItemStatus.UNMATCHED_GATEWAY:
        msg = "an app item cannot be unmatched_gateway"
        raise ItemError(msg)
    if source is Source.GATEWAY and status is ItemStatus.UNMATCHED_APP:
        msg = "a gateway item cannot be unmatched_app"
        raise ItemError(msg)

    has_reference = bool(item.get("match_reference"))
    if status is ItemStatus.MATCHED and not has_reference:
        msg = "matched items require a match_reference"
        raise ItemError(msg)
    if status is not ItemStatus.MATCHED and has_reference:
        msg = "only matched items carry a match_reference"
        raise ItemError(msg)
    if item.get("amount") is None:
        msg = "amount is required"
        raise ItemError(msg)


def _item_params(run: Run, item: Mapping[str, Any]) -> dict[str, Any]:
    _validate_item(item)
    return {
        "run_pk": run.id,
        "source": str(Source(item["source"])),
        "transaction_id": item.get("transaction_id"),
        "reference": item.get("reference"),
        "amount": Decimal(str(item["amount"])),
        "currency": item.get("currency"),
        "transaction_date": _iso_or_none(_as_date(item.get("transaction_date"))),
        "status": str(ItemStatus(item["reconciliation_status"])),
        "match_reference": item.get("match_reference"),
        "match_rule": item.get("match_rule"),
        "metadata": _dump_json(item.get("metadata")),
        "created_at": _now(),
    }


_INSERT_ITEM = text("""
    INSERT INTO reconciliation_items (
        reconciliation_run_id, source, transaction_id, reference, amount,
        currency, transaction_date, reconciliation_status, match_reference,
        match_rule, metadata, created_at
    )
    VALUES (
        :run_pk, :source, :transaction_id, :reference, :amount,
        :currency, :transaction_date, :status, :match_reference,
        :match_rule, :metadata, :created_at
    )
""")


def _require_running(run: Run) -> None:
    if run.status is not RunStatus.RUNNING:
        msg = f"run {run.run_id} is {run.status}; items can only be added while running"
        raise RunStateError(msg)


def add_item(conn: Connection, run: Run, item: Mapping[str, Any]) -> Item:
    """Insert one item; the caller decides its reconciliation status."""
    _require_running(run)
    conn.execute(_INSERT_ITEM, _item_params(run, item))
    row = conn.execute(
        text(f"""
            SELECT {_ITEM_COLUMNS} FROM reconciliation_items
            WHERE id = (
                SELECT MAX(id) FROM reconciliation_items
                WHERE reconciliation_run_id = :run_pk
            )
        """),  # noqa: S608
        {"run_pk": run.id},
    ).one()
    return _row_to_item(row)


def add_items(conn: Connection, run: Run, items: Iterable[Mapping[str, Any]]) -> int:
    """Bulk insert items for a run; returns the number written."""
    _require_running(run)
    params = [_item_params(run, item) for item in items]
    if params:
        conn.execute(_INSERT_ITEM, params)
    return len(params)


def _check_pairs(conn: Connection, run: Run) -> None:
    """Every match reference must join exactly one app and one gateway item."""
    bad = conn.execute(
        text("""
            SELECT match_reference
            FROM reconciliation_items
            WHERE reconciliation_run_id = :run_pk
              AND reconciliation_status = 'matched'
              AND deleted_at IS NULL
            GROUP BY match_reference
            HAVING COUNT(*) != 2
                OR SUM(CASE WHEN source = 'app' THEN 1 ELSE 0 END) != 1
            ORDER BY match_reference
        """),
        {"run_pk": run.id},
    ).fetchall()
    if bad:
        refs = ", ".join(str(row[0]) for row in bad)
        msg = f"match references not shared by exactly one app/gateway pair: {refs}"
        raise ItemError(msg)


def _compute_totals(conn: Connection, run: Run) -> dict[str, Any]:
    rows = conn.execute(
        text("""
            SELECT source, reconciliation_status, COUNT(*) AS n,
                   COALESCE(SUM(amount), 0) AS total
            FROM reconciliation_items
            WHERE reconciliation_run_id = :run_pk AND deleted_at IS NULL
            GROUP BY source, reconciliation_status
        """),
        {"run_pk": run.id},
    ).fetchall()

    matched_pairs = conn.execute(
        text("""
            SELECT COUNT(DISTINCT match_reference)
            FROM reconciliation_items
            WHERE reconciliation_run_id = :run_pk
              AND reconciliation_status = 'matched'
              AND deleted_at IS NULL
        """),
        {"run_pk": run.id},
    ).scalar()

    totals: dict[str, Any] = {
        "total_matched": int(matched_pairs or 0),
        "total_unmatched_app": 0,
        "total_unmatched_gateway": 0,
        "total_app_amount": Decimal("0.00"),
        "total_gateway_amount": Decimal("0.00"),
    }
    for source, status, count, amount in rows:
        if status == ItemStatus.UNMATCHED_APP:
            totals["total_unmatched_app"] += int(count)
        elif status == ItemStatus.UNMATCHED_GATEWAY:
            totals["total_unmatched_gateway"] += int(count)
        totals[f"total_{source}_amount"] += _decimal(amount)
    return totals


def mark_completed(
    conn: Connection,
    run: Run,
    status: RunStatus | str,
    error_message: str | None = None,
) -> Run:
    """Move a running run to a terminal status and derive its counters.

    Counters are recomputed from the persisted items, never carried over.

    Raises:
        ValueError: If status is not success or failed
        RunStateError: If the run is no longer running
        ItemError: If a successful run holds a broken pair
    """
    status = RunStatus(status)
    if status not in TERMINAL_STATUSES:
        msg = f"completion status must be success or failed, got {status}"
        raise ValueError(msg)

    if status is RunStatus.SUCCESS:
        _check_pairs(conn, run)
    totals = _compute_totals(conn, run)

    result = conn.execute(
        text("""
            UPDATE reconciliation_runs
            SET status = :status,
                completed_at = :completed_at,
                error_message = :error_message,
                total_matched = :total_matched,
                total_unmatched_app = :total_unmatched_app,
                total_unmatched_gateway = :total_unmatched_gateway,
                total_app_amount = :total_app_amount,
                total_gateway_amount = :total_gateway_amount
            WHERE id = :run_pk AND status = 'running' AND deleted_at IS NULL
        """),
        {
            "run_pk": run.id,
            "status": status.value,
            "completed_at": _now(),
            "error_message": error_message,
            **totals,
        },
    )
    if result.rowcount == 0:
        msg = f"run {run.run_id} is not running; it cannot be completed again"
        raise RunStateError(msg)
    return get_run(conn, run.run_id)


def delete_run(conn: Connection, run_id: str) -> bool:
    """Soft-delete a run and all its items in the caller's transaction.

    Returns:
        False if the run does not exist or was already deleted
    """
    run_pk = conn.execute(
        text(
            "SELECT id FROM reconciliation_runs "
            "WHERE run_id = :run_id AND deleted_at IS NULL"
        ),
        {"run_id": run_id},
    ).scalar()
    if run_pk is None:
        return False

    deleted_at = _now()
    conn.execute(
        text(
            "UPDATE reconciliation_runs SET deleted_at = :deleted_at WHERE id = :run_pk"
        ),
        {"deleted_at": deleted_at, "run_pk": run_pk},
    )
    conn.execute(
        text("""
            UPDATE reconciliation_items SET deleted_at = :deleted_at
            WHERE reconciliation_run_id = :run_pk AND deleted_at IS NULL
        """),
        {"deleted_at": deleted_at, "run_pk": run_pk},
    )
    return True


def get_run(conn: Connection, run_id: str) -> Run:
    """Fetch a live run by its external identifier.

    Raises:
        RunNotFoundError: If no live run has that identifier
    """
    row = conn.execute(
        text(f"""
            SELECT {_RUN_COLUMNS} FROM reconciliation_runs
            WHERE run_id = :run_id AND deleted_at IS NULL
        """),  # noqa: S608
        {"run_id": run_id},
    ).fetchone()
    if row is None:
        msg = f"Reconciliation run not found: {run_id}"
        raise RunNotFoundError(msg)
    return _row_to_run(row)


def list_runs(
    conn: Connection,
    *,
    page: int = 1,
    per_page: int = 20,
    status: RunStatus | str | None = None,
) -> Page:
    """Newest-first page of live runs, optionally filtered by status."""
    if page < 1 or per_page < 1:
        msg = "page and per_page must be positive"
        raise ValueError(msg)
    status_value = RunStatus(status).value if status is not None else None
    params = {"status": status_value}

    total = conn.execute(
        text("""
            SELECT COUNT(*) FROM reconciliation_runs
            WHERE deleted_at IS NULL
              AND (CAST(:status AS TEXT) IS NULL OR status = :status)
        """),
        params,
    ).scalar()

    rows = conn.execute(
        text(f"""
            SELECT {_RUN_COLUMNS} FROM reconciliation_runs
            WHERE deleted_at IS NULL
              AND (CAST(:status AS TEXT) IS NULL OR status = :status)
            ORDER BY id DESC
            LIMIT :limit OFFSET :offset
        """),  # noqa: S608
        {**params, "limit": per_page, "offset": (page - 1) * per_page},
    ).fetchall()

    return Page(
        runs=[_row_to_run(row) for row in rows],
        page=page,
        per_page=per_page,
        total=int(total or 0),
    )


def get_items(
    conn: Connection, run: Run, status: ItemStatus | str | None = None
) -> list[Item]:
    """Live items of a run in insertion order, optionally filtered by status."""
    status_value = ItemStatus(status).value if status is not None else None
    rows = conn.execute(
        text(f"""
            SELECT {_ITEM_COLUMNS} FROM reconciliation_items
            WHERE reconciliation_run_id = :run_pk
              AND deleted_at IS NULL
              AND (
                CAST(:status AS TEXT) IS NULL OR reconciliation_status = :status
              )
            ORDER BY id
        """),  # noqa: S608
        {"run_pk": run.id, "status": status_value},
    ).fetchall()
    return [_row_to_item(row) for row in rows]


def run_summary(run: Run) -> dict[str, Any]:
    return {
        "status": str(run.status),
        "total_matched": run.total_matched,
        "total_unmatched_app": run.total_unmatched_app,
        "total_unmatched_gateway": run.total_unmatched_gateway,
        "total_app_amount": str(run.total_app_amount),
        "total_gateway_amount": str(run.total_gateway_amount),
    }


def historical_stats(conn: Connection) -> dict[str, Any]:
    """Aggregate figures across all live runs."""
    row = conn.execute(
        text("""
            SELECT COUNT(*) AS total_runs,
                   COALESCE(SUM(total_matched), 0) AS matched,
                   COALESCE(SUM(total_unmatched_app), 0) AS unmatched_app,
                   COALESCE(SUM(total_unmatched_gateway), 0) AS unmatched_gateway,
                   MAX(completed_at) AS last_completed_at
            FROM reconciliation_runs
            WHERE deleted_at IS NULL
        """)
    ).one()

    by_status = {str(s): 0 for s in RunStatus}
    for status, count in conn.execute(
        text("""
            SELECT status, COUNT(*) FROM reconciliation_runs
            WHERE deleted_at IS NULL
            GROUP BY status
        """)
    ).fetchall():
        by_status[status] = int(count)

    return {
        "total_runs": int(row.total_runs),
        "runs_by_status": by_status,
        "total_matched_across_runs": int(row.matched),
        "total_unmatched_app_across_runs": int(row.unmatched_app),
        "total_unmatched_gateway_across_runs": int(row.unmatched_gateway),
        "last_completed_at": _as_timestamp(row.last_completed_at),
    }


def record_event(
    conn: Connection,
    event_type: str,
    *,
    run_id: str | None,
    success: bool,
    details: Mapping[str, Any],
    started_at: str,
    finished_at: str | None = None,
) -> None:
    """Append a row to the recon_events audit trail."""
    conn.execute(
        text("""
            INSERT INTO recon_events (
                event_type, run_id, success, details, started_at, finished_at
            )
            VALUES (
                :event_type, :run_id, :success, :details, :started_at, :finished_at
            )
        """),
        {
            "event_type": event_type,
            "run_id": run_id,
            "success": success,
            "details": json.dumps(details, sort_keys=True, default=str),
            "started_at": started_at,
            "finished_at": finished_at or _now(),
        },
    )
