"""Reconciliation runs end to end: validate, normalise, match, persist."""

from __future__ import annotations

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from recon.matching import MatchingEngine, MatchResult
from recon.normalize import normalize_batch
from recon.store import (
    ItemError,
    ItemStatus,
    Run,
    RunStateError,
    RunStatus,
    Source,
    add_items,
    create_run,
    mark_completed,
    record_event,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence
    from datetime import date

    from sqlalchemy.engine import Engine

    from recon.normalize import CanonicalRecord
    from recon.tolerance import ToleranceConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 50_000


class BatchTooLargeError(ValueError):
    """An input list exceeds the per-run record bound."""


class PersistenceError(RuntimeError):
    """Writing a run's items failed; the run was marked failed."""

    def __init__(self, message: str, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


@dataclass
class TriggerResult:
    """Outcome of a trigger.

    ``status`` is ``dry_run`` (nothing persisted), ``success`` or ``running``
    (deferred; ``future`` resolves to the completed Run).
    """

    status: str
    match: MatchResult | None = None
    run: Run | None = None
    future: Future[Run] | None = None

    def summary(self) -> dict[str, Any]:
        if self.run is not None and self.run.is_terminal:
            return {
                "total_matched": self.run.total_matched,
                "total_unmatched_app": self.run.total_unmatched_app,
                "total_unmatched_gateway": self.run.total_unmatched_gateway,
            }
        if self.match is not None:
            return self.match.summary()
        return {}


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _record_fields(record: CanonicalRecord) -> dict[str, Any]:
    return {
        "transaction_id": record.transaction_id,
        "reference": record.reference,
        "amount": record.amount,
        "currency": record.currency,
        "transaction_date": record.date,
        "metadata": record.metadata,
    }


def iter_item_rows(result: MatchResult) -> Iterator[dict[str, Any]]:
    """Item rows for a match result: pairs first, then app and gateway leftovers."""
    for pair in result.pairs:
        sides = ((Source.APP, pair.app), (Source.GATEWAY, pair.gateway))
        for source, record in sides:
            yield {
                **_record_fields(record),
                "source": source,
                "reconciliation_status": ItemStatus.MATCHED,
                "match_reference": pair.match_reference,
                "match_rule": str(pair.rule),
            }
    for record in result.unmatched_app:
        yield {
            **_record_fields(record),
            "source": Source.APP,
            "reconciliation_status": ItemStatus.UNMATCHED_APP,
        }
    for record in result.unmatched_gateway:
        yield {
            **_record_fields(record),
            "source": Source.GATEWAY,
            "reconciliation_status": ItemStatus.UNMATCHED_GATEWAY,
        }


class ReconciliationService:
    """Runs the matcher against an engine-backed Run/Item store.

    The matching engine and the executor used for deferred runs are injected;
    tolerances are passed on every call.
    """

    def __init__(
        self,
        engine: Engine,
        matcher: MatchingEngine | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.engine = engine
        self.matcher = matcher or MatchingEngine()
        self._executor = executor

    @property
    def executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="recon-run"
            )
        return self._executor

    def trigger(  # noqa: PLR0913
        self,
        app_records: Sequence[Mapping[str, Any]],
        gateway_records: Sequence[Mapping[str, Any]],
        tolerance: ToleranceConfig,
        *,
        dry_run: bool = False,
        sync: bool = True,
        created_by: str | None = None,
        period_start: date | None = None,
        period_end: date | None = None,
        max_records: int | None = DEFAULT_MAX_RECORDS,
    ) -> TriggerResult:
        """Reconcile two raw record lists.

        Validation (tolerance, batch size, normalisation) happens before any
        run row exists. A dry run matches and returns without touching the
        database.

        Raises:
            ToleranceError: Out-of-range tolerance
            BatchTooLargeError: Either list exceeds max_records (None disables)
            RecordError: A record cannot be normalised
            PersistenceError: Items could not be written; the run is failed
        """
        tolerance.validate()
        for name, records in (("app", app_records), ("gateway", gateway_records)):
            if max_records is not None and len(records) > max_records:
                msg = (
                    f"{name} batch has {len(records)} records, limit is "
                    f"{max_records}; split the batch by date range"
                )
                raise BatchTooLargeError(msg)

        app = normalize_batch(app_records, source="app")
        gateway = normalize_batch(gateway_records, source="gateway")

        if dry_run:
            result = self.matcher.match(app, gateway, tolerance)
            logger.info("Dry-run reconciliation: %s", result.summary())
            return TriggerResult(status="dry_run", match=result)

        with self.engine.begin() as conn:
            run = create_run(
                conn,
                tolerance=tolerance,
                created_by=created_by,
                period_start=period_start,
                period_end=period_end,
                metadata={"app_records": len(app), "gateway_records": len(gateway)},
            )
        logger.info(
            "Reconciliation run %s started (%d app, %d gateway records)",
            run.run_id,
            len(app),
            len(gateway),
        )

        if not sync:
            future = self.executor.submit(
                self._complete, run, app, gateway, tolerance
            )
            return TriggerResult(
                status=RunStatus.RUNNING.value, run=run, future=future
            )

        completed = self._complete(run, app, gateway, tolerance)
        return TriggerResult(status=completed.status.value, run=completed)

    def _complete(
        self,
        run: Run,
        app: list[CanonicalRecord],
        gateway: list[CanonicalRecord],
        tolerance: ToleranceConfig,
    ) -> Run:
        """Match and write all items plus the success transition atomically."""
        started_at = run.started_at
        try:
            result = self.matcher.match(app, gateway, tolerance)
            with self.engine.begin() as conn:
                add_items(conn, run, iter_item_rows(result))
                completed = mark_completed(conn, run, RunStatus.SUCCESS)
        except (SQLAlchemyError, ItemError, ArithmeticError) as e:
            logger.exception("Reconciliation run %s failed", run.run_id)
            self._fail(run, str(e), started_at)
            msg = f"Reconciliation run {run.run_id} failed: {e}"
            raise PersistenceError(msg, run_id=run.run_id) from e
        except Exception as e:
            logger.exception("Reconciliation run %s aborted", run.run_id)
            self._fail(run, str(e), started_at)
            raise

        logger.info(
            "Reconciliation run %s completed: %d matched, %d unmatched app, "
            "%d unmatched gateway",
            completed.run_id,
            completed.total_matched,
            completed.total_unmatched_app,
            completed.total_unmatched_gateway,
        )
        self._record(completed, success=True, started_at=started_at)
        return completed

    def _fail(self, run: Run, error: str, started_at: str) -> None:
        try:
            with self.engine.begin() as conn:
                failed = mark_completed(
                    conn, run, RunStatus.FAILED, error_message=error
                )
        except (SQLAlchemyError, RunStateError):
            # Store unreachable or run already terminal (e.g. deleted mid-run)
            logger.exception("Could not mark run %s as failed", run.run_id)
            return
        self._record(failed, success=False, started_at=started_at)

    def _record(self, run: Run, *, success: bool, started_at: str) -> None:
        try:
            with self.engine.begin() as conn:
                record_event(
                    conn,
                    "reconcile",
                    run_id=run.run_id,
                    success=success,
                    details={"status": str(run.status), **_summary(run)},
                    started_at=started_at,
                    finished_at=_now(),
                )
        except SQLAlchemyError as log_error:
            # Do not fail the run if event logging fails
            logger.warning("Event logging failed for %s: %s", run.run_id, log_error)


def _summary(run: Run) -> dict[str, Any]:
    return {
        "total_matched": run.total_matched,
        "total_unmatched_app": run.total_unmatched_app,
        "total_unmatched_gateway": run.total_unmatched_gateway,
        "error_message": run.error_message,
    }
