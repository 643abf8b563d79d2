"""Tests for the Run/Item store: lifecycle, counters, soft delete, reads."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy import text

from recon.store import (
    ItemError,
    ItemStatus,
    RunNotFoundError,
    RunStateError,
    RunStatus,
    Source,
    add_item,
    add_items,
    create_run,
    delete_run,
    get_items,
    get_run,
    historical_stats,
    list_runs,
    mark_completed,
    new_run_id,
    record_event,
)
from recon.tolerance import ToleranceConfig

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from recon.store import Run


def _item(
    source: str, status: str, amount: str = "10.00", **extra: Any  # noqa: ANN401
) -> dict:
    return {
        "source": source,
        "reconciliation_status": status,
        "amount": Decimal(amount),
        **extra,
    }


def _pair(ref: str, app_amount: str = "10.00", gw_amount: str = "10.00") -> list:
    return [
        _item("app", "matched", app_amount, match_reference=ref),
        _item("gateway", "matched", gw_amount, match_reference=ref),
    ]


def _new_run(engine: Engine, **kwargs: Any) -> Run:  # noqa: ANN401
    with engine.begin() as conn:
        return create_run(conn, tolerance=ToleranceConfig(), **kwargs)


def test_create_run_starts_running(engine: Engine) -> None:
    run = _new_run(
        engine,
        created_by="admin@example.org",
        period_start=date(2025, 3, 1),
        period_end=date(2025, 3, 31),
    )

    assert run.status is RunStatus.RUNNING
    assert run.completed_at is None
    assert run.started_at
    assert run.created_by == "admin@example.org"
    assert run.period_start == date(2025, 3, 1)
    assert run.period_end == date(2025, 3, 31)
    assert run.metadata["tolerance"]["date_tolerance_days"] == 0
    assert run.total_matched == 0


def test_run_ids_are_unique_and_sortable() -> None:
    ids = [new_run_id() for _ in range(50)]
    stamps = [run_id.split("-")[0] for run_id in ids]

    assert len(set(ids)) == 50
    assert stamps == sorted(stamps)


def test_add_item_returns_persisted_item(engine: Engine) -> None:
    run = _new_run(engine)
    with engine.begin() as conn:
        item = add_item(
            conn,
            run,
            _item(
                "app",
                "unmatched_app",
                "12.50",
                transaction_id="TX1",
                transaction_date=date(2025, 3, 2),
                metadata={"channel": "card"},
            ),
        )

    assert item.reconciliation_run_id == run.id
    assert item.source is Source.APP
    assert item.reconciliation_status is ItemStatus.UNMATCHED_APP
    assert item.amount == Decimal("12.50")
    assert item.transaction_date == date(2025, 3, 2)
    assert item.match_reference is None
    assert item.metadata == {"channel": "card"}


@pytest.mark.parametrize(
    "item",
    [
        _item("app", "unmatched_gateway"),
        _item("gateway", "unmatched_app"),
        _item("app", "matched"),
        _item("app", "unmatched_app", match_reference="M1"),
        _item("bank", "matched", match_reference="M1"),
        {"source": "app", "reconciliation_status": "unmatched_app"},
    ],
)
def test_inconsistent_items_rejected(engine: Engine, item: dict) -> None:
    run = _new_run(engine)

    with pytest.raises(ItemError), engine.begin() as conn:
        add_item(conn, run, item)


def test_mark_completed_derives_counters_from_items(engine: Engine) -> None:
    run = _new_run(engine)
    with engine.begin() as conn:
        add_items(
            conn,
            run,
            [
                *_pair("M000001", "100.00", "99.00"),
                *_pair("M000002"),
                _item("app", "unmatched_app", "5.00"),
                _item("gateway", "unmatched_gateway", "7.00"),
                _item("gateway", "unmatched_gateway", "8.00"),
            ],
        )
        done = mark_completed(conn, run, RunStatus.SUCCESS)

    assert done.status is RunStatus.SUCCESS
    assert done.completed_at is not None
    assert done.total_matched == 2
    assert done.total_unmatched_app == 1
    assert done.total_unmatched_gateway == 2
    assert done.total_app_amount == Decimal("115.00")
    assert done.total_gateway_amount == Decimal("124.00")
    # matched + unmatched partitions each side
    with engine.connect() as conn:
        items = get_items(conn, done)
    app_items = [i for i in items if i.source is Source.APP]
    gateway_items = [i for i in items if i.source is Source.GATEWAY]
    assert done.total_matched + done.total_unmatched_app == len(app_items)
    assert done.total_matched + done.total_unmatched_gateway == len(gateway_items)


def test_terminal_run_cannot_transition_again(engine: Engine) -> None:
    run = _new_run(engine)
    with engine.begin() as conn:
        mark_completed(conn, run, RunStatus.FAILED, error_message="boom")

    with pytest.raises(RunStateError), engine.begin() as conn:
        mark_completed(conn, run, RunStatus.SUCCESS)

    with engine.connect() as conn:
        stored = get_run(conn, run.run_id)
    assert stored.status is RunStatus.FAILED
    assert stored.error_message == "boom"


def test_running_is_not_a_completion_status(engine: Engine) -> None:
    run = _new_run(engine)

    with pytest.raises(ValueError, match="success or failed"), engine.begin() as conn:
        mark_completed(conn, run, RunStatus.RUNNING)


def test_items_cannot_be_added_to_completed_run(engine: Engine) -> None:
    run = _new_run(engine)
    with engine.begin() as conn:
        done = mark_completed(conn, run, RunStatus.SUCCESS)

    with pytest.raises(RunStateError), engine.begin() as conn:
        add_item(conn, done, _item("app", "unmatched_app"))


def test_success_requires_complete_pairs(engine: Engine) -> None:
    run = _new_run(engine)

    with pytest.raises(ItemError, match="M000009"), engine.begin() as conn:
        add_items(conn, run, [_item("app", "matched", match_reference="M000009")])
        mark_completed(conn, run, RunStatus.SUCCESS)

    # The failed transaction left nothing behind
    with engine.connect() as conn:
        assert get_items(conn, run) == []
        assert get_run(conn, run.run_id).status is RunStatus.RUNNING


def test_delete_run_cascades_to_items(engine: Engine) -> None:
    run = _new_run(engine)
    with engine.begin() as conn:
        add_items(conn, run, _pair("M000001"))
        mark_completed(conn, run, RunStatus.SUCCESS)

    with engine.begin() as conn:
        assert delete_run(conn, run.run_id) is True

    with engine.connect() as conn:
        with pytest.raises(RunNotFoundError):
            get_run(conn, run.run_id)
        live_items = conn.execute(
            text(
                "SELECT COUNT(*) FROM reconciliation_items "
                "WHERE reconciliation_run_id = :id AND deleted_at IS NULL"
            ),
            {"id": run.id},
        ).scalar()
    assert live_items == 0


def test_delete_missing_or_deleted_run_returns_false(engine: Engine) -> None:
    run = _new_run(engine)
    with engine.begin() as conn:
        assert delete_run(conn, run.run_id) is True
        assert delete_run(conn, run.run_id) is False
        assert delete_run(conn, "no-such-run") is False


def test_get_run_unknown_id(engine: Engine) -> None:
    with pytest.raises(RunNotFoundError, match="nope"), engine.connect() as conn:
        get_run(conn, "nope")


def test_list_runs_paginates_newest_first(engine: Engine) -> None:
    runs = [_new_run(engine) for _ in range(5)]
    with engine.begin() as conn:
        mark_completed(conn, runs[0], RunStatus.SUCCESS)
        mark_completed(conn, runs[1], RunStatus.FAILED)

    with engine.connect() as conn:
        first = list_runs(conn, page=1, per_page=2)
        last = list_runs(conn, page=3, per_page=2)
        failed = list_runs(conn, status="failed")

    assert first.total == 5
    assert first.pages == 3
    assert [r.run_id for r in first.runs] == [runs[4].run_id, runs[3].run_id]
    assert [r.run_id for r in last.runs] == [runs[0].run_id]
    assert [r.run_id for r in failed.runs] == [runs[1].run_id]


def test_list_runs_hides_deleted(engine: Engine) -> None:
    keep = _new_run(engine)
    gone = _new_run(engine)
    with engine.begin() as conn:
        delete_run(conn, gone.run_id)

    with engine.connect() as conn:
        page = list_runs(conn)

    assert [r.run_id for r in page.runs] == [keep.run_id]


def test_get_items_filters_by_status(engine: Engine) -> None:
    run = _new_run(engine)
    with engine.begin() as conn:
        add_items(
            conn,
            run,
            [*_pair("M000001"), _item("gateway", "unmatched_gateway", "1.00")],
        )

    with engine.connect() as conn:
        matched = get_items(conn, run, status=ItemStatus.MATCHED)
        unmatched = get_items(conn, run, status="unmatched_gateway")

    assert [i.source for i in matched] == [Source.APP, Source.GATEWAY]
    assert [i.amount for i in unmatched] == [Decimal("1.00")]


def test_historical_stats(engine: Engine) -> None:
    ok = _new_run(engine)
    bad = _new_run(engine)
    _new_run(engine)
    with engine.begin() as conn:
        add_items(conn, ok, [*_pair("M000001"), _item("app", "unmatched_app")])
        mark_completed(conn, ok, RunStatus.SUCCESS)
        mark_completed(conn, bad, RunStatus.FAILED)

    with engine.connect() as conn:
        stats = historical_stats(conn)

    assert stats["total_runs"] == 3
    assert stats["runs_by_status"] == {"running": 1, "success": 1, "failed": 1}
    assert stats["total_matched_across_runs"] == 1
    assert stats["total_unmatched_app_across_runs"] == 1
    assert stats["total_unmatched_gateway_across_runs"] == 0
    assert stats["last_completed_at"] is not None


def test_record_event(engine: Engine) -> None:
    with engine.begin() as conn:
        record_event(
            conn,
            "reconcile",
            run_id="r1",
            success=True,
            details={"total_matched": 2},
            started_at="2025-03-01T00:00:00+00:00",
        )

    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT event_type, run_id, success, details FROM recon_events")
        ).one()

    assert row.event_type == "reconcile"
    assert row.run_id == "r1"
    assert bool(row.success) is True
    assert row.details == '{"total_matched": 2}'
