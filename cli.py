#!/usr/bin/env python3
"""CLI interface for the gateway reconciliation engine."""

import csv
import importlib.util
import json
import logging
import os
import platform
import sys
from datetime import date
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any

import psycopg
import typer
from dotenv import load_dotenv
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from recon.demo import create_demo_engine, get_demo_transactions, load_demo_ledger
from recon.detectors import DETECTORS, DiscrepancyDetector
from recon.export import ITEM_EXPORT_HEADERS, build_csv, export_filename, item_rows
from recon.normalize import RecordError
from recon.service import (
    DEFAULT_MAX_RECORDS,
    BatchTooLargeError,
    PersistenceError,
    ReconciliationService,
    TriggerResult,
)
from recon.store import (
    ItemStatus,
    RunNotFoundError,
    RunStatus,
    delete_run,
    get_items,
    get_run,
    historical_stats,
    list_runs,
)
from recon.tolerance import ToleranceConfig, ToleranceError

app = typer.Typer(
    name="recon",
    help="Gateway reconciliation - match app ledger records against gateway reports",
    no_args_is_help=True,
)


class Entity(StrEnum):
    DONATIONS = "donations"
    EVENT_ORDERS = "event_orders"
    ALL = "all"


def _mark_success() -> str:
    """Return success indicator (emoji or plain text based on RECON_PLAIN env var)."""
    return "" if os.getenv("RECON_PLAIN") == "1" else "✅"


def _mark_error() -> str:
    """Return error indicator (emoji or plain text based on RECON_PLAIN env var)."""
    return "" if os.getenv("RECON_PLAIN") == "1" else "❌"


@app.callback()
def _load_env(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log at DEBUG level")
    ] = False,
) -> None:
    # Skip dotenv loading in tests/CI for hermetic environments
    if os.getenv("RECON_SKIP_DOTENV") != "1":
        load_dotenv(override=False)  # Never override already-set env in CI/tests

    level = "DEBUG" if verbose else os.getenv("RECON_LOG_LEVEL", "WARNING").upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "WARNING"
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def _database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        typer.echo(f"{_mark_error()} DATABASE_URL not found in environment", err=True)
        raise typer.Exit(2)
    return database_url


def _sqlalchemy_url(database_url: str) -> str:
    """Pin plain postgresql:// URLs to the psycopg (v3) driver."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


def _engine() -> Engine:
    database_url = _database_url()
    if database_url.startswith("sqlite"):
        # SQLite gets the bundled DDL so local runs need no init-db
        return create_demo_engine(database_url)
    return create_engine(_sqlalchemy_url(database_url))


def _parse_date(value: str | None, option: str) -> date | None:
    """Parse date string in YYYY-MM-DD format."""
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        typer.echo(
            f"{_mark_error()} Invalid {option}: {value}. Use YYYY-MM-DD", err=True
        )
        raise typer.Exit(2) from None


def _read_records(path: Path, option: str) -> list[dict[str, Any]]:
    """Load raw records from a JSON array of objects or a CSV file with headers."""
    try:
        if path.suffix.lower() == ".csv":
            with path.open(newline="", encoding="utf-8-sig") as f:
                return [dict(row) for row in csv.DictReader(f)]
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        typer.echo(f"{_mark_error()} Failed to read {option}: {e}", err=True)
        raise typer.Exit(2) from e

    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        typer.echo(
            f"{_mark_error()} {option} must be a JSON array of objects", err=True
        )
        raise typer.Exit(2)
    return data


def _default_max_records() -> int:
    raw = os.getenv("RECON_MAX_RECORDS")
    if not raw:
        return DEFAULT_MAX_RECORDS
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value < 1:
        typer.echo(
            f"{_mark_error()} RECON_MAX_RECORDS must be a positive integer", err=True
        )
        raise typer.Exit(2)
    return value


def _echo_json(payload: Any) -> None:  # noqa: ANN401
    typer.echo(json.dumps(payload, indent=2, default=str))


def _echo_summary(summary: dict[str, Any]) -> None:
    typer.echo(f"  matched pairs:      {summary.get('total_matched', 0)}")
    typer.echo(f"  unmatched app:      {summary.get('total_unmatched_app', 0)}")
    typer.echo(f"  unmatched gateway:  {summary.get('total_unmatched_gateway', 0)}")


@app.command("init-db")
def init_db() -> None:
    """Initialize database schema from recon/schema.sql."""
    database_url = _database_url()

    schema_path = Path(__file__).parent / "recon" / "schema.sql"
    if not schema_path.exists():
        typer.echo(f"{_mark_error()} Schema file not found: {schema_path}", err=True)
        raise typer.Exit(2)

    try:
        with psycopg.connect(database_url) as conn, conn.cursor() as cur:
            cur.execute(schema_path.read_text())
            conn.commit()

        typer.echo(f"{_mark_success()} Database schema initialized successfully")
    except psycopg.Error as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e


def _report_trigger(result: TriggerResult, json_out: bool) -> None:
    if json_out:
        _echo_json({
            "status": result.status,
            "run": result.run.as_dict() if result.run else None,
            "summary": result.summary(),
        })
        return

    if result.status == "dry_run":
        typer.echo(f"{_mark_success()} Dry run (nothing persisted)")
    elif result.status == RunStatus.RUNNING:
        assert result.run is not None  # noqa: S101
        typer.echo(
            f"{_mark_success()} Run {result.run.run_id} started; "
            "completing in the background"
        )
        return
    else:
        assert result.run is not None  # noqa: S101
        typer.echo(f"{_mark_success()} Run {result.run.run_id} completed")
    _echo_summary(result.summary())


@app.command("run")
def run(  # noqa: PLR0913
    app_file: Annotated[
        Path, typer.Option("--app-file", help="App-side records (JSON array or CSV)")
    ],
    gateway_file: Annotated[
        Path,
        typer.Option("--gateway-file", help="Gateway-side records (JSON array or CSV)"),
    ],
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Match without persisting anything")
    ] = False,
    sync: Annotated[
        bool,
        typer.Option("--sync/--no-sync", help="Complete the run before returning"),
    ] = True,
    amount_percentage_tolerance: Annotated[
        str | None,
        typer.Option(
            "--amount-percentage-tolerance", help="Fraction, e.g. 0.01 for 1%"
        ),
    ] = None,
    amount_absolute_tolerance: Annotated[
        str | None,
        typer.Option("--amount-absolute-tolerance", help="Currency units"),
    ] = None,
    date_tolerance: Annotated[
        int | None, typer.Option("--date-tolerance", help="Days")
    ] = None,
    fuzzy_threshold: Annotated[
        int | None,
        typer.Option(
            "--fuzzy-threshold", help="Reference similarity 0-100 (off if unset)"
        ),
    ] = None,
    period_start: Annotated[
        str | None, typer.Option("--period-start", help="YYYY-MM-DD")
    ] = None,
    period_end: Annotated[
        str | None, typer.Option("--period-end", help="YYYY-MM-DD")
    ] = None,
    created_by: Annotated[
        str | None, typer.Option("--created-by", help="Actor recorded on the run")
    ] = None,
    max_records: Annotated[
        int | None,
        typer.Option("--max-records", help="Per-side batch bound (RECON_MAX_RECORDS)"),
    ] = None,
    json_out: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Reconcile an app-side file against a gateway-side file."""
    try:
        tolerance = ToleranceConfig.from_options(
            amount_percentage_tolerance=amount_percentage_tolerance,
            amount_absolute_tolerance=amount_absolute_tolerance,
            date_tolerance=date_tolerance,
            fuzzy_match_threshold=fuzzy_threshold,
        )
    except ToleranceError as e:
        typer.echo(f"{_mark_error()} Invalid tolerance: {e}", err=True)
        raise typer.Exit(2) from e

    start = _parse_date(period_start, "--period-start")
    end = _parse_date(period_end, "--period-end")
    if start and end and start > end:
        typer.echo(
            f"{_mark_error()} Invalid period: --period-start must be <= --period-end",
            err=True,
        )
        raise typer.Exit(2)

    app_records = _read_records(app_file, "--app-file")
    gateway_records = _read_records(gateway_file, "--gateway-file")
    bound = max_records if max_records is not None else _default_max_records()

    # Dry runs never connect; engines are lazy
    engine = create_engine("sqlite://") if dry_run else _engine()
    service = ReconciliationService(engine)

    try:
        result = service.trigger(
            app_records,
            gateway_records,
            tolerance,
            dry_run=dry_run,
            sync=sync,
            created_by=created_by,
            period_start=start,
            period_end=end,
            max_records=bound,
        )
    except (RecordError, BatchTooLargeError) as e:
        typer.echo(f"{_mark_error()} Invalid input: {e}", err=True)
        raise typer.Exit(2) from e
    except PersistenceError as e:
        typer.echo(f"{_mark_error()} Run {e.run_id} failed: {e}", err=True)
        raise typer.Exit(1) from e
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e
    except Exception as e:
        typer.echo(f"{_mark_error()} Unexpected error: {e}", err=True)
        raise typer.Exit(1) from e

    _report_trigger(result, json_out)


@app.command("list-runs")
def list_runs_cmd(
    page: Annotated[int, typer.Option("--page", min=1)] = 1,
    per_page: Annotated[int, typer.Option("--per-page", min=1, max=500)] = 20,
    status: Annotated[
        RunStatus | None, typer.Option("--status", help="Filter by run status")
    ] = None,
    json_out: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """List reconciliation runs, newest first."""
    try:
        with _engine().connect() as conn:
            result = list_runs(conn, page=page, per_page=per_page, status=status)
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Failed to list runs: {e}", err=True)
        raise typer.Exit(1) from e

    if json_out:
        _echo_json({
            "runs": [r.as_dict() for r in result.runs],
            "page": result.page,
            "per_page": result.per_page,
            "total": result.total,
            "pages": result.pages,
        })
        return

    if not result.runs:
        typer.echo("No reconciliation runs found.")
        return
    for r in result.runs:
        typer.echo(
            f"{r.run_id} | {r.status} | matched {r.total_matched} | "
            f"unmatched app {r.total_unmatched_app} | "
            f"unmatched gateway {r.total_unmatched_gateway} | {r.started_at}"
        )
    typer.echo(f"Page {result.page}/{result.pages} ({result.total} runs)")


@app.command("show-run")
def show_run(run_id: Annotated[str, typer.Argument(help="Run identifier")]) -> None:
    """Show one run with its aggregate summary."""
    try:
        with _engine().connect() as conn:
            found = get_run(conn, run_id)
    except RunNotFoundError as e:
        typer.echo(f"{_mark_error()} {e}", err=True)
        raise typer.Exit(1) from e
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e

    _echo_json(found.as_dict())


@app.command("stats")
def stats() -> None:
    """Historical statistics across all runs."""
    try:
        with _engine().connect() as conn:
            figures = historical_stats(conn)
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e

    _echo_json(figures)


@app.command("export")
def export(
    run_id: Annotated[str, typer.Argument(help="Run identifier")],
    status: Annotated[
        ItemStatus | None,
        typer.Option("--status", help="Only items with this reconciliation status"),
    ] = None,
    out: Annotated[str, typer.Option("--out", help="Output directory")] = "build",
) -> None:
    """Export a run's items as CSV."""
    try:
        with _engine().connect() as conn:
            found = get_run(conn, run_id)
            items = get_items(conn, found, status=status)
    except RunNotFoundError as e:
        typer.echo(f"{_mark_error()} {e}", err=True)
        raise typer.Exit(1) from e
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e

    out_path = Path(out)
    out_path.mkdir(parents=True, exist_ok=True)
    csv_file = out_path / export_filename(found)
    # BOM so spreadsheet tools pick up UTF-8
    csv_file.write_text(
        build_csv(ITEM_EXPORT_HEADERS, item_rows(found, items)),
        encoding="utf-8-sig",
        newline="",
    )
    typer.echo(f"{_mark_success()} Exported {len(items)} items: {csv_file}")


@app.command("delete-run")
def delete_run_cmd(
    run_id: Annotated[str, typer.Argument(help="Run identifier")],
) -> None:
    """Soft-delete a run and all of its items."""
    try:
        with _engine().begin() as conn:
            deleted = delete_run(conn, run_id)
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e

    if not deleted:
        typer.echo(f"{_mark_error()} Reconciliation run not found: {run_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{_mark_success()} Deleted run {run_id}")


def _detectors(engine: Engine, entity: Entity) -> list[DiscrepancyDetector]:
    if entity is Entity.ALL:
        return [cls(engine) for cls in DETECTORS.values()]
    return [DETECTORS[entity.value](engine)]


@app.command("discrepancies")
def discrepancies(
    entity: Annotated[
        Entity, typer.Option("--entity", help="Ledger to scan")
    ] = Entity.ALL,
    out: Annotated[
        str | None, typer.Option("--out", help="Write the JSON report to a file")
    ] = None,
) -> None:
    """Report ledger discrepancies independent of any run."""
    try:
        reports = {
            d.entity: d.detect_discrepancies()
            for d in _detectors(_engine(), entity)
        }
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Discrepancy scan failed: {e}", err=True)
        raise typer.Exit(1) from e

    if out is None:
        _echo_json(reports)
        return

    out_path = Path(out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w") as f:
        json.dump(reports, f, indent=2, default=str)
    typer.echo(f"{_mark_success()} Discrepancy report: {out_path}")


@app.command("heal")
def heal(
    entity: Annotated[
        Entity, typer.Option("--entity", help="Ledger to heal")
    ] = Entity.ALL,
) -> None:
    """Copy authoritative payment statuses onto pending ledger rows."""
    try:
        results = [d.reconcile_all() for d in _detectors(_engine(), entity)]
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Heal failed: {e}", err=True)
        raise typer.Exit(1) from e

    for r in results:
        typer.echo(
            f"{r['entity']}: checked {r['total_checked']}, "
            f"reconciled {r['reconciled']}, unchanged {r['unchanged']}, "
            f"errors {len(r['errors'])}"
        )
        for err in r["errors"]:
            typer.echo(f"  WARNING: {err}", err=True)


@app.command("demo")
def demo(
    out: Annotated[
        str, typer.Option("--out", help="Output directory for the export")
    ] = "build",
) -> None:
    """Run offline demo with fixture data (SQLite in memory)."""
    os.environ["LC_ALL"] = "C.UTF-8"
    os.environ["TZ"] = "UTC"

    try:
        typer.echo("🚀 Starting offline demo (SQLite + fixtures)...")
        engine = create_demo_engine()
        with engine.begin() as conn:
            load_demo_ledger(conn)
        typer.echo(f"{_mark_success()} Demo database initialized with fixtures")

        app_records, gateway_records = get_demo_transactions()
        tolerance = ToleranceConfig.from_options(
            amount_percentage_tolerance="0.01",
            date_tolerance=3,
            fuzzy_match_threshold=80,
        )
        result = ReconciliationService(engine).trigger(
            app_records, gateway_records, tolerance, created_by="demo"
        )
        assert result.run is not None  # noqa: S101
        typer.echo(f"{_mark_success()} Run {result.run.run_id} completed")
        _echo_summary(result.summary())

        with engine.connect() as conn:
            items = get_items(conn, result.run)
        out_path = Path(out)
        out_path.mkdir(parents=True, exist_ok=True)
        csv_file = out_path / export_filename(result.run)
        csv_file.write_text(
            build_csv(ITEM_EXPORT_HEADERS, item_rows(result.run, items)),
            encoding="utf-8-sig",
            newline="",
        )
        typer.echo(f"{_mark_success()} Export: {csv_file}")

        for detector in _detectors(engine, Entity.ALL):
            report = detector.detect_discrepancies()
            counts = ", ".join(
                f"{k} {len(v)}" for k, v in report.items() if isinstance(v, list)
            )
            typer.echo(f"{_mark_success()} {detector.entity}: {counts}")

        typer.echo(f"\n{_mark_success()} Demo completed successfully")
    except Exception as e:
        typer.echo(f"{_mark_error()} Demo failed: {e}", err=True)
        raise typer.Exit(1) from e


def _check_dependency(module_name: str) -> bool:
    """Check if a module is available without importing it."""
    return importlib.util.find_spec(module_name) is not None


def _check_python_version() -> bool:
    """Check Python version requirement."""
    py_version = sys.version_info
    version_str = f"{py_version.major}.{py_version.minor}.{py_version.micro}"
    typer.echo(f"Python version: {version_str}")
    if py_version < (3, 11):
        typer.echo(f"{_mark_error()} Python 3.11+ required, found {version_str}")
        return False
    typer.echo(f"{_mark_success()} Python version OK")
    return True


def _check_database() -> bool:
    """Check database connection if configured."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        typer.echo("i  DATABASE_URL not set (OK for demo and dry runs)")
        return True

    typer.echo(f"Database URL: {database_url[:20]}...")
    try:
        with create_engine(_sqlalchemy_url(database_url)).connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database connection failed: {e}")
        return False
    else:
        typer.echo(f"{_mark_success()} Database connection OK")
        return True


def _check_dependencies() -> bool:
    """Check Python package dependencies."""
    missing = [
        name
        for name in ("sqlalchemy", "rapidfuzz", "yaml", "psycopg")
        if not _check_dependency(name)
    ]
    if missing:
        typer.echo(f"{_mark_error()} Missing dependencies: {', '.join(missing)}")
        return False
    typer.echo(f"{_mark_success()} Core dependencies available")
    return True


@app.command("doctor")
def doctor() -> None:
    """Run preflight checks for dependencies and configuration."""
    typer.echo("🔍 Running system preflight checks...\n")
    typer.echo(f"Platform: {platform.system()} {platform.release()}")

    checks = [
        _check_python_version(),
        _check_database(),
        _check_dependencies(),
    ]

    typer.echo()
    if all(checks):
        typer.echo(f"{_mark_success()} All checks passed! System ready for recon")
    else:
        typer.echo(f"{_mark_error()} Some checks failed. See errors above.")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
