"""Tests for CLI interface and command validation."""

from __future__ import annotations

import json
import shutil
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from cli import app
from recon.demo import FIXTURES_DIR, create_demo_engine, load_demo_ledger

if TYPE_CHECKING:
    from pathlib import Path

runner = CliRunner()

TOLERANCE_ARGS = [
    "--amount-percentage-tolerance",
    "0.01",
    "--date-tolerance",
    "3",
    "--fuzzy-threshold",
    "80",
]


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    url = f"sqlite:///{tmp_path / 'recon.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("RECON_SKIP_DOTENV", "1")
    monkeypatch.setenv("RECON_PLAIN", "1")
    return url


@pytest.fixture
def record_files(tmp_path: Path) -> list[str]:
    app_file = tmp_path / "app.json"
    gateway_file = tmp_path / "gateway.json"
    shutil.copy(FIXTURES_DIR / "app_transactions.json", app_file)
    shutil.copy(FIXTURES_DIR / "gateway_transactions.json", gateway_file)
    return ["--app-file", str(app_file), "--gateway-file", str(gateway_file)]


def _run_json(record_files: list[str], *extra: str) -> dict:
    result = runner.invoke(
        app, ["run", *record_files, *TOLERANCE_ARGS, "--json", *extra]
    )
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_run_persists_and_reports_summary(
    database_url: str, record_files: list[str]
) -> None:
    payload = _run_json(record_files, "--created-by", "ops@example.org")

    assert payload["status"] == "success"
    assert payload["summary"] == {
        "total_matched": 5,
        "total_unmatched_app": 1,
        "total_unmatched_gateway": 1,
    }
    assert payload["run"]["created_by"] == "ops@example.org"
    assert payload["run"]["summary"]["status"] == "success"


def test_run_text_output(database_url: str, record_files: list[str]) -> None:
    result = runner.invoke(app, ["run", *record_files, *TOLERANCE_ARGS])

    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    assert "matched pairs:      5" in result.output


def test_dry_run_needs_no_database(
    record_files: list[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("RECON_SKIP_DOTENV", "1")

    result = runner.invoke(
        app, ["run", *record_files, *TOLERANCE_ARGS, "--dry-run", "--json"]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["status"] == "dry_run"
    assert payload["run"] is None
    assert payload["summary"]["total_matched"] == 5


def test_run_reads_csv_files(database_url: str, tmp_path: Path) -> None:
    app_file = tmp_path / "app.csv"
    gateway_file = tmp_path / "gateway.csv"
    app_file.write_text(
        "\ufefftransaction_id,amount,date\nA1,10.00,2025-03-01\n", encoding="utf-8"
    )
    gateway_file.write_text(
        "txn_id,amount,transaction_date\nA1,10.00,2025-03-01\n", encoding="utf-8"
    )

    result = runner.invoke(
        app,
        [
            "run",
            "--app-file",
            str(app_file),
            "--gateway-file",
            str(gateway_file),
            "--json",
        ],
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["summary"]["total_matched"] == 1


@pytest.mark.parametrize(
    "args",
    [
        ["--amount-percentage-tolerance", "1.5"],
        ["--amount-percentage-tolerance", "abc"],
        ["--amount-absolute-tolerance", "-1"],
        ["--date-tolerance", "-2"],
        ["--fuzzy-threshold", "101"],
        ["--period-start", "03/01/2025"],
        ["--period-start", "2025-03-31", "--period-end", "2025-03-01"],
        ["--max-records", "3"],
    ],
)
def test_run_rejects_invalid_input(
    database_url: str, record_files: list[str], args: list[str]
) -> None:
    result = runner.invoke(app, ["run", *record_files, *args])

    assert result.exit_code == 2


def test_run_rejects_non_array_file(database_url: str, tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text('{"amount": "1.00"}', encoding="utf-8")

    result = runner.invoke(
        app, ["run", "--app-file", str(bad), "--gateway-file", str(bad)]
    )

    assert result.exit_code == 2
    assert "JSON array of objects" in result.output


def test_run_rejects_unparsable_record(database_url: str, tmp_path: Path) -> None:
    records = tmp_path / "records.json"
    records.write_text('[{"reference": "no amount"}]', encoding="utf-8")

    result = runner.invoke(
        app, ["run", "--app-file", str(records), "--gateway-file", str(records)]
    )

    assert result.exit_code == 2
    assert "Invalid input" in result.output


def test_missing_database_url_exits_2(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("RECON_SKIP_DOTENV", "1")

    result = runner.invoke(app, ["list-runs"])

    assert result.exit_code == 2
    assert "DATABASE_URL not found" in result.output


def test_list_runs_empty(database_url: str) -> None:
    result = runner.invoke(app, ["list-runs"])

    assert result.exit_code == 0
    assert "No reconciliation runs found." in result.output


def test_list_show_and_stats(database_url: str, record_files: list[str]) -> None:
    run_id = _run_json(record_files)["run"]["run_id"]

    listed = runner.invoke(app, ["list-runs"])
    assert listed.exit_code == 0
    assert f"{run_id} | success | matched 5" in listed.output
    assert "Page 1/1 (1 runs)" in listed.output

    as_json = runner.invoke(app, ["list-runs", "--status", "failed", "--json"])
    assert as_json.exit_code == 0
    assert json.loads(as_json.stdout)["total"] == 0

    shown = runner.invoke(app, ["show-run", run_id])
    assert shown.exit_code == 0
    assert json.loads(shown.stdout)["summary"]["total_unmatched_gateway"] == 1

    stats = runner.invoke(app, ["stats"])
    assert stats.exit_code == 0
    figures = json.loads(stats.stdout)
    assert figures["total_runs"] == 1
    assert figures["total_matched_across_runs"] == 5


def test_show_run_unknown_id(database_url: str) -> None:
    result = runner.invoke(app, ["show-run", "missing"])

    assert result.exit_code == 1
    assert "missing" in result.output


def test_export_writes_csv_with_bom(
    database_url: str, record_files: list[str], tmp_path: Path
) -> None:
    run_id = _run_json(record_files)["run"]["run_id"]
    out_dir = tmp_path / "out"

    result = runner.invoke(app, ["export", run_id, "--out", str(out_dir)])

    assert result.exit_code == 0, result.output
    assert "Exported 12 items" in result.output
    csv_file = out_dir / f"reconciliation-run-{run_id}.csv"
    raw = csv_file.read_bytes()
    assert raw.startswith(b"\xef\xbb\xbf")
    lines = raw.decode("utf-8-sig").split("\r\n")
    assert lines[0] == (
        "run_id,transaction_id,reference,source,date,amount,currency,"
        "status,match_reference"
    )
    assert len([line for line in lines[1:] if line]) == 12


def test_export_filters_by_status(
    database_url: str, record_files: list[str], tmp_path: Path
) -> None:
    run_id = _run_json(record_files)["run"]["run_id"]

    result = runner.invoke(
        app,
        ["export", run_id, "--status", "unmatched_gateway", "--out", str(tmp_path)],
    )

    assert result.exit_code == 0, result.output
    assert "Exported 1 items" in result.output


def test_delete_run(database_url: str, record_files: list[str]) -> None:
    run_id = _run_json(record_files)["run"]["run_id"]

    deleted = runner.invoke(app, ["delete-run", run_id])
    assert deleted.exit_code == 0
    assert f"Deleted run {run_id}" in deleted.output

    again = runner.invoke(app, ["delete-run", run_id])
    assert again.exit_code == 1
    assert runner.invoke(app, ["show-run", run_id]).exit_code == 1


@pytest.fixture
def ledger(database_url: str) -> None:
    engine = create_demo_engine(database_url)
    with engine.begin() as conn:
        load_demo_ledger(conn)
    engine.dispose()


@pytest.mark.usefixtures("ledger")
def test_discrepancies_to_stdout() -> None:
    result = runner.invoke(app, ["discrepancies", "--entity", "donations"])

    assert result.exit_code == 0, result.output
    reports = json.loads(result.stdout)
    assert list(reports) == ["donations"]
    assert [m["donation_id"] for m in reports["donations"]["missing_payments"]] == [3]


@pytest.mark.usefixtures("ledger")
def test_discrepancies_to_file(tmp_path: Path) -> None:
    out = tmp_path / "reports" / "discrepancies.json"

    result = runner.invoke(app, ["discrepancies", "--out", str(out)])

    assert result.exit_code == 0, result.output
    reports = json.loads(out.read_text())
    assert set(reports) == {"donations", "event_orders"}
    assert reports["event_orders"]["quantity_issues"][0]["order_id"] == 2


@pytest.mark.usefixtures("ledger")
def test_heal_is_idempotent() -> None:
    first = runner.invoke(app, ["heal", "--entity", "donations"])
    second = runner.invoke(app, ["heal", "--entity", "donations"])

    assert first.exit_code == 0, first.output
    assert "donations: checked 1, reconciled 1, unchanged 0, errors 0" in first.output
    assert "donations: checked 0, reconciled 0" in second.output


def test_demo_offline(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECON_SKIP_DOTENV", "1")
    monkeypatch.setenv("RECON_PLAIN", "1")
    out_dir = tmp_path / "build"

    result = runner.invoke(app, ["demo", "--out", str(out_dir)])

    assert result.exit_code == 0, result.output
    assert "Demo completed successfully" in result.output
    assert "donations: missing_payments 1" in result.output
    assert len(list(out_dir.glob("reconciliation-run-*.csv"))) == 1


def test_doctor_without_database(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("RECON_SKIP_DOTENV", "1")

    result = runner.invoke(app, ["doctor"])

    assert result.exit_code == 0, result.output
    assert "DATABASE_URL not set" in result.output


def test_run_rejects_amount_too_large_to_store(
    database_url: str, tmp_path: Path
) -> None:
    records = tmp_path / "records.json"
    records.write_text(
        '[{"reference": "R1", "amount": "12345678901234567890123456789"}]',
        encoding="utf-8",
    )

    result = runner.invoke(
        app, ["run", "--app-file", str(records), "--gateway-file", str(records)]
    )

    assert result.exit_code == 2
    assert "integer digits" in result.output


def test_run_reports_unexpected_failure(
    database_url: str, record_files: list[str]
) -> None:
    with patch(
        "recon.service.MatchingEngine.match", side_effect=RuntimeError("bug")
    ):
        result = runner.invoke(app, ["run", *record_files])

    assert result.exit_code == 1
    assert "Unexpected error: bug" in result.output
