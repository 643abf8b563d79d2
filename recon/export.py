"""CSV rendering for reconciliation exports."""

from __future__ import annotations

import csv
import io
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from recon.store import Item, Run

ITEM_EXPORT_HEADERS = [
    "run_id",
    "transaction_id",
    "reference",
    "source",
    "date",
    "amount",
    "currency",
    "status",
    "match_reference",
]


def _cell(value: Any) -> str:  # noqa: ANN401
    return "" if value is None else str(value)


def build_csv(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Render a header row plus data rows as CSV text.

    Rows are written in input order with minimal quoting and CRLF line endings.
    An empty header list writes no header line.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    if headers:
        writer.writerow([_cell(h) for h in headers])
    for row in rows:
        writer.writerow([_cell(value) for value in row])
    return buffer.getvalue()


def item_rows(run: Run, items: Iterable[Item]) -> list[list[Any]]:
    """One export row per item, in the column order of ITEM_EXPORT_HEADERS."""
    return [
        [
            run.run_id,
            item.transaction_id,
            item.reference,
            str(item.source),
            item.transaction_date.isoformat() if item.transaction_date else None,
            str(item.amount),
            item.currency,
            str(item.reconciliation_status),
            item.match_reference,
        ]
        for item in items
    ]


def export_filename(run: Run) -> str:
    return f"reconciliation-run-{run.run_id}.csv"
