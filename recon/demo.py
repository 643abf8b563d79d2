"""SQLite engine factory and demo fixture loader for offline runs and tests."""

import contextlib
import json
import os
import sqlite3
from decimal import Decimal
from pathlib import Path
from typing import Any

from sqlalchemy import Connection, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

FIXTURES_DIR = Path(__file__).parent.parent / "fixtures" / "demo"

_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS reconciliation_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT UNIQUE NOT NULL,
        status TEXT NOT NULL DEFAULT 'running'
            CHECK (status IN ('running', 'success', 'failed')),
        started_at TEXT NOT NULL,
        completed_at TEXT,
        period_start TEXT,
        period_end TEXT,
        total_matched INTEGER NOT NULL DEFAULT 0,
        total_unmatched_app INTEGER NOT NULL DEFAULT 0,
        total_unmatched_gateway INTEGER NOT NULL DEFAULT 0,
        total_app_amount DECIMAL(15,2) NOT NULL DEFAULT 0,
        total_gateway_amount DECIMAL(15,2) NOT NULL DEFAULT 0,
        error_message TEXT,
        metadata TEXT,
        created_by TEXT,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reconciliation_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        reconciliation_run_id INTEGER NOT NULL,
        source TEXT NOT NULL CHECK (source IN ('app', 'gateway')),
        transaction_id TEXT,
        reference TEXT,
        amount DECIMAL(15,2) NOT NULL,
        currency TEXT,
        transaction_date TEXT,
        reconciliation_status TEXT NOT NULL CHECK (
            reconciliation_status IN ('matched', 'unmatched_app', 'unmatched_gateway')
        ),
        match_reference TEXT,
        match_rule TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        deleted_at TEXT,
        FOREIGN KEY (reconciliation_run_id)
            REFERENCES reconciliation_runs(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recon_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        run_id TEXT,
        success BOOLEAN NOT NULL,
        details TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT NOT NULL
    )
    """,
    # Ledger tables owned by the surrounding application; read by detectors
    """
    CREATE TABLE IF NOT EXISTS payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        payable_type TEXT NOT NULL,
        payable_id INTEGER,
        status TEXT NOT NULL,
        amount DECIMAL(15,2) NOT NULL,
        currency TEXT NOT NULL DEFAULT 'KES',
        reference TEXT,
        transaction_id TEXT,
        paid_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS donations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        reference TEXT,
        amount DECIMAL(15,2) NOT NULL,
        currency TEXT NOT NULL DEFAULT 'KES',
        status TEXT NOT NULL DEFAULT 'pending',
        payment_id INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id INTEGER,
        reference TEXT,
        quantity INTEGER NOT NULL DEFAULT 1,
        unit_price DECIMAL(15,2) NOT NULL DEFAULT 0,
        total_amount DECIMAL(15,2) NOT NULL,
        currency TEXT NOT NULL DEFAULT 'KES',
        status TEXT NOT NULL DEFAULT 'pending',
        payment_id INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_tickets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_reconciliation_runs_status"
    " ON reconciliation_runs(status)",
    "CREATE INDEX IF NOT EXISTS idx_reconciliation_items_run"
    " ON reconciliation_items(reconciliation_run_id)",
    "CREATE INDEX IF NOT EXISTS idx_reconciliation_items_status"
    " ON reconciliation_items(reconciliation_status)",
    "CREATE INDEX IF NOT EXISTS idx_event_tickets_order ON event_tickets(order_id)",
]


def setup_sqlite_determinism() -> None:
    """Configure SQLite for deterministic behavior matching Postgres."""
    # Register Decimal adapter to prevent float rounding
    sqlite3.register_adapter(Decimal, str)

    os.environ["LC_ALL"] = "C.UTF-8"
    os.environ["TZ"] = "UTC"


def create_schema(conn: Connection) -> None:
    """Create reconciliation and ledger tables on a SQLite connection."""
    conn.execute(text("PRAGMA foreign_keys = ON"))
    for ddl in _TABLES:
        conn.execute(text(ddl))
    for index_sql in _INDEXES:
        with contextlib.suppress(Exception):
            conn.execute(text(index_sql))


def create_demo_engine(url: str = "sqlite:///:memory:") -> Engine:
    """Create a SQLite engine with the full schema applied.

    In-memory databases share one connection so that every transaction (and
    the deferred-run worker thread) sees the same data.
    """
    setup_sqlite_determinism()

    if url.endswith(":memory:"):
        engine = create_engine(
            url,
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(url, echo=False)

    with engine.begin() as conn:
        create_schema(conn)

    return engine


def _load_fixture(name: str) -> Any:  # noqa: ANN401
    path = FIXTURES_DIR / name
    if not path.exists():
        return []
    return json.loads(path.read_text(encoding="utf-8"))


def load_demo_ledger(conn: Connection) -> None:
    """Load payments, donations, event orders and tickets fixtures."""
    for payment in _load_fixture("payments.json"):
        conn.execute(
            text("""
            INSERT INTO payments
            (id, payable_type, payable_id, status, amount, currency, reference,
             transaction_id, paid_at)
            VALUES (:id, :payable_type, :payable_id, :status, :amount, :currency,
                    :reference, :transaction_id, :paid_at)
            """),
            payment,
        )

    for donation in _load_fixture("donations.json"):
        conn.execute(
            text("""
            INSERT INTO donations (id, reference, amount, currency, status, payment_id)
            VALUES (:id, :reference, :amount, :currency, :status, :payment_id)
            """),
            donation,
        )

    for order in _load_fixture("event_orders.json"):
        conn.execute(
            text("""
            INSERT INTO event_orders
            (id, event_id, reference, quantity, unit_price, total_amount, currency,
             status, payment_id)
            VALUES (:id, :event_id, :reference, :quantity, :unit_price,
                    :total_amount, :currency, :status, :payment_id)
            """),
            order,
        )

    for ticket in _load_fixture("event_tickets.json"):
        conn.execute(
            text("INSERT INTO event_tickets (id, order_id) VALUES (:id, :order_id)"),
            ticket,
        )


def get_demo_transactions() -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """App-side and gateway-side raw records for the demo run."""
    return (
        _load_fixture("app_transactions.json"),
        _load_fixture("gateway_transactions.json"),
    )
