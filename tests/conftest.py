"""Test configuration and fixtures."""

from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from recon.demo import create_demo_engine
from recon.tolerance import ToleranceConfig

if TYPE_CHECKING:
    from collections.abc import Iterator

    from sqlalchemy import Engine

# Register Decimal adapter for SQLite tests (exact decimal text, no float rounding)
sqlite3.register_adapter(Decimal, str)


@pytest.fixture
def engine() -> Iterator[Engine]:
    """In-memory SQLite with the reconciliation and ledger schema."""
    eng = create_demo_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def tolerance() -> ToleranceConfig:
    return ToleranceConfig()
