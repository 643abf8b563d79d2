# recon/normalize.py
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

import yaml

if TYPE_CHECKING:
    from collections.abc import Iterable

CANONICAL_FIELDS = ("transaction_id", "reference", "amount", "currency", "date")

# Amount columns are NUMERIC(15, 2)
MAX_AMOUNT_INTEGER_DIGITS = 13


class RecordError(ValueError):
    """A raw transaction record cannot be normalised."""

    def __init__(
        self, message: str, *, index: int | None = None, source: str | None = None
    ) -> None:
        self.index = index
        self.source = source
        if index is not None:
            message = f"{source or 'record'}[{index}]: {message}"
        super().__init__(message)


@dataclass(frozen=True)
class CanonicalRecord:
    """A transaction from either side in the shape the matcher compares."""

    amount: Decimal
    transaction_id: str | None = None
    reference: str | None = None
    currency: str | None = None
    date: date | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def has_identifiers(self) -> bool:
        return bool(self.transaction_id or self.reference)


@lru_cache(maxsize=1)
def _load_aliases() -> dict[str, list[str]]:
    """Load field aliases from YAML file (cached)."""
    path = Path(__file__).parent / "field_aliases.yaml"
    result = yaml.safe_load(path.read_text(encoding="utf-8"))
    return cast(dict[str, list[str]], result["aliases"])


def _lookup(raw: Mapping[str, Any], name: str) -> tuple[str | None, Any]:
    if raw.get(name) is not None:
        return name, raw[name]
    for alias in _load_aliases().get(name, []):
        if raw.get(alias) is not None:
            return alias, raw[alias]
    return None, None


def _clean_str(value: Any) -> str | None:  # noqa: ANN401
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_amount(value: Any) -> Decimal:  # noqa: ANN401
    """Parse an amount without going through binary floating point.

    Raises:
        RecordError: If the value is missing, not a finite number, or too large
            to store
    """
    if value is None:
        msg = "amount is required"
        raise RecordError(msg)
    if isinstance(value, bool):
        msg = f"amount must be numeric, got {value!r}"
        raise RecordError(msg)
    if isinstance(value, Decimal):
        amount = value
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            msg = "amount is required"
            raise RecordError(msg)
        try:
            amount = Decimal(text)
        except InvalidOperation:
            msg = f"amount must be numeric, got {value!r}"
            raise RecordError(msg) from None
    if not amount.is_finite():
        msg = f"amount must be finite, got {value!r}"
        raise RecordError(msg)
    if amount and amount.adjusted() >= MAX_AMOUNT_INTEGER_DIGITS:
        msg = (
            f"amount {value!r} exceeds {MAX_AMOUNT_INTEGER_DIGITS} integer digits"
        )
        raise RecordError(msg)
    return amount


def parse_date(value: Any) -> date | None:  # noqa: ANN401
    """Parse a date, datetime or ISO-8601 string; blank means no date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        msg = f"date must be ISO-8601, got {value!r}"
        raise RecordError(msg) from None


def normalize_record(raw: Mapping[str, Any]) -> CanonicalRecord:
    """Convert a raw record from either source into a CanonicalRecord.

    Only the amount is required; absent optional fields become None.
    """
    used: set[str] = set()

    def take(name: str) -> Any:  # noqa: ANN401
        key, value = _lookup(raw, name)
        if key is not None:
            used.add(key)
        return value

    transaction_id = _clean_str(take("transaction_id"))
    reference = _clean_str(take("reference"))
    amount = parse_amount(take("amount"))
    currency = _clean_str(take("currency"))
    txn_date = parse_date(take("date"))

    # Canonical keys that were present but empty are not metadata either
    used.update(name for name in CANONICAL_FIELDS if name in raw)
    metadata = {k: v for k, v in raw.items() if k not in used}

    return CanonicalRecord(
        transaction_id=transaction_id,
        reference=reference,
        amount=amount,
        currency=currency.upper() if currency else None,
        date=txn_date,
        metadata=metadata,
    )


def normalize_batch(
    records: Iterable[Mapping[str, Any]], *, source: str
) -> list[CanonicalRecord]:
    """Normalise a whole input list, all or nothing.

    Raises:
        RecordError: For the first bad record, tagged with its index and source
    """
    normalized: list[CanonicalRecord] = []
    for index, raw in enumerate(records):
        if not isinstance(raw, Mapping):
            msg = f"expected an object, got {type(raw).__name__}"
            raise RecordError(msg, index=index, source=source)
        try:
            normalized.append(normalize_record(raw))
        except RecordError as e:
            raise RecordError(str(e), index=index, source=source) from e
    return normalized
