"""Matching tolerances, snapshotted onto every persisted run."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

MAX_FUZZY_THRESHOLD = 100


class ToleranceError(ValueError):
    """Raised when a tolerance knob is out of range or not a number."""


def _to_decimal(name: str, value: Any) -> Decimal:  # noqa: ANN401
    if isinstance(value, bool):
        msg = f"{name} must be numeric, got {value!r}"
        raise ToleranceError(msg)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        msg = f"{name} must be numeric, got {value!r}"
        raise ToleranceError(msg) from None


def _to_int(name: str, value: Any) -> int:  # noqa: ANN401
    dec = _to_decimal(name, value)
    if dec != dec.to_integral_value():
        msg = f"{name} must be a whole number, got {value!r}"
        raise ToleranceError(msg)
    return int(dec)


@dataclass(frozen=True)
class ToleranceConfig:
    """The four matching knobs.

    Defaults give exact-match-only behaviour: no amount slack, same-day dates
    and fuzzy reference matching switched off (``fuzzy_match_threshold=None``).
    """

    amount_percentage_tolerance: Decimal = Decimal(0)
    amount_absolute_tolerance: Decimal = Decimal(0)
    date_tolerance_days: int = 0
    fuzzy_match_threshold: int | None = None

    @property
    def fuzzy_enabled(self) -> bool:
        return self.fuzzy_match_threshold is not None

    def validate(self) -> ToleranceConfig:
        """Check every knob is within range.

        Returns:
            self, so calls can be chained

        Raises:
            ToleranceError: If any value is out of range
        """
        pct = self.amount_percentage_tolerance
        if pct < 0 or pct > 1:
            msg = (
                "amount_percentage_tolerance must be a fraction between 0 and 1, "
                f"got {pct}"
            )
            raise ToleranceError(msg)
        if self.amount_absolute_tolerance < 0:
            msg = (
                "amount_absolute_tolerance must be >= 0, "
                f"got {self.amount_absolute_tolerance}"
            )
            raise ToleranceError(msg)
        if self.date_tolerance_days < 0:
            msg = f"date_tolerance_days must be >= 0, got {self.date_tolerance_days}"
            raise ToleranceError(msg)
        threshold = self.fuzzy_match_threshold
        if threshold is not None and not 0 <= threshold <= MAX_FUZZY_THRESHOLD:
            msg = f"fuzzy_match_threshold must be between 0 and 100, got {threshold}"
            raise ToleranceError(msg)
        return self

    @classmethod
    def from_options(
        cls,
        *,
        amount_percentage_tolerance: Any = None,  # noqa: ANN401
        amount_absolute_tolerance: Any = None,  # noqa: ANN401
        date_tolerance: Any = None,  # noqa: ANN401
        fuzzy_match_threshold: Any = None,  # noqa: ANN401
    ) -> ToleranceConfig:
        """Build a validated config from loosely typed trigger options.

        ``None`` leaves the corresponding default in place.
        """
        defaults = cls()
        config = cls(
            amount_percentage_tolerance=(
                defaults.amount_percentage_tolerance
                if amount_percentage_tolerance is None
                else _to_decimal(
                    "amount_percentage_tolerance", amount_percentage_tolerance
                )
            ),
            amount_absolute_tolerance=(
                defaults.amount_absolute_tolerance
                if amount_absolute_tolerance is None
                else _to_decimal("amount_absolute_tolerance", amount_absolute_tolerance)
            ),
            date_tolerance_days=(
                defaults.date_tolerance_days
                if date_tolerance is None
                else _to_int("date_tolerance", date_tolerance)
            ),
            fuzzy_match_threshold=(
                None
                if fuzzy_match_threshold is None
                else _to_int("fuzzy_match_threshold", fuzzy_match_threshold)
            ),
        )
        return config.validate()

    def as_dict(self) -> dict[str, Any]:
        """JSON-safe snapshot for run metadata."""
        return {
            "amount_percentage_tolerance": str(self.amount_percentage_tolerance),
            "amount_absolute_tolerance": str(self.amount_absolute_tolerance),
            "date_tolerance_days": self.date_tolerance_days,
            "fuzzy_match_threshold": self.fuzzy_match_threshold,
        }
