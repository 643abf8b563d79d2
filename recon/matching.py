"""Greedy, priority-ordered matcher pairing app records with gateway records.

Each app record, in input order, is compared against the gateway records that
are still unpaired. Rules are tried in priority order and the first rule that
yields a candidate wins; among candidates the earliest in pool order is taken.
Paired records leave the pool, so the result is one-to-one and depends only on
input order.

1. transaction id: equal non-empty ids, nothing else checked
2. reference: equal non-empty references, amount within tolerance
3. fuzzy reference: similarity >= threshold, amount within tolerance,
   dates within tolerance (when both present)
4. amount + date: neither side has an id or reference, amounts exactly equal,
   dates within tolerance (when both present)

Rule 2 deliberately ignores dates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from rapidfuzz.distance import Levenshtein

from recon.tolerance import ToleranceConfig

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import date
    from decimal import Decimal

    from recon.normalize import CanonicalRecord

    Predicate = Callable[[CanonicalRecord, CanonicalRecord], bool]

MAX_SIMILARITY = 100


class MatchRule(StrEnum):
    TRANSACTION_ID = "transaction_id"
    REFERENCE = "reference"
    FUZZY_REFERENCE = "fuzzy_reference"
    AMOUNT_DATE = "amount_date"


@dataclass(frozen=True)
class MatchedPair:
    app: CanonicalRecord
    gateway: CanonicalRecord
    match_reference: str
    rule: MatchRule


@dataclass
class MatchResult:
    pairs: list[MatchedPair] = field(default_factory=list)
    unmatched_app: list[CanonicalRecord] = field(default_factory=list)
    unmatched_gateway: list[CanonicalRecord] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "total_matched": len(self.pairs),
            "total_unmatched_app": len(self.unmatched_app),
            "total_unmatched_gateway": len(self.unmatched_gateway),
        }


def amounts_within_tolerance(
    app_amount: Decimal, gateway_amount: Decimal, tolerance: ToleranceConfig
) -> bool:
    """Either the absolute or the percentage test is enough.

    The percentage is taken of the app amount, or of the gateway amount when
    the app amount is zero.
    """
    diff = abs(app_amount - gateway_amount)
    if diff <= tolerance.amount_absolute_tolerance:
        return True
    base = abs(app_amount) or abs(gateway_amount)
    if not base:
        return True
    return diff <= base * tolerance.amount_percentage_tolerance


def dates_within_tolerance(
    first: date | None, second: date | None, tolerance: ToleranceConfig
) -> bool:
    """A missing date on either side never blocks a match."""
    if first is None or second is None:
        return True
    return abs((first - second).days) <= tolerance.date_tolerance_days


def reference_similarity(first: str, second: str) -> int:
    """Edit-distance similarity of two references as a 0-100 score."""
    a = first.strip().lower()
    b = second.strip().lower()
    if a == b:
        return MAX_SIMILARITY
    max_len = max(len(a), len(b))
    distance = Levenshtein.distance(a, b)
    score = int((max_len - distance) / max_len * MAX_SIMILARITY)
    return max(0, min(MAX_SIMILARITY, score))


class MatchingEngine:
    """Stateless matcher; one instance can serve any number of runs."""

    def match(
        self,
        app_records: Sequence[CanonicalRecord],
        gateway_records: Sequence[CanonicalRecord],
        tolerance: ToleranceConfig | None = None,
    ) -> MatchResult:
        """Pair app records with gateway records.

        Args:
            app_records: Normalised app-side records, in processing order
            gateway_records: Normalised gateway-side records, in pool order
            tolerance: Matching knobs; defaults to exact matching only

        Returns:
            MatchResult with pairs and both sets of leftovers in input order
        """
        tolerance = (tolerance or ToleranceConfig()).validate()
        rules = self._rules(tolerance)

        pool = list(range(len(gateway_records)))
        result = MatchResult()

        for app in app_records:
            found = self._find(app, gateway_records, pool, rules)
            if found is None:
                result.unmatched_app.append(app)
                continue
            position, rule = found
            gateway_idx = pool.pop(position)
            result.pairs.append(
                MatchedPair(
                    app=app,
                    gateway=gateway_records[gateway_idx],
                    match_reference=f"M{len(result.pairs) + 1:06d}",
                    rule=rule,
                )
            )

        result.unmatched_gateway = [gateway_records[idx] for idx in pool]
        return result

    @staticmethod
    def _find(
        app: CanonicalRecord,
        gateway_records: Sequence[CanonicalRecord],
        pool: list[int],
        rules: list[tuple[MatchRule, Predicate]],
    ) -> tuple[int, MatchRule] | None:
        for rule, predicate in rules:
            for position, idx in enumerate(pool):
                if predicate(app, gateway_records[idx]):
                    return position, rule
        return None

    def _rules(self, tolerance: ToleranceConfig) -> list[tuple[MatchRule, Predicate]]:
        def by_transaction_id(app: CanonicalRecord, gw: CanonicalRecord) -> bool:
            return bool(app.transaction_id) and app.transaction_id == gw.transaction_id

        def by_reference(app: CanonicalRecord, gw: CanonicalRecord) -> bool:
            return (
                bool(app.reference)
                and app.reference == gw.reference
                and amounts_within_tolerance(app.amount, gw.amount, tolerance)
            )

        def by_fuzzy_reference(app: CanonicalRecord, gw: CanonicalRecord) -> bool:
            threshold = tolerance.fuzzy_match_threshold
            if threshold is None or not app.reference or not gw.reference:
                return False
            return (
                reference_similarity(app.reference, gw.reference) >= threshold
                and amounts_within_tolerance(app.amount, gw.amount, tolerance)
                and dates_within_tolerance(app.date, gw.date, tolerance)
            )

        def by_amount_and_date(app: CanonicalRecord, gw: CanonicalRecord) -> bool:
            if app.has_identifiers or gw.has_identifiers:
                return False
            return app.amount == gw.amount and dates_within_tolerance(
                app.date, gw.date, tolerance
            )

        rules: list[tuple[MatchRule, Predicate]] = [
            (MatchRule.TRANSACTION_ID, by_transaction_id),
            (MatchRule.REFERENCE, by_reference),
        ]
        if tolerance.fuzzy_enabled:
            rules.append((MatchRule.FUZZY_REFERENCE, by_fuzzy_reference))
        rules.append((MatchRule.AMOUNT_DATE, by_amount_and_date))
        return rules
