"""Derivation of AUTO exchange rates from a user's USER and API rates.

The primary rates form a sparse directed graph over currency codes. The
derivation completes it in two steps:

1. every primary edge A->B without a counterpart gets B->A = 1/r;
2. a fixed-point closure fills the remaining gaps between active
   currencies, one round at a time, until a round adds nothing.

Each round reads only the edges that existed when it started, so the result
does not depend on the order pairs are visited in. Within a pair the first
method that applies wins: a two-hop product through an intermediate
currency, then the inverse of an edge derived in an earlier round, then the
quotient of two rates into a common base. Intermediates and bases are tried
in sorted code order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from fxledger.errors import PersistenceError
from fxledger.models import DerivationResult, ExchangeRate, RateType
from fxledger.validation import coerce_date

logger = logging.getLogger(__name__)

ONE = Decimal("1")

METHOD_PRIMARY = "primary"
METHOD_REVERSE = "reverse"
METHOD_TWO_HOP = "two-hop"
METHOD_INVERSE = "inverse"
METHOD_COMMON_BASE = "common-base"

Pair = tuple[str, str]


@dataclass(frozen=True)
class RateEdge:
    rate: Decimal
    method: str
    hops: int = 1
    via: Optional[str] = None
    source_rate_id: Optional[int] = None

    @property
    def is_primary(self) -> bool:
        return self.method == METHOD_PRIMARY

    def describe(self, source: str, target: str) -> str:
        if self.method == METHOD_REVERSE:
            return f"Reverse of {target}/{source}"
        if self.method == METHOD_TWO_HOP:
            return f"Two-hop via {self.via}"
        if self.method == METHOD_INVERSE:
            return f"Inverse of derived {target}/{source}"
        if self.method == METHOD_COMMON_BASE:
            return f"Common base {self.via}"
        return "Primary rate"


def latest_primary_rates(primary_rates: Iterable[ExchangeRate]) -> Dict[Pair, ExchangeRate]:
    """Newest row per currency pair; same-day ties go to the higher id."""
    latest: Dict[Pair, ExchangeRate] = {}
    for rate in primary_rates:
        current = latest.get(rate.pair)
        if current is None or _is_newer(rate, current):
            latest[rate.pair] = rate
    return latest


def derive_rate_edges(
    primary_rates: Iterable[ExchangeRate],
    currencies: Iterable[str],
) -> tuple[Dict[Pair, RateEdge], List[str]]:
    """Complete the rate graph. Returns the edge map and per-pair errors.

    Primary edges are kept untouched. Pairs with no path stay absent.
    """
    edges: Dict[Pair, RateEdge] = {}
    errors: List[str] = []

    failed: set[Pair] = set()
    latest = latest_primary_rates(primary_rates)
    for pair, rate in latest.items():
        edges[pair] = RateEdge(
            rate=rate.rate, method=METHOD_PRIMARY, source_rate_id=rate.id
        )

    for (source, target), rate in sorted(latest.items()):
        if (target, source) in edges:
            continue
        try:
            edges[(target, source)] = RateEdge(
                rate=_positive(ONE / rate.rate),
                method=METHOD_REVERSE,
                source_rate_id=rate.id,
            )
        except ArithmeticError as exc:
            failed.add((target, source))
            _record_error(errors, target, source, exc)

    codes = sorted(set(currencies))
    while True:
        snapshot = dict(edges)
        added: Dict[Pair, RateEdge] = {}
        for source in codes:
            for target in codes:
                pair = (source, target)
                if source == target or pair in snapshot or pair in failed:
                    continue
                try:
                    edge = _solve_pair(snapshot, codes, source, target)
                except ArithmeticError as exc:
                    failed.add(pair)
                    _record_error(errors, source, target, exc)
                    continue
                if edge is not None:
                    added[pair] = edge
        if not added:
            break
        edges.update(added)

    return edges, errors


class RateGraphDeriver:
    def __init__(self, store) -> None:
        self.store = store

    def derive(
        self, user_id: int, effective_date: Optional[date | str] = None
    ) -> DerivationResult:
        """Rebuild every AUTO rate of ``user_id`` for ``effective_date``.

        The old AUTO rows are replaced in a single transaction. A failed write
        raises ``PersistenceError`` and leaves the previous set in place.
        """
        day = coerce_date(effective_date) if effective_date else date.today()
        primary_rates = self.store.list_primary_rates(user_id)
        currencies = self.store.active_currencies(user_id)
        if not currencies:
            currencies = sorted({code for rate in primary_rates for code in rate.pair})

        edges, errors = derive_rate_edges(primary_rates, currencies)
        derived = [
            ExchangeRate(
                user_id=user_id,
                from_currency=source,
                to_currency=target,
                rate=edge.rate,
                effective_date=day,
                type=RateType.AUTO,
                source_rate_id=edge.source_rate_id,
                notes=edge.describe(source, target),
            )
            for (source, target), edge in sorted(edges.items())
            if not edge.is_primary
        ]

        try:
            self.store.replace_auto_rates(user_id, derived)
        except PersistenceError:
            logger.error("Rate derivation for user %s aborted; previous AUTO rates kept", user_id)
            raise

        reverse_count = sum(1 for edge in edges.values() if edge.method == METHOD_REVERSE)
        result = DerivationResult(
            generated_count=len(derived),
            reverse_count=reverse_count,
            transitive_count=len(derived) - reverse_count,
            errors=errors,
            rates=derived,
        )
        logger.info(
            "Derived %d AUTO rates for user %s on %s (%d reverse, %d transitive, %d errors)",
            result.generated_count,
            user_id,
            day.isoformat(),
            result.reverse_count,
            result.transitive_count,
            len(errors),
        )
        return result


def _solve_pair(
    edges: Dict[Pair, RateEdge],
    codes: Sequence[str],
    source: str,
    target: str,
) -> Optional[RateEdge]:
    for mid in codes:
        if mid in (source, target):
            continue
        first = edges.get((source, mid))
        second = edges.get((mid, target))
        if first is not None and second is not None:
            return RateEdge(
                rate=_positive(first.rate * second.rate),
                method=METHOD_TWO_HOP,
                hops=first.hops + second.hops,
                via=mid,
            )

    opposite = edges.get((target, source))
    if opposite is not None:
        return RateEdge(
            rate=_positive(ONE / opposite.rate),
            method=METHOD_INVERSE,
            hops=opposite.hops,
        )

    for base in codes:
        if base in (source, target):
            continue
        into_base = edges.get((source, base))
        other_into_base = edges.get((target, base))
        if into_base is not None and other_into_base is not None:
            return RateEdge(
                rate=_positive(into_base.rate / other_into_base.rate),
                method=METHOD_COMMON_BASE,
                hops=into_base.hops + other_into_base.hops,
                via=base,
            )
    return None


def _positive(rate: Decimal) -> Decimal:
    if not rate.is_finite() or rate <= 0:
        raise ArithmeticError(f"derived rate {rate} is not positive")
    return rate


def _is_newer(candidate: ExchangeRate, current: ExchangeRate) -> bool:
    if candidate.effective_date != current.effective_date:
        return candidate.effective_date > current.effective_date
    return (candidate.id or 0) > (current.id or 0)


def _record_error(errors: List[str], source: str, target: str, exc: Exception) -> None:
    message = f"Could not derive {source}/{target}: {exc}"
    logger.warning(message)
    errors.append(message)
