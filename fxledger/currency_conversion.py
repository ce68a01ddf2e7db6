from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from fxledger.errors import PersistenceError
from fxledger.models import ConversionResult
from fxledger.validation import coerce_date, coerce_decimal, normalize_currency

logger = logging.getLogger(__name__)

ONE = Decimal("1")

RateKey = tuple[str, str, date]


class CurrencyConverter:
    """Converts amounts with the rates stored for a user.

    A direct row is preferred, then the inverse of the opposite row. Missing
    rates are reported through ``ConversionResult.success`` rather than raised.
    """

    def __init__(self, store) -> None:
        self.store = store

    def lookup_rate(
        self,
        user_id: int,
        source_currency: str,
        target_currency: str,
        as_of: Optional[date | str] = None,
    ) -> Optional[tuple[Decimal, date]]:
        """Rate and effective date used for ``source -> target`` on ``as_of``."""
        day = _resolve_date(as_of)
        if _same_currency(source_currency, target_currency):
            return ONE, day
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)

        direct = self.store.find_latest_rate(user_id, source, target, day)
        if direct is not None:
            return direct.rate, direct.effective_date

        opposite = self.store.find_latest_rate(user_id, target, source, day)
        if opposite is not None:
            if opposite.rate <= 0:
                logger.warning(
                    "Ignoring non-positive rate %s for %s/%s", opposite.rate, target, source
                )
                return None
            return ONE / opposite.rate, opposite.effective_date
        return None

    def convert(
        self,
        user_id: int,
        amount: Decimal | float | int | str,
        source_currency: str,
        target_currency: str,
        as_of: Optional[date | str] = None,
    ) -> ConversionResult:
        day = _resolve_date(as_of)
        coerced_amount = coerce_decimal(amount)
        found = self.lookup_rate(user_id, source_currency, target_currency, day)
        return _build_result(coerced_amount, source_currency, target_currency, found)

    def convert_multiple_currencies(
        self,
        user_id: int,
        amounts: Iterable[tuple[Decimal | float | int | str, str]],
        target_currency: str,
        as_of: Optional[date | str] = None,
    ) -> List[ConversionResult]:
        """Convert ``(amount, currency)`` items to one target currency.

        The output has one result per input, in input order. Each distinct
        currency is looked up once per call.
        """
        rate_cache: Dict[RateKey, Optional[tuple[Decimal, date]]] = {}
        results: List[ConversionResult] = []
        for amount, currency in amounts:
            try:
                day = _resolve_date(as_of)
                coerced_amount = coerce_decimal(amount)
                key = (_cache_code(currency), _cache_code(target_currency), day)
                if key not in rate_cache:
                    rate_cache[key] = self.lookup_rate(user_id, currency, target_currency, day)
                results.append(
                    _build_result(coerced_amount, currency, target_currency, rate_cache[key])
                )
            except (ValueError, ArithmeticError, PersistenceError) as exc:
                logger.warning("Conversion of %s %s failed: %s", amount, currency, exc)
                results.append(
                    ConversionResult(
                        original_amount=amount,
                        original_currency=currency,
                        converted_amount=amount,
                        target_currency=target_currency,
                        rate=ONE,
                        success=False,
                        error=str(exc),
                    )
                )
        return results

    def missing_rates(
        self,
        user_id: int,
        base_currency: str,
        as_of: Optional[date | str] = None,
    ) -> List[tuple[str, str]]:
        """Active currencies that cannot be converted into ``base_currency``."""
        base = normalize_currency(base_currency)
        day = _resolve_date(as_of)
        missing: List[tuple[str, str]] = []
        for currency in self.store.active_currencies(user_id):
            if currency == base:
                continue
            if self.lookup_rate(user_id, currency, base, day) is None:
                missing.append((currency, base))
        return missing


def _build_result(
    amount: Decimal,
    source_currency: str,
    target_currency: str,
    found: Optional[tuple[Decimal, date]],
) -> ConversionResult:
    if found is None:
        return ConversionResult(
            original_amount=amount,
            original_currency=source_currency,
            converted_amount=amount,
            target_currency=target_currency,
            rate=ONE,
            success=False,
            error=f"No exchange rate from {source_currency} to {target_currency}.",
        )
    rate, rate_date = found
    return ConversionResult(
        original_amount=amount,
        original_currency=source_currency,
        converted_amount=amount * rate,
        target_currency=target_currency,
        rate=rate,
        success=True,
        rate_date=rate_date,
    )


def _same_currency(source_currency: str, target_currency: str) -> bool:
    return _cache_code(source_currency) == _cache_code(target_currency)


def _cache_code(value: str) -> str:
    return (value or "").strip().upper()


def _resolve_date(value: Optional[date | str]) -> date:
    if value is None:
        return date.today()
    return coerce_date(value)
