from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from fxledger.balance import balance_series
from fxledger.errors import ValidationError
from fxledger.flow import running_totals, sums_by_currency
from fxledger.models import Account, Transaction
from fxledger.validation import normalize_currency

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

TREND_RANGES = {"lastMonth", "lastYear", "all"}
TREND_GRANULARITIES = {"daily", "monthly"}
LAST_MONTH_DAYS = 30


@dataclass(frozen=True)
class Interval:
    start: date
    end: date
    label: str


@dataclass(frozen=True)
class TrendPoint:
    date: str
    bucket_start: date
    bucket_end: date
    original_amount: Optional[Decimal]
    original_currency: str
    converted_amount: Optional[Decimal]
    transaction_count: int
    has_conversion_error: bool


def normalize_range(value: str) -> str:
    normalized = value.strip()
    for candidate in TREND_RANGES:
        if candidate.lower() == normalized.lower():
            return candidate
    raise ValidationError("Invalid range. Use lastMonth, lastYear, or all.")


def normalize_granularity(value: Optional[str], range_name: str) -> str:
    if value is None or not value.strip():
        return "daily" if range_name == "lastMonth" else "monthly"
    normalized = value.strip().lower()
    if normalized not in TREND_GRANULARITIES:
        raise ValidationError("Invalid granularity. Use daily or monthly.")
    return normalized


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(value.day, last_day)
    return date(year, month, day)


def month_end(value: date) -> date:
    next_month = shift_month(month_start(value), 1)
    return next_month - timedelta(days=1)


def resolve_range(
    range_name: str, today: date, earliest: Optional[date] = None
) -> tuple[date, date]:
    if range_name == "lastMonth":
        return today - timedelta(days=LAST_MONTH_DAYS), today
    if range_name == "lastYear":
        return shift_month_keep_day(today, -12), today
    if range_name == "all":
        if earliest is None:
            return shift_month_keep_day(today, -12), today
        return min(earliest, today), today
    raise ValidationError("Invalid range. Use lastMonth, lastYear, or all.")


def build_intervals(start: date, end: date, granularity: str) -> List[Interval]:
    """Contiguous buckets covering ``[start, end]``; edge months are clipped."""
    if start > end:
        raise ValidationError("start must be on or before end.")
    intervals: List[Interval] = []
    cursor = start
    while cursor <= end:
        if granularity == "daily":
            bucket_end = cursor
            label = cursor.isoformat()
        elif granularity == "monthly":
            bucket_end = min(month_end(cursor), end)
            label = cursor.strftime("%Y-%m")
        else:
            raise ValidationError("Invalid granularity. Use daily or monthly.")
        intervals.append(Interval(start=cursor, end=bucket_end, label=label))
        cursor = bucket_end + timedelta(days=1)
    return intervals


class TrendAggregator:
    def __init__(self, ledger, converter) -> None:
        self.ledger = ledger
        self.converter = converter

    def build_series(
        self,
        user_id: int,
        account_id: int,
        range_name: str = "lastYear",
        granularity: Optional[str] = None,
        display_currency: Optional[str] = None,
        today: Optional[date] = None,
        cumulative: bool = False,
    ) -> List[TrendPoint]:
        """Chart series for one account, converted to ``display_currency``.

        Stock accounts report the balance at each bucket end; flow accounts
        report the bucket's total, or the running total when ``cumulative``.
        Every bucket is converted with the rates in force at the range end.
        """
        account = self.ledger.require_account(user_id, account_id)
        range_name = normalize_range(range_name)
        granularity = normalize_granularity(granularity, range_name)
        target = normalize_currency(display_currency or account.currency)
        today = today or date.today()

        earliest = None
        if range_name == "all":
            earliest = self.ledger.earliest_transaction_date(user_id, account_id)
        start, end = resolve_range(range_name, today, earliest)
        intervals = build_intervals(start, end, granularity)

        if account.is_stock:
            entries = self.ledger.transactions_for_account(user_id, account_id, end=end)
            native = _stock_amounts(entries, intervals, account)
        else:
            entries = self.ledger.transactions_for_account(
                user_id, account_id, start=start, end=end
            )
            native = _flow_amounts(entries, intervals, account, cumulative)

        points = self._convert(user_id, account, intervals, native, entries, target, end)
        logger.debug(
            "Built %d %s buckets for account %s (%s)",
            len(points),
            granularity,
            account_id,
            range_name,
        )
        return points

    def _convert(
        self,
        user_id: int,
        account: Account,
        intervals: List[Interval],
        native: List[Dict[str, Optional[Decimal]]],
        entries: List[Transaction],
        target: str,
        as_of: date,
    ) -> List[TrendPoint]:
        items = []
        for amounts in native:
            for currency, amount in amounts.items():
                if amount is not None:
                    items.append((amount, currency))
        results = iter(
            self.converter.convert_multiple_currencies(user_id, items, target, as_of)
        )

        points: List[TrendPoint] = []
        for interval, amounts in zip(intervals, native):
            converted: Optional[Decimal] = None
            has_error = False
            for amount in amounts.values():
                if amount is None:
                    continue
                result = next(results)
                converted = (converted or ZERO) + result.converted_amount
                has_error = has_error or not result.success
            points.append(
                TrendPoint(
                    date=interval.label,
                    bucket_start=interval.start,
                    bucket_end=interval.end,
                    original_amount=amounts.get(account.currency),
                    original_currency=account.currency,
                    converted_amount=converted,
                    transaction_count=sum(
                        1 for txn in entries if interval.start <= txn.date <= interval.end
                    ),
                    has_conversion_error=has_error,
                )
            )
        return points


def _currencies(entries: List[Transaction], account: Account) -> List[str]:
    others = sorted({txn.currency for txn in entries} - {account.currency})
    return [account.currency] + others


def _stock_amounts(
    entries: List[Transaction], intervals: List[Interval], account: Account
) -> List[Dict[str, Optional[Decimal]]]:
    boundaries = [interval.end for interval in intervals]
    series = {
        currency: balance_series(entries, boundaries, currency)
        for currency in _currencies(entries, account)
    }
    return [
        {currency: values[index] for currency, values in series.items()}
        for index in range(len(intervals))
    ]


def _flow_amounts(
    entries: List[Transaction],
    intervals: List[Interval],
    account: Account,
    cumulative: bool,
) -> List[Dict[str, Optional[Decimal]]]:
    currencies = _currencies(entries, account)
    per_bucket = [
        sums_by_currency(entries, account.type, interval.start, interval.end)
        for interval in intervals
    ]
    series = {
        currency: [totals.get(currency, ZERO) for totals in per_bucket]
        for currency in currencies
    }
    if cumulative:
        series = {currency: running_totals(values) for currency, values in series.items()}
    # other currencies only appear in buckets where they contribute
    return [
        {
            currency: values[index]
            for currency, values in series.items()
            if currency == account.currency or values[index] != ZERO
        }
        for index in range(len(intervals))
    ]
