from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from fxledger.errors import ValidationError
from fxledger.models import AccountType, Transaction, TransactionType

ZERO = Decimal("0")

FLOW_TRANSACTION_TYPE = {
    AccountType.INCOME: TransactionType.INCOME,
    AccountType.EXPENSE: TransactionType.EXPENSE,
}


def sum_in_period(
    transactions: Iterable[Transaction],
    account_type: str,
    start: date,
    end: date,
    currency: Optional[str] = None,
) -> Decimal:
    totals = sums_by_currency(transactions, account_type, start, end)
    if currency is not None:
        return totals.get(currency, ZERO)
    return sum(totals.values(), ZERO)


def sums_by_currency(
    transactions: Iterable[Transaction],
    account_type: str,
    start: date,
    end: date,
) -> Dict[str, Decimal]:
    if start > end:
        raise ValidationError("start must be on or before end.")
    counted_type = _counted_type(account_type)
    totals: Dict[str, Decimal] = {}
    for txn in transactions:
        if txn.type != counted_type:
            continue
        if not start <= txn.date <= end:
            continue
        totals[txn.currency] = totals.get(txn.currency, ZERO) + _coerce_amount(txn.amount)
    return totals


def running_totals(amounts: Iterable[Decimal]) -> List[Decimal]:
    totals: List[Decimal] = []
    running = ZERO
    for amount in amounts:
        running += _coerce_amount(amount)
        totals.append(running)
    return totals


class FlowAggregator:
    def __init__(self, ledger) -> None:
        self.ledger = ledger

    def sum_in_period(
        self,
        user_id: int,
        account_id: int,
        start: date,
        end: date,
        currency: Optional[str] = None,
    ) -> Decimal:
        account = self._require_flow_account(user_id, account_id)
        entries = self.ledger.transactions_for_account(
            user_id, account_id, start=start, end=end, currency=currency
        )
        return sum_in_period(entries, account.type, start, end, currency)

    def sums_by_currency(
        self, user_id: int, account_id: int, start: date, end: date
    ) -> Dict[str, Decimal]:
        account = self._require_flow_account(user_id, account_id)
        entries = self.ledger.transactions_for_account(
            user_id, account_id, start=start, end=end
        )
        return sums_by_currency(entries, account.type, start, end)

    def cumulative_series(
        self,
        user_id: int,
        account_id: int,
        periods: Sequence[tuple[date, date]],
        currency: Optional[str] = None,
    ) -> List[Decimal]:
        """Running totals over consecutive ``(start, end)`` periods."""
        account = self._require_flow_account(user_id, account_id)
        if not periods:
            return []
        entries = self.ledger.transactions_for_account(
            user_id,
            account_id,
            start=min(start for start, _ in periods),
            end=max(end for _, end in periods),
            currency=currency,
        )
        return running_totals(
            sum_in_period(entries, account.type, start, end, currency)
            for start, end in periods
        )

    def _require_flow_account(self, user_id: int, account_id: int):
        account = self.ledger.require_account(user_id, account_id)
        if not account.is_flow:
            raise ValidationError("Period sums are only computed for income or expense accounts.")
        return account


def _counted_type(account_type: str) -> str:
    try:
        return FLOW_TRANSACTION_TYPE[account_type]
    except KeyError as exc:
        raise ValidationError(f"Not a flow account type: {account_type}") from exc


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
