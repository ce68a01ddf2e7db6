from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from fxledger.errors import ValidationError
from fxledger.models import Transaction, TransactionType

ZERO = Decimal("0")


def balance_as_of(
    transactions: Iterable[Transaction],
    as_of: date,
    currency: Optional[str] = None,
) -> Optional[Decimal]:
    """Rebuild a stock balance from the latest checkpoint on or before ``as_of``.

    Returns ``None`` when no checkpoint exists yet; a missing snapshot is not
    the same thing as a zero balance.
    """
    entries = [
        txn
        for txn in _chronological(transactions, currency)
        if txn.date <= as_of
    ]
    checkpoint = _latest_checkpoint(entries)
    if checkpoint is None:
        return None

    running = _coerce_amount(checkpoint.amount)
    for txn in entries:
        if txn.is_checkpoint or txn.date <= checkpoint.date:
            continue
        running += _signed_amount(txn)
    return running


def balances_as_of(
    transactions: Iterable[Transaction], as_of: date
) -> Dict[str, Decimal]:
    """Balance per transaction currency. Currencies without a checkpoint are omitted."""
    by_currency: Dict[str, List[Transaction]] = {}
    for txn in transactions:
        by_currency.setdefault(txn.currency, []).append(txn)

    balances: Dict[str, Decimal] = {}
    for currency, entries in by_currency.items():
        balance = balance_as_of(entries, as_of)
        if balance is not None:
            balances[currency] = balance
    return balances


def balance_series(
    transactions: Iterable[Transaction],
    boundaries: Sequence[date],
    currency: Optional[str] = None,
) -> List[Optional[Decimal]]:
    """Balances at each boundary, walking the ledger once.

    The running balance is carried from one boundary to the next and is only
    re-anchored when a checkpoint is crossed, so the output matches calling
    ``balance_as_of`` for every boundary independently.
    """
    for previous, current in zip(boundaries, boundaries[1:]):
        if current < previous:
            raise ValueError("boundaries must be in chronological order.")

    entries = _chronological(transactions, currency)
    results: List[Optional[Decimal]] = []
    running: Optional[Decimal] = None
    checkpoint_date: Optional[date] = None
    index = 0
    for boundary in boundaries:
        while index < len(entries) and entries[index].date <= boundary:
            txn = entries[index]
            index += 1
            if txn.is_checkpoint:
                running = _coerce_amount(txn.amount)
                checkpoint_date = txn.date
            elif running is not None and txn.date > checkpoint_date:
                running += _signed_amount(txn)
        results.append(running)
    return results


def checkpoint_delta(
    transactions: Iterable[Transaction],
    as_of: date,
    amount: Decimal,
    currency: Optional[str] = None,
) -> tuple[Optional[Decimal], Optional[Decimal]]:
    """Prior balance and signed change for a new checkpoint of ``amount``.

    Both are ``None`` for the first checkpoint of an account.
    """
    prior = balance_as_of(transactions, as_of, currency)
    if prior is None:
        return None, None
    return prior, _coerce_amount(amount) - prior


class BalanceReconstructor:
    def __init__(self, ledger) -> None:
        self.ledger = ledger

    def balance_as_of(
        self, user_id: int, account_id: int, currency: str, as_of: date
    ) -> Optional[Decimal]:
        self._require_stock_account(user_id, account_id)
        entries = self.ledger.transactions_for_account(
            user_id, account_id, end=as_of, currency=currency
        )
        return balance_as_of(entries, as_of, currency)

    def balances_as_of(
        self, user_id: int, account_id: int, as_of: date
    ) -> Dict[str, Decimal]:
        self._require_stock_account(user_id, account_id)
        entries = self.ledger.transactions_for_account(user_id, account_id, end=as_of)
        return balances_as_of(entries, as_of)

    def balance_series(
        self,
        user_id: int,
        account_id: int,
        currency: str,
        boundaries: Sequence[date],
    ) -> List[Optional[Decimal]]:
        self._require_stock_account(user_id, account_id)
        if not boundaries:
            return []
        entries = self.ledger.transactions_for_account(
            user_id, account_id, end=max(boundaries), currency=currency
        )
        return balance_series(entries, boundaries, currency)

    def _require_stock_account(self, user_id: int, account_id: int) -> None:
        account = self.ledger.require_account(user_id, account_id)
        if not account.is_stock:
            raise ValidationError("Balances are only reconstructed for asset or liability accounts.")


def _chronological(
    transactions: Iterable[Transaction], currency: Optional[str]
) -> List[Transaction]:
    # sorted() is stable, so same-day entries keep ledger order
    return sorted(
        (txn for txn in transactions if currency is None or txn.currency == currency),
        key=lambda txn: txn.date,
    )


def _latest_checkpoint(entries: Sequence[Transaction]) -> Optional[Transaction]:
    for txn in reversed(entries):
        if txn.is_checkpoint:
            return txn
    return None


def _signed_amount(txn: Transaction) -> Decimal:
    # same rule for ASSET and LIABILITY accounts
    if txn.type == TransactionType.INCOME:
        return _coerce_amount(txn.amount)
    if txn.type == TransactionType.EXPENSE:
        return -_coerce_amount(txn.amount)
    return ZERO


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
