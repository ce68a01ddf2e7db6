from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional

from fxledger.errors import ValidationError


class RateType:
    USER = "USER"
    API = "API"
    AUTO = "AUTO"
    values = {USER, API, AUTO}
    primary = {USER, API}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValidationError("Invalid rate type.")
        return normalized


class AccountType:
    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    values = {ASSET, LIABILITY, INCOME, EXPENSE}
    stock = {ASSET, LIABILITY}
    flow = {INCOME, EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValidationError("Invalid account type.")
        return normalized


class TransactionType:
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    BALANCE = "BALANCE"
    values = {INCOME, EXPENSE, BALANCE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValidationError("Invalid transaction type.")
        return normalized


@dataclass(frozen=True)
class Currency:
    code: str
    symbol: str = ""
    decimal_places: int = 2
    created_by: Optional[int] = None


@dataclass(frozen=True)
class ExchangeRate:
    from_currency: str
    to_currency: str
    rate: Decimal
    effective_date: date
    type: str = RateType.USER
    user_id: Optional[int] = None
    id: Optional[int] = None
    source_rate_id: Optional[int] = None
    notes: Optional[str] = None

    @property
    def pair(self) -> tuple[str, str]:
        return self.from_currency, self.to_currency

    @property
    def is_primary(self) -> bool:
        return self.type in RateType.primary


@dataclass(frozen=True)
class Account:
    id: int
    user_id: int
    name: str
    type: str
    currency: str

    @property
    def is_stock(self) -> bool:
        return self.type in AccountType.stock

    @property
    def is_flow(self) -> bool:
        return self.type in AccountType.flow


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    currency: str
    account_id: Optional[int] = None
    user_id: Optional[int] = None
    id: Optional[int] = None
    notes: Optional[str] = None
    prior_balance: Optional[Decimal] = None
    delta: Optional[Decimal] = None

    @property
    def is_checkpoint(self) -> bool:
        return self.type == TransactionType.BALANCE


@dataclass
class DerivationResult:
    generated_count: int = 0
    reverse_count: int = 0
    transitive_count: int = 0
    errors: List[str] = field(default_factory=list)
    rates: List[ExchangeRate] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class ConversionResult:
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    target_currency: str
    rate: Decimal
    success: bool
    rate_date: Optional[date] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PruneResult:
    cleaned_count: int
    currency_pairs: List[str]
