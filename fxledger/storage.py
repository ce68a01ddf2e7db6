from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    and_,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from fxledger.balance import checkpoint_delta
from fxledger.errors import NotFoundError, PersistenceError, ValidationError
from fxledger.models import (
    Account,
    AccountType,
    Currency,
    ExchangeRate,
    PruneResult,
    RateType,
    Transaction,
    TransactionType,
)
from fxledger.validation import (
    coerce_date,
    coerce_decimal,
    normalize_currency,
    validate_amount,
    validate_rate_input,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

currencies = Table(
    "currencies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(10), nullable=False),
    Column("symbol", String(10), nullable=False, server_default=""),
    Column("decimal_places", Integer, nullable=False, server_default="2"),
    Column("created_by", Integer),
    UniqueConstraint("code", "created_by", name="uq_currencies_code_owner"),
)

user_currencies = Table(
    "user_currencies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("currency_code", String(10), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    UniqueConstraint("user_id", "currency_code", name="uq_user_currencies_user_code"),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("from_currency", String(10), nullable=False),
    Column("to_currency", String(10), nullable=False),
    Column("rate", Numeric(28, 12), nullable=False),
    Column("effective_date", Date, nullable=False),
    Column("type", String(10), nullable=False),
    Column("source_rate_id", Integer, ForeignKey("exchange_rates.id")),
    Column("notes", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "user_id",
        "from_currency",
        "to_currency",
        "effective_date",
        name="uq_exchange_rates_user_pair_date",
    ),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("currency", String(10), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("currency", String(10), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(20, 8), nullable=False),
    Column("date", Date, nullable=False),
    Column("notes", String(500)),
    Column("prior_balance", Numeric(20, 8)),
    Column("delta", Numeric(20, 8)),
)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


@contextmanager
def _transaction(engine: Engine) -> Iterator[Connection]:
    try:
        with engine.begin() as conn:
            yield conn
    except SQLAlchemyError as exc:
        logger.error("Database operation failed: %s", exc)
        raise PersistenceError(str(exc)) from exc


class RateStore:
    """Currencies and exchange-rate rows, always scoped to one user."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def register_currency(
        self,
        user_id: int,
        code: str,
        symbol: str = "",
        decimal_places: int = 2,
        custom: bool = False,
    ) -> Currency:
        """Create the currency if needed and mark it active for ``user_id``."""
        normalized = normalize_currency(code)
        if decimal_places < 0:
            raise ValidationError("decimal_places must be zero or greater.")
        with _transaction(self.engine) as conn:
            row = self._find_currency(conn, user_id, normalized)
            if row is None:
                conn.execute(
                    insert(currencies).values(
                        code=normalized,
                        symbol=symbol,
                        decimal_places=decimal_places,
                        created_by=user_id if custom else None,
                    )
                )
                row = self._find_currency(conn, user_id, normalized)

            link = conn.execute(
                select(user_currencies.c.id).where(
                    user_currencies.c.user_id == user_id,
                    user_currencies.c.currency_code == normalized,
                )
            ).first()
            if link:
                conn.execute(
                    update(user_currencies)
                    .where(user_currencies.c.id == link[0])
                    .values(is_active=True)
                )
            else:
                conn.execute(
                    insert(user_currencies).values(
                        user_id=user_id, currency_code=normalized, is_active=True
                    )
                )
        return _currency_from_row(row)

    def deactivate_currency(self, user_id: int, code: str) -> None:
        normalized = normalize_currency(code)
        with _transaction(self.engine) as conn:
            conn.execute(
                update(user_currencies)
                .where(
                    user_currencies.c.user_id == user_id,
                    user_currencies.c.currency_code == normalized,
                )
                .values(is_active=False)
            )

    def get_currency(self, user_id: int, code: str) -> Optional[Currency]:
        normalized = normalize_currency(code)
        with _transaction(self.engine) as conn:
            row = self._find_currency(conn, user_id, normalized)
        return _currency_from_row(row) if row else None

    def active_currencies(self, user_id: int) -> List[str]:
        with _transaction(self.engine) as conn:
            rows = conn.execute(
                select(user_currencies.c.currency_code)
                .where(
                    user_currencies.c.user_id == user_id,
                    user_currencies.c.is_active.is_(True),
                )
                .order_by(user_currencies.c.currency_code.asc())
            ).all()
        return [row[0] for row in rows]

    def add_rate(
        self,
        user_id: int,
        from_currency: str,
        to_currency: str,
        rate: Decimal | float | int | str,
        effective_date: date | str,
        rate_type: str = RateType.USER,
        notes: Optional[str] = None,
        today: Optional[date] = None,
    ) -> ExchangeRate:
        """Store a USER or API rate.

        An AUTO row already occupying the same key is dropped in the same
        transaction; the next derivation regenerates whatever it still needs.
        """
        source, target, value, day, normalized_type = validate_rate_input(
            from_currency, to_currency, rate, effective_date, rate_type, today=today
        )
        with _transaction(self.engine) as conn:
            for code in (source, target):
                if self._find_currency(conn, user_id, code) is None:
                    raise ValidationError(f"Unknown currency: {code}")

            existing = conn.execute(
                select(exchange_rates.c.id, exchange_rates.c.type).where(
                    exchange_rates.c.user_id == user_id,
                    exchange_rates.c.from_currency == source,
                    exchange_rates.c.to_currency == target,
                    exchange_rates.c.effective_date == day,
                )
            ).mappings().first()
            if existing and existing["type"] in RateType.primary:
                raise ValidationError(
                    f"A rate for {source}/{target} on {day.isoformat()} already exists."
                )
            if existing:
                conn.execute(delete(exchange_rates).where(exchange_rates.c.id == existing["id"]))

            result = conn.execute(
                insert(exchange_rates).values(
                    user_id=user_id,
                    from_currency=source,
                    to_currency=target,
                    rate=value,
                    effective_date=day,
                    type=normalized_type,
                    notes=notes,
                )
            )
            rate_id = result.inserted_primary_key[0]
            row = self._select_rate(conn, user_id, rate_id)
        return _rate_from_row(row)

    def update_rate(
        self,
        user_id: int,
        rate_id: int,
        rate: Decimal | float | int | str,
        notes: Optional[str] = None,
    ) -> ExchangeRate:
        value = coerce_decimal(rate)
        if not value.is_finite() or value <= 0:
            raise ValidationError("Rate must be greater than zero.")
        with _transaction(self.engine) as conn:
            row = self._select_rate(conn, user_id, rate_id)
            if row is None:
                raise NotFoundError("Exchange rate not found.")
            if row["type"] == RateType.AUTO:
                raise ValidationError("AUTO rates are derived and cannot be edited.")
            values = {"rate": value}
            if notes is not None:
                values["notes"] = notes
            conn.execute(
                update(exchange_rates)
                .where(exchange_rates.c.id == rate_id, exchange_rates.c.user_id == user_id)
                .values(**values)
            )
            row = self._select_rate(conn, user_id, rate_id)
        return _rate_from_row(row)

    def delete_rate(self, user_id: int, rate_id: int) -> None:
        """Delete a primary rate together with the AUTO rows derived from it."""
        with _transaction(self.engine) as conn:
            row = self._select_rate(conn, user_id, rate_id)
            if row is None:
                raise NotFoundError("Exchange rate not found.")
            if row["type"] == RateType.AUTO:
                raise ValidationError("AUTO rates are derived and cannot be deleted directly.")
            conn.execute(
                delete(exchange_rates).where(
                    exchange_rates.c.user_id == user_id,
                    exchange_rates.c.source_rate_id == rate_id,
                    exchange_rates.c.type == RateType.AUTO,
                )
            )
            conn.execute(
                delete(exchange_rates).where(
                    exchange_rates.c.id == rate_id, exchange_rates.c.user_id == user_id
                )
            )

    def get_rate(self, user_id: int, rate_id: int) -> Optional[ExchangeRate]:
        with _transaction(self.engine) as conn:
            row = self._select_rate(conn, user_id, rate_id)
        return _rate_from_row(row) if row else None

    def list_rates(self, user_id: int, rate_type: Optional[str] = None) -> List[ExchangeRate]:
        conditions = [exchange_rates.c.user_id == user_id]
        if rate_type is not None:
            conditions.append(exchange_rates.c.type == RateType.validate(rate_type))
        with _transaction(self.engine) as conn:
            rows = conn.execute(
                select(exchange_rates)
                .where(*conditions)
                .order_by(
                    exchange_rates.c.from_currency.asc(),
                    exchange_rates.c.to_currency.asc(),
                    exchange_rates.c.effective_date.desc(),
                )
            ).mappings().all()
        return [_rate_from_row(row) for row in rows]

    def list_primary_rates(self, user_id: int) -> List[ExchangeRate]:
        """USER and API rows of every date, newest first."""
        with _transaction(self.engine) as conn:
            rows = conn.execute(
                select(exchange_rates)
                .where(
                    exchange_rates.c.user_id == user_id,
                    exchange_rates.c.type.in_(sorted(RateType.primary)),
                )
                .order_by(exchange_rates.c.effective_date.desc(), exchange_rates.c.id.desc())
            ).mappings().all()
        return [_rate_from_row(row) for row in rows]

    def find_latest_rate(
        self, user_id: int, from_currency: str, to_currency: str, as_of: date
    ) -> Optional[ExchangeRate]:
        with _transaction(self.engine) as conn:
            row = conn.execute(
                select(exchange_rates)
                .where(
                    exchange_rates.c.user_id == user_id,
                    exchange_rates.c.from_currency == from_currency,
                    exchange_rates.c.to_currency == to_currency,
                    exchange_rates.c.effective_date <= as_of,
                )
                .order_by(exchange_rates.c.effective_date.desc())
                .limit(1)
            ).mappings().first()
        return _rate_from_row(row) if row else None

    def replace_auto_rates(self, user_id: int, rates: Sequence[ExchangeRate]) -> int:
        """Swap the user's AUTO rows for ``rates`` in one transaction.

        Readers see either the previous AUTO set or the new one, never an
        empty table in between.
        """
        payload = [
            {
                "user_id": user_id,
                "from_currency": rate.from_currency,
                "to_currency": rate.to_currency,
                "rate": rate.rate,
                "effective_date": rate.effective_date,
                "type": RateType.AUTO,
                "source_rate_id": rate.source_rate_id,
                "notes": rate.notes,
            }
            for rate in rates
        ]
        with _transaction(self.engine) as conn:
            conn.execute(
                delete(exchange_rates).where(
                    exchange_rates.c.user_id == user_id,
                    exchange_rates.c.type == RateType.AUTO,
                )
            )
            if payload:
                conn.execute(insert(exchange_rates), payload)
        return len(payload)

    def prune_history(
        self,
        user_id: int,
        pairs: Optional[Iterable[tuple[str, str]]] = None,
    ) -> PruneResult:
        """Keep only the newest primary row of each currency pair."""
        conditions = [
            exchange_rates.c.user_id == user_id,
            exchange_rates.c.type.in_(sorted(RateType.primary)),
        ]
        if pairs is not None:
            normalized_pairs = [
                (normalize_currency(source), normalize_currency(target))
                for source, target in pairs
            ]
            if not normalized_pairs:
                return PruneResult(cleaned_count=0, currency_pairs=[])
            conditions.append(
                or_(
                    *(
                        and_(
                            exchange_rates.c.from_currency == source,
                            exchange_rates.c.to_currency == target,
                        )
                        for source, target in normalized_pairs
                    )
                )
            )

        with _transaction(self.engine) as conn:
            rows = conn.execute(
                select(
                    exchange_rates.c.id,
                    exchange_rates.c.from_currency,
                    exchange_rates.c.to_currency,
                )
                .where(*conditions)
                .order_by(
                    exchange_rates.c.from_currency.asc(),
                    exchange_rates.c.to_currency.asc(),
                    exchange_rates.c.effective_date.desc(),
                )
            ).mappings().all()

            stale_ids: List[int] = []
            cleaned_pairs: List[str] = []
            seen: set[tuple[str, str]] = set()
            for row in rows:
                pair = (row["from_currency"], row["to_currency"])
                if pair not in seen:
                    seen.add(pair)
                    continue
                stale_ids.append(row["id"])
                label = f"{pair[0]}/{pair[1]}"
                if label not in cleaned_pairs:
                    cleaned_pairs.append(label)

            if stale_ids:
                conn.execute(
                    delete(exchange_rates).where(
                        exchange_rates.c.user_id == user_id,
                        exchange_rates.c.source_rate_id.in_(stale_ids),
                    )
                )
                conn.execute(
                    delete(exchange_rates).where(
                        exchange_rates.c.user_id == user_id,
                        exchange_rates.c.id.in_(stale_ids),
                    )
                )
        logger.info("Pruned %d stale rate rows for user %s", len(stale_ids), user_id)
        return PruneResult(cleaned_count=len(stale_ids), currency_pairs=cleaned_pairs)

    def _find_currency(self, conn: Connection, user_id: int, code: str):
        return conn.execute(
            select(currencies)
            .where(
                currencies.c.code == code,
                or_(currencies.c.created_by.is_(None), currencies.c.created_by == user_id),
            )
            .order_by(currencies.c.created_by.desc().nulls_last())
            .limit(1)
        ).mappings().first()

    def _select_rate(self, conn: Connection, user_id: int, rate_id: int):
        return conn.execute(
            select(exchange_rates).where(
                exchange_rates.c.id == rate_id, exchange_rates.c.user_id == user_id
            )
        ).mappings().first()


class Ledger:
    """Accounts and their transactions.

    The engine only reads from here; the write methods are what the
    surrounding application calls, and they record checkpoint deltas as
    structured fields at write time.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def add_account(self, user_id: int, name: str, type: str, currency: str) -> Account:
        if not name or not name.strip():
            raise ValidationError("Account name required.")
        account_type = AccountType.validate(type)
        normalized_currency = normalize_currency(currency)
        with _transaction(self.engine) as conn:
            result = conn.execute(
                insert(accounts).values(
                    user_id=user_id,
                    name=name.strip(),
                    type=account_type,
                    currency=normalized_currency,
                )
            )
            account_id = result.inserted_primary_key[0]
        return Account(
            id=account_id,
            user_id=user_id,
            name=name.strip(),
            type=account_type,
            currency=normalized_currency,
        )

    def get_account(self, user_id: int, account_id: int) -> Optional[Account]:
        with _transaction(self.engine) as conn:
            row = conn.execute(
                select(accounts).where(
                    accounts.c.id == account_id, accounts.c.user_id == user_id
                )
            ).mappings().first()
        return _account_from_row(row) if row else None

    def require_account(self, user_id: int, account_id: int) -> Account:
        account = self.get_account(user_id, account_id)
        if account is None:
            raise NotFoundError("Account not found.")
        return account

    def change_account_currency(self, user_id: int, account_id: int, currency: str) -> Account:
        normalized_currency = normalize_currency(currency)
        with _transaction(self.engine) as conn:
            row = conn.execute(
                select(accounts).where(
                    accounts.c.id == account_id, accounts.c.user_id == user_id
                )
            ).mappings().first()
            if row is None:
                raise NotFoundError("Account not found.")
            in_use = conn.execute(
                select(transactions.c.id)
                .where(
                    transactions.c.account_id == account_id,
                    transactions.c.user_id == user_id,
                )
                .limit(1)
            ).first()
            if in_use and row["currency"] != normalized_currency:
                raise ValidationError("Account currency cannot change once transactions exist.")
            conn.execute(
                update(accounts)
                .where(accounts.c.id == account_id)
                .values(currency=normalized_currency)
            )
        return Account(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=row["type"],
            currency=normalized_currency,
        )

    def add_transaction(
        self,
        user_id: int,
        account_id: int,
        type: str,
        amount: Decimal | float | int | str,
        txn_date: date | str,
        currency: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Transaction:
        txn_type = TransactionType.validate(type)
        value = validate_amount(amount)
        day = coerce_date(txn_date)
        account = self.require_account(user_id, account_id)
        if account.is_flow and txn_type == TransactionType.BALANCE:
            raise ValidationError("Income and expense accounts do not take balance checkpoints.")
        txn_currency = normalize_currency(currency) if currency else account.currency

        prior_balance = None
        delta = None
        with _transaction(self.engine) as conn:
            if txn_type == TransactionType.BALANCE:
                previous = self._select_transactions(
                    conn, user_id, account_id, end=day, currency=txn_currency
                )
                prior_balance, delta = checkpoint_delta(previous, day, value, txn_currency)
            result = conn.execute(
                insert(transactions).values(
                    user_id=user_id,
                    account_id=account_id,
                    currency=txn_currency,
                    type=txn_type,
                    amount=value,
                    date=day,
                    notes=notes,
                    prior_balance=prior_balance,
                    delta=delta,
                )
            )
            txn_id = result.inserted_primary_key[0]
        return Transaction(
            id=txn_id,
            user_id=user_id,
            account_id=account_id,
            currency=txn_currency,
            type=txn_type,
            amount=value,
            date=day,
            notes=notes,
            prior_balance=prior_balance,
            delta=delta,
        )

    def transactions_for_account(
        self,
        user_id: int,
        account_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
        currency: Optional[str] = None,
    ) -> List[Transaction]:
        """Transactions ordered by date, then by insertion order."""
        with _transaction(self.engine) as conn:
            return self._select_transactions(conn, user_id, account_id, start, end, currency)

    def earliest_transaction_date(self, user_id: int, account_id: int) -> Optional[date]:
        with _transaction(self.engine) as conn:
            return conn.execute(
                select(func.min(transactions.c.date)).where(
                    transactions.c.user_id == user_id,
                    transactions.c.account_id == account_id,
                )
            ).scalar_one_or_none()

    def _select_transactions(
        self,
        conn: Connection,
        user_id: int,
        account_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
        currency: Optional[str] = None,
    ) -> List[Transaction]:
        conditions = [
            transactions.c.user_id == user_id,
            transactions.c.account_id == account_id,
        ]
        if start is not None:
            conditions.append(transactions.c.date >= start)
        if end is not None:
            conditions.append(transactions.c.date <= end)
        if currency is not None:
            conditions.append(transactions.c.currency == currency)
        rows = conn.execute(
            select(transactions)
            .where(*conditions)
            .order_by(transactions.c.date.asc(), transactions.c.id.asc())
        ).mappings().all()
        return [_transaction_from_row(row) for row in rows]


def _currency_from_row(row) -> Currency:
    return Currency(
        code=row["code"],
        symbol=row["symbol"],
        decimal_places=row["decimal_places"],
        created_by=row["created_by"],
    )


def _rate_from_row(row) -> ExchangeRate:
    return ExchangeRate(
        id=row["id"],
        user_id=row["user_id"],
        from_currency=row["from_currency"],
        to_currency=row["to_currency"],
        rate=_as_decimal(row["rate"]),
        effective_date=row["effective_date"],
        type=row["type"],
        source_rate_id=row["source_rate_id"],
        notes=row["notes"],
    )


def _account_from_row(row) -> Account:
    return Account(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        currency=row["currency"],
    )


def _transaction_from_row(row) -> Transaction:
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        currency=row["currency"],
        type=row["type"],
        amount=_as_decimal(row["amount"]),
        date=row["date"],
        notes=row["notes"],
        prior_balance=_as_decimal(row["prior_balance"]),
        delta=_as_decimal(row["delta"]),
    )


def _as_decimal(value) -> Optional[Decimal]:
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))
