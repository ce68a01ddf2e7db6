import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fxledger.errors import ValidationError
from fxledger.flow import FlowAggregator, running_totals, sum_in_period, sums_by_currency
from fxledger.models import AccountType, Transaction, TransactionType
from fxledger.storage import Ledger, init_db


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


def txn(type, amount, day, currency="USD"):
    return Transaction(amount=Decimal(amount), type=type, date=day, currency=currency)


class FlowSumTests(unittest.TestCase):
    def setUp(self) -> None:
        self.entries = [
            txn(TransactionType.INCOME, "100", date(2024, 1, 1)),
            txn(TransactionType.INCOME, "50", date(2024, 1, 31)),
            txn(TransactionType.INCOME, "70", date(2024, 2, 1)),
            txn(TransactionType.EXPENSE, "20", date(2024, 1, 15)),
            txn(TransactionType.INCOME, "9", date(2024, 1, 20), currency="EUR"),
        ]

    def test_range_is_inclusive(self) -> None:
        total = sum_in_period(
            self.entries, AccountType.INCOME, date(2024, 1, 1), date(2024, 1, 31), "USD"
        )

        self.assertEqual(total, Decimal("150"))

    def test_only_matching_type_is_counted(self) -> None:
        total = sum_in_period(
            self.entries, AccountType.EXPENSE, date(2024, 1, 1), date(2024, 12, 31)
        )

        self.assertEqual(total, Decimal("20"))

    def test_sums_are_grouped_by_currency(self) -> None:
        totals = sums_by_currency(
            self.entries, AccountType.INCOME, date(2024, 1, 1), date(2024, 1, 31)
        )

        self.assertEqual(totals, {"USD": Decimal("150"), "EUR": Decimal("9")})

    def test_empty_period_is_zero(self) -> None:
        total = sum_in_period(
            self.entries, AccountType.INCOME, date(2023, 1, 1), date(2023, 12, 31), "USD"
        )

        self.assertEqual(total, Decimal("0"))

    def test_reversed_period_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            sum_in_period(self.entries, AccountType.INCOME, date(2024, 2, 1), date(2024, 1, 1))

    def test_stock_account_type_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            sum_in_period(self.entries, AccountType.ASSET, date(2024, 1, 1), date(2024, 1, 31))

    def test_running_totals(self) -> None:
        self.assertEqual(
            running_totals([Decimal("5"), Decimal("0"), Decimal("2.5")]),
            [Decimal("5"), Decimal("5"), Decimal("7.5")],
        )


class FlowAggregatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = Ledger(make_engine())
        self.flows = FlowAggregator(self.ledger)
        self.groceries = self.ledger.add_account(1, "Groceries", "EXPENSE", "USD")
        for amount, day in (("40", date(2024, 3, 2)), ("60", date(2024, 3, 28)), ("25", date(2024, 4, 3))):
            self.ledger.add_transaction(1, self.groceries.id, "EXPENSE", amount, day)

    def test_sum_in_period(self) -> None:
        total = self.flows.sum_in_period(1, self.groceries.id, date(2024, 3, 1), date(2024, 3, 31))

        self.assertEqual(total, Decimal("100"))

    def test_cumulative_series(self) -> None:
        series = self.flows.cumulative_series(
            1,
            self.groceries.id,
            [
                (date(2024, 3, 1), date(2024, 3, 31)),
                (date(2024, 4, 1), date(2024, 4, 30)),
                (date(2024, 5, 1), date(2024, 5, 31)),
            ],
        )

        self.assertEqual(series, [Decimal("100"), Decimal("125"), Decimal("125")])

    def test_stock_account_is_rejected(self) -> None:
        checking = self.ledger.add_account(1, "Checking", "ASSET", "USD")

        with self.assertRaises(ValidationError):
            self.flows.sum_in_period(1, checking.id, date(2024, 3, 1), date(2024, 3, 31))


if __name__ == "__main__":
    unittest.main()
