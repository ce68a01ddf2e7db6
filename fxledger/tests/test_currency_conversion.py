import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fxledger.currency_conversion import CurrencyConverter
from fxledger.errors import ValidationError
from fxledger.rate_derivation import RateGraphDeriver
from fxledger.storage import RateStore, init_db


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


class CountingStore:
    def __init__(self, inner: RateStore) -> None:
        self.inner = inner
        self.lookups = 0

    def find_latest_rate(self, *args):
        self.lookups += 1
        return self.inner.find_latest_rate(*args)

    def active_currencies(self, user_id):
        return self.inner.active_currencies(user_id)


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = RateStore(make_engine())
        for code in ("USD", "EUR", "JPY"):
            self.store.register_currency(1, code)
        self.store.add_rate(1, "EUR", "USD", "1.08", date(2024, 1, 1))
        self.store.add_rate(1, "EUR", "USD", "1.10", date(2024, 3, 1))
        self.converter = CurrencyConverter(self.store)

    def test_same_currency_returns_original_amount(self) -> None:
        result = self.converter.convert(1, Decimal("12.50"), "GBP", " gbp ")

        self.assertTrue(result.success)
        self.assertEqual(result.rate, Decimal("1"))
        self.assertEqual(result.converted_amount, Decimal("12.50"))

    def test_direct_rate_uses_latest_row_on_or_before_date(self) -> None:
        february = self.converter.convert(1, "100", "EUR", "USD", date(2024, 2, 15))
        march = self.converter.convert(1, "100", "EUR", "USD", date(2024, 3, 5))

        self.assertEqual(february.converted_amount, Decimal("108"))
        self.assertEqual(february.rate_date, date(2024, 1, 1))
        self.assertEqual(march.converted_amount, Decimal("110"))
        self.assertEqual(march.rate_date, date(2024, 3, 1))

    def test_opposite_row_is_inverted(self) -> None:
        result = self.converter.convert(1, "108", "USD", "EUR", "2024-02-01")

        self.assertTrue(result.success)
        self.assertAlmostEqual(result.converted_amount, Decimal("100"), places=9)

    def test_codes_are_normalized(self) -> None:
        result = self.converter.convert(1, 10, " eur ", "usd", date(2024, 2, 1))

        self.assertTrue(result.success)
        self.assertEqual(result.converted_amount, Decimal("10.8"))

    def test_missing_rate_keeps_amount_and_reports_failure(self) -> None:
        before_any_rate = self.converter.convert(1, "50", "EUR", "USD", date(2023, 12, 31))
        unknown_pair = self.converter.convert(1, "50", "JPY", "USD", date(2024, 2, 1))

        for result in (before_any_rate, unknown_pair):
            self.assertFalse(result.success)
            self.assertEqual(result.converted_amount, Decimal("50"))
            self.assertEqual(result.rate, Decimal("1"))
            self.assertIsNotNone(result.error)

    def test_invalid_currency_code_raises(self) -> None:
        with self.assertRaises(ValidationError):
            self.converter.convert(1, 5, "US", "EUR", date(2024, 2, 1))

    def test_batch_preserves_order_and_length(self) -> None:
        results = self.converter.convert_multiple_currencies(
            1,
            [("10", "EUR"), ("5", "JPY"), ("3", "USD"), ("1", "??")],
            "USD",
            date(2024, 2, 1),
        )

        self.assertEqual([result.original_currency for result in results], ["EUR", "JPY", "USD", "??"])
        self.assertEqual([result.success for result in results], [True, False, True, False])
        self.assertEqual(results[0].converted_amount, Decimal("10.8"))
        self.assertEqual(results[2].converted_amount, Decimal("3"))

    def test_batch_looks_up_each_currency_once(self) -> None:
        counting = CountingStore(self.store)
        converter = CurrencyConverter(counting)

        results = converter.convert_multiple_currencies(
            1, [(1, "EUR"), (2, "EUR"), (3, "eur")], "USD", date(2024, 2, 1)
        )

        self.assertEqual(counting.lookups, 1)
        self.assertEqual([result.converted_amount for result in results], [Decimal("1.08"), Decimal("2.16"), Decimal("3.24")])

    def test_missing_rates_lists_unconvertible_currencies(self) -> None:
        missing = self.converter.missing_rates(1, "usd", date(2024, 6, 1))

        self.assertEqual(missing, [("JPY", "USD")])

    def test_auto_rates_are_used_for_conversion(self) -> None:
        self.store.register_currency(1, "CNY")
        self.store.add_rate(1, "CNY", "USD", "0.14", date(2024, 1, 1))
        RateGraphDeriver(self.store).derive(1, date(2024, 6, 1))

        result = self.converter.convert(1, "100", "CNY", "EUR", date(2024, 6, 1))

        self.assertTrue(result.success)
        self.assertAlmostEqual(result.converted_amount, Decimal("12.7272727273"), places=6)


if __name__ == "__main__":
    unittest.main()
