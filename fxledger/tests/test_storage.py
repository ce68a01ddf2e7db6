import unittest
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fxledger.errors import NotFoundError, ValidationError
from fxledger.models import RateType
from fxledger.rate_derivation import RateGraphDeriver
from fxledger.storage import RateStore, init_db
from fxledger.validation import normalize_currency, validate_rate_input


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


class RateInputValidationTests(unittest.TestCase):
    def test_valid_input_is_normalized(self) -> None:
        self.assertEqual(
            validate_rate_input(" eur", "usd ", "1.08", "2024-05-01", "user", today=date(2024, 6, 1)),
            ("EUR", "USD", Decimal("1.08"), date(2024, 5, 1), RateType.USER),
        )

    def test_invalid_input_is_rejected(self) -> None:
        today = date(2024, 6, 1)
        cases = [
            ("USD", "usd", "1", date(2024, 5, 1), RateType.USER),
            ("EUR", "USD", "0", date(2024, 5, 1), RateType.USER),
            ("EUR", "USD", "-2", date(2024, 5, 1), RateType.USER),
            ("EUR", "USD", "1.08", date(2024, 6, 2), RateType.USER),
            ("EUR", "USD", "1.08", date(2024, 5, 1), RateType.AUTO),
            ("EUR", "USD", "abc", date(2024, 5, 1), RateType.USER),
            ("E", "USD", "1.08", date(2024, 5, 1), RateType.USER),
        ]
        for source, target, rate, day, rate_type in cases:
            with self.subTest(source=source, rate=rate, day=day, rate_type=rate_type):
                with self.assertRaises(ValidationError):
                    validate_rate_input(source, target, rate, day, rate_type, today=today)

    def test_extreme_rate_is_accepted_with_warning(self) -> None:
        with self.assertLogs("fxledger.validation", level="WARNING"):
            validate_rate_input("USD", "IDR", "15500", date(2024, 5, 1), today=date(2024, 6, 1))

    def test_currency_codes(self) -> None:
        self.assertEqual(normalize_currency(" usdt "), "USDT")
        for bad in ("", "US", "1USD", "TOOLONGX", "U$D"):
            with self.subTest(code=bad):
                with self.assertRaises(ValidationError):
                    normalize_currency(bad)


class RateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = RateStore(make_engine())
        for code in ("USD", "EUR", "CNY"):
            self.store.register_currency(1, code)
        self.today = date(2024, 6, 1)

    def test_unknown_currency_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.add_rate(1, "GBP", "USD", "1.27", date(2024, 5, 1), today=self.today)

    def test_custom_currency_is_private_to_its_owner(self) -> None:
        self.store.register_currency(1, "PTS", custom=True)
        self.store.add_rate(1, "PTS", "USD", "0.01", date(2024, 5, 1), today=self.today)
        self.store.register_currency(2, "USD")

        self.assertIsNotNone(self.store.get_currency(1, "PTS"))
        self.assertIsNone(self.store.get_currency(2, "PTS"))
        with self.assertRaises(ValidationError):
            self.store.add_rate(2, "PTS", "USD", "0.01", date(2024, 5, 1), today=self.today)

    def test_duplicate_primary_rate_is_rejected(self) -> None:
        self.store.add_rate(1, "EUR", "USD", "1.08", date(2024, 5, 1), today=self.today)

        with self.assertRaises(ValidationError):
            self.store.add_rate(1, "EUR", "USD", "1.09", date(2024, 5, 1), today=self.today)

    def test_effective_date_is_truncated_to_day(self) -> None:
        rate = self.store.add_rate(
            1, "EUR", "USD", "1.08", datetime(2024, 5, 1, 15, 30), today=self.today
        )

        self.assertEqual(rate.effective_date, date(2024, 5, 1))

    def test_user_rate_replaces_auto_row_with_same_key(self) -> None:
        self.store.add_rate(1, "EUR", "USD", "1.08", date(2024, 5, 1), today=self.today)
        RateGraphDeriver(self.store).derive(1, self.today)

        rate = self.store.add_rate(1, "USD", "EUR", "0.93", self.today, today=self.today)

        self.assertEqual(rate.type, RateType.USER)
        self.assertEqual(self.store.list_rates(1, RateType.AUTO), [])

    def test_auto_rows_cannot_be_edited(self) -> None:
        self.store.add_rate(1, "EUR", "USD", "1.08", date(2024, 5, 1), today=self.today)
        RateGraphDeriver(self.store).derive(1, self.today)
        auto = self.store.list_rates(1, RateType.AUTO)[0]

        with self.assertRaises(ValidationError):
            self.store.update_rate(1, auto.id, "2")
        with self.assertRaises(ValidationError):
            self.store.delete_rate(1, auto.id)
        with self.assertRaises(NotFoundError):
            self.store.update_rate(1, 999, "2")
        with self.assertRaises(NotFoundError):
            self.store.delete_rate(2, auto.id)

    def test_update_rate(self) -> None:
        rate = self.store.add_rate(1, "EUR", "USD", "1.08", date(2024, 5, 1), today=self.today)

        updated = self.store.update_rate(1, rate.id, "1.09", notes="corrected")

        self.assertEqual(updated.rate, Decimal("1.09"))
        self.assertEqual(updated.notes, "corrected")
        with self.assertRaises(ValidationError):
            self.store.update_rate(1, rate.id, "0")

    def test_delete_rate_removes_dependent_auto_rows(self) -> None:
        rate = self.store.add_rate(1, "EUR", "USD", "1.08", date(2024, 5, 1), today=self.today)
        RateGraphDeriver(self.store).derive(1, self.today)

        self.store.delete_rate(1, rate.id)

        self.assertEqual(self.store.list_rates(1), [])

    def test_find_latest_rate(self) -> None:
        self.store.add_rate(1, "EUR", "USD", "1.05", date(2024, 1, 1), today=self.today)
        self.store.add_rate(1, "EUR", "USD", "1.08", date(2024, 4, 1), today=self.today)

        self.assertIsNone(self.store.find_latest_rate(1, "EUR", "USD", date(2023, 12, 31)))
        self.assertEqual(
            self.store.find_latest_rate(1, "EUR", "USD", date(2024, 3, 31)).rate, Decimal("1.05")
        )
        self.assertEqual(
            self.store.find_latest_rate(1, "EUR", "USD", date(2024, 4, 1)).rate, Decimal("1.08")
        )

    def test_prune_history_keeps_newest_row_per_pair(self) -> None:
        for rate, day in (("1.05", date(2024, 1, 1)), ("1.07", date(2024, 3, 1)), ("1.08", date(2024, 5, 1))):
            self.store.add_rate(1, "EUR", "USD", rate, day, today=self.today)
        self.store.add_rate(1, "CNY", "USD", "0.14", date(2024, 2, 1), today=self.today)

        result = self.store.prune_history(1)

        self.assertEqual(result.cleaned_count, 2)
        self.assertEqual(result.currency_pairs, ["EUR/USD"])
        remaining = self.store.list_primary_rates(1)
        self.assertEqual(len(remaining), 2)
        self.assertEqual(
            {rate.pair: rate.rate for rate in remaining},
            {("EUR", "USD"): Decimal("1.08"), ("CNY", "USD"): Decimal("0.14")},
        )

    def test_prune_history_for_selected_pairs(self) -> None:
        for day in (date(2024, 1, 1), date(2024, 3, 1)):
            self.store.add_rate(1, "EUR", "USD", "1.05", day, today=self.today)
            self.store.add_rate(1, "CNY", "USD", "0.14", day, today=self.today)

        result = self.store.prune_history(1, pairs=[("cny", "usd")])

        self.assertEqual(result.currency_pairs, ["CNY/USD"])
        self.assertEqual(len(self.store.list_primary_rates(1)), 3)

    def test_rates_are_scoped_per_user(self) -> None:
        self.store.add_rate(1, "EUR", "USD", "1.08", date(2024, 5, 1), today=self.today)

        self.assertEqual(self.store.list_rates(2), [])
        self.assertIsNone(self.store.find_latest_rate(2, "EUR", "USD", self.today))


if __name__ == "__main__":
    unittest.main()
