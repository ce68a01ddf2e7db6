from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from fxledger.errors import ValidationError
from fxledger.models import RateType

logger = logging.getLogger(__name__)

LARGE_RATE_WARNING = Decimal("1000")
SMALL_RATE_WARNING = Decimal("0.001")


def normalize_currency(value: str) -> str:
    normalized = (value or "").strip().upper()
    if not 3 <= len(normalized) <= 6 or not normalized.isalnum() or not normalized[0].isalpha():
        raise ValidationError("Currency must be a 3 to 6 character alphanumeric code.")
    return normalized


def coerce_date(value: date | datetime | str) -> date:
    """Truncate datetimes and ISO strings to a calendar day."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValidationError("Date must be in YYYY-MM-DD format.") from exc


def coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid numeric value: {value!r}") from exc


def validate_amount(value: Decimal | float | int | str) -> Decimal:
    amount = coerce_decimal(value)
    if not amount.is_finite() or amount < 0:
        raise ValidationError("Amount must be zero or greater.")
    return amount


def validate_rate_input(
    from_currency: str,
    to_currency: str,
    rate: Decimal | float | int | str,
    effective_date: date | datetime | str,
    rate_type: str = RateType.USER,
    today: date | None = None,
) -> tuple[str, str, Decimal, date, str]:
    """Check a primary rate before it is stored.

    Returns the normalized ``(from, to, rate, effective_date, type)`` tuple.
    Raises ``ValidationError`` for anything that must not be persisted.
    """
    source = normalize_currency(from_currency)
    target = normalize_currency(to_currency)
    if source == target:
        raise ValidationError("Source and target currency must differ.")

    normalized_type = RateType.validate(rate_type)
    if normalized_type not in RateType.primary:
        raise ValidationError("AUTO rates are derived and cannot be entered directly.")

    value = coerce_decimal(rate)
    if not value.is_finite() or value <= 0:
        raise ValidationError("Rate must be greater than zero.")

    day = coerce_date(effective_date)
    if day > (today or date.today()):
        raise ValidationError("Effective date cannot be in the future.")

    if value > LARGE_RATE_WARNING or value < SMALL_RATE_WARNING:
        logger.warning(
            "Unusual rate magnitude %s for %s/%s on %s", value, source, target, day
        )
    return source, target, value, day, normalized_type
