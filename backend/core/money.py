from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation

from .conf import ledger_setting

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
SECONDS_PER_DAY = 24 * 60 * 60


def to_decimal(value, field: str = "amount") -> Decimal:
    from .exceptions import InvalidInput

    if value is None or value == "":
        return ZERO
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInput({field: [f"'{value}' is not a valid amount."]})
    if not result.is_finite():
        raise InvalidInput({field: [f"'{value}' is not a valid amount."]})
    return result


def round_money(value) -> Decimal:
    """Quantize to cents, half away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_money(value) -> Decimal:
    return max(ZERO, round_money(value))


def tolerance() -> Decimal:
    return Decimal(str(ledger_setting("MONEY_TOLERANCE")))


def ceil_days(delta) -> int:
    """Whole days in a timedelta, partial days counted as full ones."""
    seconds = Decimal(str(delta.total_seconds()))
    if seconds <= 0:
        return 0
    return int((seconds / SECONDS_PER_DAY).to_integral_value(rounding=ROUND_CEILING))
