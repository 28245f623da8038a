# marketplace/domain/money.py
from decimal import Decimal, ROUND_HALF_UP

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
TWO_PLACES = Decimal("0.01")


def quantize(value) -> Decimal:
    """All amounts are held in major units with 2 places, half-up."""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percentage: Decimal) -> Decimal:
    return quantize(Decimal(amount) * Decimal(percentage) / HUNDRED)


def to_minor_units(amount: Decimal) -> int:
    # paise, cents
    return int((quantize(amount) * HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return quantize(Decimal(int(amount)) / HUNDRED)
