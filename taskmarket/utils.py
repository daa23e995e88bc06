# taskmarket/utils.py
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Normalise an amount (str/int/float/Decimal) to cents, half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def iso(dt):
    return dt.isoformat() if dt else None
