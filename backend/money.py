from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100


def to_amount(value) -> Decimal:
    """Parse a major-unit amount into a 2dp Decimal."""
    if isinstance(value, bool) or value is None:
        raise ValueError("Amount is required.")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Amount out of range: {value!r}")


def to_minor_units(amount) -> int:
    major = amount if isinstance(amount, Decimal) else to_amount(amount)
    minor = (major * MINOR_UNITS_PER_MAJOR).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(minor)


def from_minor_units(units) -> Decimal:
    return (Decimal(int(units)) / MINOR_UNITS_PER_MAJOR).quantize(CENT)


def as_float(amount) -> float:
    # Documents keep money as 2dp floats.
    if isinstance(amount, Decimal):
        return float(amount.quantize(CENT, rounding=ROUND_HALF_UP))
    return round(float(amount), 2)
