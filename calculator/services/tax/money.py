from decimal import Decimal, ROUND_HALF_UP

KOBO = Decimal("0.01")
ZERO = Decimal("0.00")
MONTHS_PER_YEAR = Decimal("12")


def quantize_money(amount: Decimal) -> Decimal:
    """Round to the nearest kobo, halves away from zero."""
    return amount.quantize(KOBO, rounding=ROUND_HALF_UP)


def format_naira(amount: Decimal) -> str:
    if amount == amount.to_integral_value():
        return f"₦{amount:,.0f}"
    return f"₦{amount:,.2f}"
