from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")


def to_money(value: Decimal | str | int) -> Decimal:
    """Quantize to two minor units, half-up. Floats are rejected."""
    if isinstance(value, float):
        raise TypeError("Monetary values must not be floats")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def split_platform_fee(gross: Decimal, fee_rate: Decimal) -> tuple[Decimal, Decimal]:
    """Return (platform_fee, seller_amount).

    The fee is rounded first and the seller gets the exact remainder, so any
    rounding drift lands on the platform side and the two always sum to gross.
    """
    gross = to_money(gross)
    platform_fee = (gross * Decimal(fee_rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    seller_amount = gross - platform_fee
    return platform_fee, seller_amount


def to_minor_units(amount: Decimal) -> int:
    return int(to_money(amount) * 100)


def from_minor_units(value: int) -> Decimal:
    return to_money(Decimal(value) / 100)
