"""
USDC amount helpers.

Balances are kept as integer base units (USDC has 6 decimals). Revenue splits
and withdraw comparisons happen at cent granularity.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from payflix.errors import ValidationError

USDC_DECIMALS = 6
UNITS_PER_USDC = 10 ** USDC_DECIMALS
UNITS_PER_CENT = UNITS_PER_USDC // 100
CENT = Decimal('0.01')

Amount = Union[Decimal, int, float, str]


def to_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, Decimal):
        value = amount
    else:
        try:
            # str() keeps floats like 0.1 from dragging binary noise along
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f'Invalid amount: {amount!r}') from exc
    if not value.is_finite():
        raise ValidationError(f'Invalid amount: {amount!r}')
    return value


def to_units(amount: Amount) -> int:
    value = to_decimal(amount) * UNITS_PER_USDC
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_units(units: int) -> Decimal:
    return (Decimal(units) / UNITS_PER_USDC).quantize(
        Decimal(1).scaleb(-USDC_DECIMALS))


def round_cents(amount: Amount) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def units_to_cents(units: int) -> int:
    """Round base units to whole cents (half up), returned as a cent count."""
    return int((Decimal(units) / UNITS_PER_CENT).quantize(
        Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class RevenueSplit:
    amount_units: int
    creator_units: int
    platform_units: int

    @property
    def amount(self) -> Decimal:
        return from_units(self.amount_units)

    @property
    def creator_amount(self) -> Decimal:
        return from_units(self.creator_units)

    @property
    def platform_amount(self) -> Decimal:
        return from_units(self.platform_units)


def split_revenue(amount_units: int, platform_fee_percent: Amount) -> RevenueSplit:
    """
    Split a payment between creator and platform.

    The platform fee is rounded to whole cents and the creator receives the
    remainder, so the two shares always add up to the amount exactly.
    """
    if amount_units < 0:
        raise ValidationError('Amount must not be negative.')
    fee_percent = to_decimal(platform_fee_percent)
    if fee_percent < 0 or fee_percent > 100:
        raise ValidationError('Platform fee percent must be within 0..100.')

    fee_cents = (Decimal(amount_units) * fee_percent
                 / Decimal(100) / UNITS_PER_CENT)
    platform_units = int(fee_cents.quantize(
        Decimal(1), rounding=ROUND_HALF_UP)) * UNITS_PER_CENT
    platform_units = min(platform_units, amount_units)
    return RevenueSplit(
        amount_units=amount_units,
        creator_units=amount_units - platform_units,
        platform_units=platform_units,
    )
