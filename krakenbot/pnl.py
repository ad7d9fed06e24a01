"""Decimal-exact capital and profit calculations.

Intermediate values are never rounded; results are rounded half-up to cents
only at the very end.

Examples:
    >>> net_profit(Decimal("30000.00"), Decimal("29000.00"), Decimal("0.01"),
    ...            Decimal("0.000026"), Decimal("0.0026"))
    Decimal('8.47')
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Union


CENTS = Decimal("0.01")

Number = Union[Decimal, int, str]


def _d(value: Number) -> Decimal:
    if isinstance(value, float):
        raise TypeError("Use Decimal or str for money values, not float")
    return value if isinstance(value, Decimal) else Decimal(value)


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def total_capital(asset_amount: Number, fiat_amount: Number, price: Number) -> Decimal:
    """Asset holdings valued at ``price`` plus fiat holdings."""
    return to_cents(_d(asset_amount) * _d(price) + _d(fiat_amount))


def net_profit(
    current_price: Number,
    purchase_price: Number,
    asset_amount: Number,
    purchase_fee_in_asset: Number,
    sell_fee_rate: Number,
) -> Decimal:
    """Profit from selling ``asset_amount`` at ``current_price`` after both fees.

    Args:
        current_price: Prospective sell price
        purchase_price: Price the asset was bought at
        asset_amount: Quantity bought and to be sold
        purchase_fee_in_asset: Fee paid on the purchase, in asset units
        sell_fee_rate: Fee rate charged on the sale (e.g. 0.0026)

    Returns:
        revenue - cost - (purchase fee + sell fee), in fiat, rounded to cents
    """
    current = _d(current_price)
    purchase = _d(purchase_price)
    amount = _d(asset_amount)

    purchase_fee_fiat = _d(purchase_fee_in_asset) * purchase
    sell_fee_fiat = current * amount * _d(sell_fee_rate)

    revenue = current * amount
    cost = purchase * amount
    return to_cents(revenue - cost - (purchase_fee_fiat + sell_fee_fiat))


def trading_result(initial_capital: Number, current_capital: Number) -> Decimal:
    """Gain or loss of the account relative to the initial investment."""
    return to_cents(_d(current_capital) - _d(initial_capital))
