"""
Pricing rules shared by the cart and the order pipeline.

All amounts are integers in minor currency units (paise for INR), so the
client-side cart and the server-side order compute identical numbers from
identical prices.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Iterable, Tuple
from pydantic import BaseModel

from shared.utils import settings


class PriceSummary(BaseModel):
    subtotal: int
    tax: int
    shipping: int
    total: int


def effective_price(price: int, sale_price: Optional[int] = None) -> int:
    """The sale price wins only when it is an actual discount."""
    if sale_price is not None and sale_price < price:
        return sale_price
    return price


def line_total(unit_price: int, quantity: int) -> int:
    return unit_price * quantity


def calculate_tax(subtotal: int, rate: Optional[Decimal] = None) -> int:
    rate = settings.TAX_RATE if rate is None else Decimal(str(rate))
    return int((Decimal(subtotal) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_shipping(subtotal: int, threshold: Optional[int] = None, fee: Optional[int] = None) -> int:
    threshold = settings.FREE_SHIPPING_THRESHOLD if threshold is None else threshold
    fee = settings.SHIPPING_FEE if fee is None else fee
    if subtotal <= 0 or subtotal >= threshold:
        return 0
    return fee


def subtotal_of(lines: Iterable[Tuple[int, int]]) -> int:
    """Sum of ``(unit_price, quantity)`` pairs."""
    return sum(line_total(price, quantity) for price, quantity in lines)


def summarize(subtotal: int, tax_rate: Optional[Decimal] = None,
              free_shipping_threshold: Optional[int] = None,
              shipping_fee: Optional[int] = None) -> PriceSummary:
    tax = calculate_tax(subtotal, tax_rate)
    shipping = calculate_shipping(subtotal, free_shipping_threshold, shipping_fee)
    return PriceSummary(subtotal=subtotal, tax=tax, shipping=shipping, total=subtotal + tax + shipping)


def format_price(amount: int, currency: Optional[str] = None) -> str:
    # 129900 -> "INR 1,299.00"
    currency = currency or settings.CURRENCY
    major = Decimal(amount) / Decimal(100)
    return f"{currency} {major:,.2f}"
