"""
Cart pricing.

Pure functions only: no I/O, no clock reads (callers pass `at` explicitly).
Amounts are integer minor units; percentages and rates go through Decimal and
are rounded half-up to the minor unit, so no float ever touches a total.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from .errors import DiscountNotApplicable
from .models import AppliedDiscount, CartItem, TaxConfig, Totals

ONE = Decimal("1")
HUNDRED = Decimal("100")


def round_minor(value: Decimal) -> int:
    return int(value.quantize(ONE, rounding=ROUND_HALF_UP))


def percent_of(amount: int, percent: Decimal) -> int:
    return round_minor(Decimal(amount) * Decimal(percent) / HUNDRED)


def line_gross(item: CartItem) -> int:
    return item.unit_price * item.quantity


def line_discount(item: CartItem) -> int:
    d = item.discount
    if d is None:
        return 0
    gross = line_gross(item)
    if d.kind == "percent":
        amount = percent_of(gross, min(d.value, HUNDRED))
    else:
        amount = round_minor(d.value)
    return max(0, min(amount, gross))


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def check_discount(discount: AppliedDiscount, base: int, at: Optional[datetime] = None) -> None:
    """Raise DiscountNotApplicable unless `discount` may apply to a cart worth `base`."""
    if not discount.is_active:
        raise DiscountNotApplicable("discount code is not active", discount_code=discount.code)
    if at is not None:
        now = _aware(at)
        if discount.starts_at is not None and now < _aware(discount.starts_at):
            raise DiscountNotApplicable("discount code is not yet valid", discount_code=discount.code)
        if discount.ends_at is not None and now > _aware(discount.ends_at):
            raise DiscountNotApplicable("discount code has expired", discount_code=discount.code)
    if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
        raise DiscountNotApplicable("discount code has reached its usage limit", discount_code=discount.code)
    if discount.min_purchase is not None and base < discount.min_purchase:
        raise DiscountNotApplicable(
            f"minimum purchase of {discount.min_purchase} required",
            discount_code=discount.code,
            min_purchase=discount.min_purchase,
            base=base,
        )


def code_discount_amount(discount: AppliedDiscount, base: int, at: Optional[datetime] = None) -> int:
    check_discount(discount, base, at)
    if discount.kind == "percent":
        amount = percent_of(base, discount.value)
    else:
        amount = round_minor(discount.value)
    if discount.max_discount is not None:
        amount = min(amount, discount.max_discount)
    return max(0, min(amount, base))


def compute_tax(taxable: int, tax: Optional[TaxConfig]) -> int:
    if tax is None or not tax.enabled or taxable <= 0:
        return 0
    return round_minor(Decimal(taxable) * tax.rate)


def price_cart(
    items: Iterable[CartItem],
    discount: Optional[AppliedDiscount] = None,
    tax: Optional[TaxConfig] = None,
    at: Optional[datetime] = None,
) -> Totals:
    subtotal = 0
    item_discounts = 0
    for item in items:
        subtotal += line_gross(item)
        item_discounts += line_discount(item)

    after_items = subtotal - item_discounts
    code_discount = code_discount_amount(discount, after_items, at) if discount is not None else 0
    taxable = after_items - code_discount
    tax_amount = compute_tax(taxable, tax)
    return Totals(
        subtotal=subtotal,
        item_discount_total=item_discounts,
        code_discount_total=code_discount,
        tax=tax_amount,
        total=taxable + tax_amount,
    )
