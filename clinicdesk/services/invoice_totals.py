# clinicdesk/services/invoice_totals.py
"""Invoice arithmetic and payment-status derivation.

Pure functions only. Money is ``Decimal`` quantized to three places (fils);
floats are rejected so that summation never drifts.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, NamedTuple, Optional, Tuple, Union

from ..errors import InvalidAmountError
from ..models import DiscountType, PaymentStatus

MONEY_QUANT = Decimal("0.001")
ZERO = Decimal("0.000")
HUNDRED = Decimal("100")

Numeric = Union[Decimal, int, str]


class InvoiceTotals(NamedTuple):
    subtotal: Decimal
    discount: Decimal
    taxable_base: Decimal
    tax: Decimal
    total: Decimal


def quantize(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_money(value: Numeric, field: str = "amount") -> Decimal:
    """Exact conversion to a 3-place Decimal. Extra precision is an error, never truncated."""
    if isinstance(value, float):
        raise InvalidAmountError(f"{field} must be a decimal value, not a float.", field=field)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(f"{field} is not a valid amount: {value!r}.", field=field)
    if not amount.is_finite():
        raise InvalidAmountError(f"{field} must be finite.", field=field)
    quantized = quantize(amount)
    if quantized != amount:
        raise InvalidAmountError(f"{field} has more than 3 decimal places: {value}.", field=field)
    return quantized


def to_percentage(value: Numeric, field: str = "tax_percentage") -> Decimal:
    """A rate in [0, 100]. Malformed, non-finite or out-of-range input is an InvalidAmount."""
    if isinstance(value, float):
        raise InvalidAmountError(f"{field} must be a decimal value, not a float.", field=field)
    try:
        rate = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(f"{field} is not a valid percentage: {value!r}.", field=field)
    if not rate.is_finite() or not (0 <= rate <= HUNDRED):
        raise InvalidAmountError(f"{field} must be between 0 and 100.", field=field)
    return rate


def line_total(quantity: int, unit_price: Numeric) -> Decimal:
    if quantity is None or int(quantity) < 1:
        raise InvalidAmountError("Quantity must be at least 1.", field="quantity")
    price = to_money(unit_price, "unit_price")
    if price < 0:
        raise InvalidAmountError("Unit price cannot be negative.", field="unit_price")
    return quantize(price * int(quantity))


def calculate_totals(
    items: Iterable[Tuple[int, Numeric]],
    discount_type: DiscountType = DiscountType.FLAT,
    discount_value: Numeric = ZERO,
    tax_percentage: Numeric = ZERO,
) -> InvoiceTotals:
    """
    Compute invoice totals from ``(quantity, unit_price)`` pairs.

    subtotal = sum(quantity * unit_price)
    discount = subtotal * value / 100 for PERCENTAGE, value for FLAT; clamped to subtotal
    tax      = (subtotal - discount) * tax_percentage / 100
    total    = subtotal - discount + tax

    Each intermediate value is rounded half-up to 3 places.
    """
    value = to_money(discount_value, "discount_value")
    if value < 0:
        raise InvalidAmountError("Discount cannot be negative.", field="discount_value")
    tax_rate = to_percentage(tax_percentage, "tax_percentage")

    subtotal = ZERO
    for quantity, unit_price in items:
        subtotal += line_total(quantity, unit_price)
    subtotal = quantize(subtotal)

    if DiscountType(discount_type) == DiscountType.PERCENTAGE:
        if value > HUNDRED:
            raise InvalidAmountError("Percentage discount cannot exceed 100.", field="discount_value")
        discount = quantize(subtotal * value / HUNDRED)
    else:
        discount = value
    discount = min(discount, subtotal)

    taxable_base = subtotal - discount
    tax = quantize(taxable_base * tax_rate / HUNDRED)
    total = quantize(taxable_base + tax)
    return InvoiceTotals(subtotal, quantize(discount), quantize(taxable_base), tax, total)


def derive_payment_status(
    paid: Decimal,
    total: Decimal,
    current: Optional[PaymentStatus] = None,
    reset_refund: bool = False,
) -> PaymentStatus:
    """
    PENDING when nothing is paid, PARTIAL while a balance remains, PAID otherwise.

    A REFUNDED invoice keeps that status until ``reset_refund`` is passed, which
    only a newly recorded payment does.
    """
    if current == PaymentStatus.REFUNDED and not reset_refund:
        return PaymentStatus.REFUNDED
    if paid <= 0:
        return PaymentStatus.PENDING
    if paid < total:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PAID
