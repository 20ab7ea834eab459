"""Tax-inclusive pricing for cart snapshots.

Pure functions with no I/O. The charged total is always derived from the
discounted subtotal (``discounted + round2(discounted * tax_rate)``), never by
summing per-item taxed prices, so per-line rounding can never drift the
charge.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from django_reseller.checkout.gateway_utils import convert_amount_for_api, convert_amount_for_db
from django_reseller.checkout.types import CartItem
from django_reseller.settings import get_config

_CENT = Decimal("0.01")
_ZERO = Decimal("0.00")

PAYMENT_METHOD_NAMES: dict[str, str] = {
    "card": "Credit/Debit Card",
    "netbanking": "Net Banking",
    "wallet": "Digital Wallet",
    "upi": "UPI",
    "emi": "EMI",
    "paylater": "Pay Later",
}


@dataclass(frozen=True, slots=True)
class PriceBreakdown:
    """Totals for a cart after discount and tax.

    Attributes:
        subtotal: Sum of item prices before discount.
        discount: Discount actually applied (clamped to the subtotal).
        discounted_subtotal: ``subtotal - discount``.
        tax_amount: Tax on the discounted subtotal.
        total: Amount to charge.
    """

    subtotal: Decimal
    discount: Decimal
    discounted_subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


@dataclass(frozen=True, slots=True)
class ItemTaxLine:
    """Per-item tax figures, for display only."""

    item: CartItem
    base_price: Decimal
    tax_amount: Decimal
    total_price: Decimal


def round2(value: Decimal) -> Decimal:
    """Round to two decimal places using half-up rounding."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _tax_rate(tax_rate: Decimal | None) -> Decimal:
    return get_config().tax_rate if tax_rate is None else tax_rate


def calculate_tax(amount: Decimal, tax_rate: Decimal | None = None) -> Decimal:
    """Return the tax due on *amount*, rounded to two places."""
    return round2(amount * _tax_rate(tax_rate))


def price_with_tax(amount: Decimal, tax_rate: Decimal | None = None) -> Decimal:
    """Return *amount* plus its tax."""
    return round2(amount) + calculate_tax(amount, tax_rate)


def cart_subtotal(cart: Sequence[CartItem]) -> Decimal:
    """Return the sum of item prices in the cart."""
    return sum((item.price for item in cart), _ZERO)


def compute_totals(
    cart: Sequence[CartItem],
    discount: Decimal = _ZERO,
    *,
    tax_rate: Decimal | None = None,
) -> PriceBreakdown:
    """Compute the charged total for a cart and an already-validated discount.

    Args:
        cart: The cart snapshot.
        discount: Discount amount (not a percentage). Negative values are
            treated as zero and values above the subtotal are capped.
        tax_rate: Override for the configured tax rate.

    Returns:
        A :class:`PriceBreakdown` for the cart.
    """
    subtotal = round2(cart_subtotal(cart))
    applied = round2(min(max(Decimal(discount), _ZERO), subtotal))
    discounted = subtotal - applied
    tax = calculate_tax(discounted, tax_rate)
    return PriceBreakdown(
        subtotal=subtotal,
        discount=applied,
        discounted_subtotal=discounted,
        tax_amount=tax,
        total=discounted + tax,
    )


def item_tax_lines(cart: Sequence[CartItem], *, tax_rate: Decimal | None = None) -> list[ItemTaxLine]:
    """Return informational per-item tax lines; never sum these into a charge."""
    return [
        ItemTaxLine(
            item=item,
            base_price=item.price,
            tax_amount=calculate_tax(item.price, tax_rate),
            total_price=price_with_tax(item.price, tax_rate),
        )
        for item in cart
    ]


def to_minor_units(amount: Decimal, currency: str | None = None) -> int:
    """Convert a major-unit amount into the gateway's integer minor units."""
    return convert_amount_for_api(amount, currency or get_config().currency)


def from_minor_units(amount: int, currency: str | None = None) -> Decimal:
    """Convert gateway minor units back into a major-unit Decimal."""
    return convert_amount_for_db(amount, currency or get_config().currency)


def format_currency(amount: Decimal, symbol: str | None = None) -> str:
    """Format *amount* with Indian digit grouping, e.g. ``₹1,23,456.00``."""
    symbol = get_config().currency_symbol if symbol is None else symbol
    amount = round2(amount)
    sign = "-" if amount < 0 else ""
    whole, _, fraction = f"{abs(amount):.2f}".partition(".")
    if len(whole) > 3:
        head, tail = whole[:-3], whole[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        whole = ",".join([*groups, tail])
    return f"{sign}{symbol}{whole}.{fraction}"


def payment_method_display_name(method: str) -> str:
    """Return a customer-facing label for a gateway payment method code."""
    return PAYMENT_METHOD_NAMES.get(method, method)
