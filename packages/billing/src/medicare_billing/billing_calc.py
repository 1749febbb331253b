"""Invoice tax and discount calculation.

Pure functions over line items and a discount specification. Nothing in this
module raises: unusable numeric input degrades to zero so a caller always gets
a complete set of totals. Callers must validate their inputs before moving
money on the strength of these numbers (see ``medicare_billing.invoices``).

VAT applies to dispensed medicines only. A discount is spread across the
taxable and exempt portions in proportion to their share of the subtotal, and
tax is charged on the discounted taxable portion.
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

import structlog

from medicare_billing.fields import ZERO, coerce_decimal
from medicare_billing.models import LineItem

logger = structlog.get_logger(__name__)

VAT_RATE = Decimal("0.12")
CENTAVO = Decimal("0.01")

TAXABLE_CATEGORIES = frozenset({"pharmacy", "medicine", "medication"})
TAXABLE_KEYWORDS = ("medication", "medicine", "prescription", "drug", "pharmaceutical")


class DiscountKind(str, Enum):
    """How a discount value is interpreted."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"
    CODE = "code"
    NONE = "none"


@dataclass(frozen=True)
class NamedDiscount:
    """A configured discount that can be looked up by code.

    ``type`` is percentage, fixed or service; service discounts are a flat
    amount like fixed ones.
    """

    code: str
    name: str = ""
    type: str = "percentage"
    value: Decimal = ZERO
    is_active: bool = True
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    usage_count: int = 0
    max_usage: int | None = None

    def as_spec(self) -> DiscountSpec:
        if self.type.strip().lower() == DiscountKind.PERCENTAGE.value:
            return DiscountSpec(kind=DiscountKind.PERCENTAGE, value=self.value)
        return DiscountSpec(kind=DiscountKind.FIXED, value=self.value)


@dataclass(frozen=True)
class DiscountSpec:
    """Discount requested for an invoice."""

    kind: DiscountKind = DiscountKind.NONE
    value: Decimal = ZERO
    code: str = ""
    resolved: NamedDiscount | None = None

    @classmethod
    def percentage(cls, value: Any) -> DiscountSpec:
        return cls(kind=DiscountKind.PERCENTAGE, value=coerce_decimal(value))

    @classmethod
    def fixed(cls, value: Any) -> DiscountSpec:
        return cls(kind=DiscountKind.FIXED, value=coerce_decimal(value))

    @classmethod
    def from_code(cls, code: str, resolved: NamedDiscount | None = None) -> DiscountSpec:
        return cls(kind=DiscountKind.CODE, code=code, resolved=resolved)

    @classmethod
    def none(cls) -> DiscountSpec:
        return cls()


@dataclass(frozen=True)
class InvoiceTotals:
    """Computed money fields of an invoice."""

    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    taxable_amount: Decimal = ZERO
    exempt_amount: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal = ZERO

    def quantized(self) -> InvoiceTotals:
        """Return a copy rounded half-up to centavos for display or storage.

        Subtotal, discount, taxable amount and tax are rounded; the exempt
        amount and total are derived from the rounded figures so that
        ``total == subtotal - discount + tax`` still holds exactly.
        """
        subtotal = quantize_money(self.subtotal)
        discount = quantize_money(self.discount)
        taxable = quantize_money(self.taxable_amount)
        tax = quantize_money(self.tax)
        return InvoiceTotals(
            subtotal=subtotal,
            discount=discount,
            taxable_amount=taxable,
            exempt_amount=subtotal - taxable,
            tax=tax,
            total=subtotal - discount + tax,
        )


def _zero_on_overflow(func: Callable[..., Decimal]) -> Callable[..., Decimal]:
    """Degrade arithmetic that overflows the decimal context to zero."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Decimal:
        try:
            result = func(*args, **kwargs)
        except ArithmeticError:
            logger.debug("billing_arithmetic_overflow", function=func.__name__)
            return ZERO
        return result if result.is_finite() else ZERO

    return wrapper


@_zero_on_overflow
def quantize_money(value: Any) -> Decimal:
    """Round a money value half-up to two decimal places."""
    return coerce_decimal(value).quantize(CENTAVO, rounding=ROUND_HALF_UP)


def _as_line_item(item: Any) -> LineItem:
    if isinstance(item, LineItem):
        return item
    if isinstance(item, Mapping):
        return LineItem.from_raw(item)
    return LineItem()


def _as_line_items(items: Any) -> list[LineItem]:
    # None, scalars and strings carry no lines.
    if items is None or isinstance(items, (str, bytes)) or not isinstance(items, Iterable):
        return []
    return [_as_line_item(item) for item in items]


def _as_discount_kind(kind: Any) -> DiscountKind:
    if isinstance(kind, DiscountKind):
        return kind
    try:
        return DiscountKind(str(kind).strip().lower())
    except ValueError:
        return DiscountKind.NONE


@_zero_on_overflow
def compute_subtotal(items: Iterable[Any] | None) -> Decimal:
    """Sum of quantity x rate over all items."""
    return sum((line.amount for line in _as_line_items(items)), ZERO)


def is_taxable(item: Any) -> bool:
    """Whether a line item is a dispensed medicine subject to VAT."""
    line = _as_line_item(item)
    if line.category.strip().lower() in TAXABLE_CATEGORIES:
        return True
    description = line.description.lower()
    return any(keyword in description for keyword in TAXABLE_KEYWORDS)


@_zero_on_overflow
def compute_discount(subtotal: Any, spec: DiscountSpec | None) -> Decimal:
    """Discount amount for a subtotal.

    Percentages are not capped at 100; a configured percentage is trusted.
    Fixed amounts are capped at the subtotal. Unresolved codes give zero.
    """
    if spec is None:
        return ZERO
    base = coerce_decimal(subtotal)
    value = coerce_decimal(spec.value)
    kind = _as_discount_kind(spec.kind)

    if kind is DiscountKind.PERCENTAGE:
        if value <= 0:
            return ZERO
        return base * value / 100
    if kind is DiscountKind.FIXED:
        if value <= 0 or base <= 0:
            return ZERO
        return min(value, base)
    if kind is DiscountKind.CODE:
        if spec.resolved is None:
            return ZERO
        return compute_discount(base, spec.resolved.as_spec())
    return ZERO


@_zero_on_overflow
def compute_taxable_amount(
    items: Iterable[Any] | None,
    classifier: Callable[[LineItem], bool] = is_taxable,
) -> Decimal:
    lines = _as_line_items(items)
    return sum((line.amount for line in lines if classifier(line)), ZERO)


@_zero_on_overflow
def compute_tax(
    items: Iterable[Any] | None,
    subtotal: Any,
    discount: Any,
    *,
    classifier: Callable[[LineItem], bool] = is_taxable,
    vat_rate: Decimal = VAT_RATE,
) -> Decimal:
    """VAT on the taxable portion after its proportional share of the discount."""
    taxable = compute_taxable_amount(items, classifier)
    base = coerce_decimal(subtotal)
    if taxable == 0 or base == 0:
        return ZERO
    # Multiply before dividing so whole-number shares stay exact.
    taxable_after_discount = taxable - coerce_decimal(discount) * taxable / base
    return taxable_after_discount * vat_rate


@_zero_on_overflow
def compute_exempt_amount(subtotal: Any, taxable_amount: Any) -> Decimal:
    return coerce_decimal(subtotal) - coerce_decimal(taxable_amount)


@_zero_on_overflow
def compute_total(subtotal: Any, discount: Any, tax: Any) -> Decimal:
    return coerce_decimal(subtotal) - coerce_decimal(discount) + coerce_decimal(tax)


def compute_invoice_totals(
    items: Iterable[Any] | None,
    discount_spec: DiscountSpec | None = None,
    *,
    classifier: Callable[[LineItem], bool] = is_taxable,
    vat_rate: Decimal = VAT_RATE,
) -> InvoiceTotals:
    """Compute every money field of an invoice from its lines and discount."""
    lines = _as_line_items(items)
    subtotal = compute_subtotal(lines)
    discount = compute_discount(subtotal, discount_spec)
    taxable = compute_taxable_amount(lines, classifier)
    tax = compute_tax(lines, subtotal, discount, classifier=classifier, vat_rate=vat_rate)
    return InvoiceTotals(
        subtotal=subtotal,
        discount=discount,
        taxable_amount=taxable,
        exempt_amount=compute_exempt_amount(subtotal, taxable),
        tax=tax,
        total=compute_total(subtotal, discount, tax),
    )


def resolve_discount_code(
    code: str,
    catalog: Iterable[NamedDiscount],
    at: datetime | None = None,
) -> NamedDiscount | None:
    """Find a usable discount by code, or None.

    A discount is usable when it is active, inside its validity window and
    below its usage limit. Rejections are logged, not raised.
    """
    wanted = (code or "").strip().lower()
    if not wanted:
        return None
    now = at or datetime.now(UTC)

    for discount in catalog:
        if discount.code.strip().lower() != wanted:
            continue
        reason = None
        if not discount.is_active:
            reason = "inactive"
        elif discount.starts_at and now < discount.starts_at:
            reason = "not_yet_valid"
        elif discount.ends_at and now > discount.ends_at:
            reason = "expired"
        elif discount.max_usage and discount.usage_count >= discount.max_usage:
            reason = "usage_limit_reached"

        if reason:
            logger.debug("discount_code_rejected", code=discount.code, reason=reason)
            return None
        return discount

    logger.debug("discount_code_not_found", code=code)
    return None
