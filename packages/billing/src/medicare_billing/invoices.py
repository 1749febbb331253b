"""Validated construction of invoices and payments before they are stored.

The calculator degrades bad input to zero; these builders are the place where
bad input is rejected instead, so a stored invoice's totals always follow from
its lines.
"""

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog

from medicare_billing.billing_calc import DiscountKind, DiscountSpec, compute_invoice_totals
from medicare_billing.errors import ValidationError
from medicare_billing.fields import coerce_decimal, coerce_str
from medicare_billing.ledger import format_transaction_label, highest_transaction_number
from medicare_billing.models import ArchiveInfo, Invoice, LineItem, Payment

logger = structlog.get_logger(__name__)

PAYMENT_METHODS = frozenset({"cash", "card", "gcash", "paymaya", "bank"})


def _require(value: Any, field_name: str) -> str:
    text = coerce_str(value)
    if not text:
        raise ValidationError(f"{field_name} is required", details={"field": field_name})
    return text


def validate_line_items(items: Iterable[LineItem | Mapping[str, Any]]) -> list[LineItem]:
    """Return the items as LineItems, rejecting empty or non-positive lines."""
    lines = [item if isinstance(item, LineItem) else LineItem.from_raw(item) for item in items]
    if not lines:
        raise ValidationError("At least one line item is required", details={"field": "items"})
    for index, line in enumerate(lines):
        if not line.description:
            raise ValidationError(
                f"Line {index + 1} needs a description",
                details={"field": "items", "index": index},
            )
        if line.quantity <= 0 or line.rate < 0:
            raise ValidationError(
                f"Line {index + 1} has an invalid quantity or rate",
                details={"field": "items", "index": index},
            )
    return lines


def prepare_invoice(
    number: str,
    patient_id: str,
    patient_name: str,
    items: Iterable[LineItem | Mapping[str, Any]],
    discount_spec: DiscountSpec | None = None,
    *,
    issued_at: datetime | None = None,
    due_at: datetime | None = None,
    status: str = "unpaid",
    notes: str = "",
) -> Invoice:
    """Build an invoice whose line amounts and totals are all recomputed."""
    lines = validate_line_items(items)
    spec = discount_spec or DiscountSpec.none()
    totals = compute_invoice_totals(lines, spec).quantized()

    discount_kind = spec.kind
    discount_percentage = Decimal("0")
    if spec.kind is DiscountKind.PERCENTAGE:
        discount_percentage = coerce_decimal(spec.value)
    elif spec.kind is DiscountKind.CODE and spec.resolved is not None:
        resolved = spec.resolved.as_spec()
        discount_kind = resolved.kind
        if resolved.kind is DiscountKind.PERCENTAGE:
            discount_percentage = coerce_decimal(resolved.value)

    invoice = Invoice(
        number=_require(number, "number"),
        patient_id=_require(patient_id, "patientId"),
        patient_name=_require(patient_name, "patientName"),
        items=tuple(lines),
        subtotal=totals.subtotal,
        discount=totals.discount,
        discount_type=discount_kind.value if totals.discount else DiscountKind.NONE.value,
        discount_percentage=discount_percentage,
        taxable_amount=totals.taxable_amount,
        exempt_amount=totals.exempt_amount,
        tax=totals.tax,
        total=totals.total,
        status=status,
        issued_at=issued_at or datetime.now(UTC),
        due_at=due_at,
        description=notes,
        archive=ArchiveInfo(),
    )
    logger.debug("invoice_prepared", number=invoice.number, total=str(invoice.total))
    return invoice


def next_transaction_label(existing_labels: Iterable[str]) -> str:
    """Next ``TRANS-NNN`` label after the highest one already issued."""
    return format_transaction_label(highest_transaction_number(existing_labels) + 1)


def prepare_payment(
    invoice_number: str,
    patient_id: str,
    patient_name: str,
    amount: Any,
    method: str,
    *,
    reference: str = "",
    existing_labels: Iterable[str] = (),
    paid_at: datetime | None = None,
    status: str = "completed",
    notes: str = "",
) -> Payment:
    """Build a payment, labelling it ``TRANS-NNN`` when no reference is given."""
    value = coerce_decimal(amount)
    if value <= 0:
        raise ValidationError("Payment amount must be positive", details={"field": "amount"})
    payment_method = _require(method, "method").lower()
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Unsupported payment method: {method}", details={"field": "method"}
        )

    return Payment(
        reference=coerce_str(reference) or next_transaction_label(existing_labels),
        invoice_number=_require(invoice_number, "invoiceNumber"),
        patient_id=_require(patient_id, "patientId"),
        patient_name=_require(patient_name, "patientName"),
        amount=value,
        method=payment_method,
        status=status,
        paid_at=paid_at or datetime.now(UTC),
        description=notes or f"Payment for {invoice_number}",
    )
