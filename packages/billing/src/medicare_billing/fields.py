"""Field-name fallbacks and scalar coercion for raw store records.

Records in the invoice, payment and pharmacy stores were written by several
generations of the billing front end, so the same value may live under
different keys. Each tuple below lists the accepted keys for one logical field
in priority order; the first present, non-empty value wins. The tuples are
applied once, when a raw record is turned into a model, and never re-derived
at access time.
"""

import math
from collections.abc import Mapping, Sequence
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0")

INVOICE_FIELDS: dict[str, tuple[str, ...]] = {
    "id": ("_id", "id"),
    "number": ("number", "invoiceNumber", "invoice_number"),
    "patient_id": ("patientId", "patient_id", "patientNumber", "accountId"),
    "patient_name": ("patientName", "patient_name", "patient", "customerName"),
    "items": ("items", "lineItems", "lines"),
    "subtotal": ("subtotal", "subTotal"),
    "discount": ("discount", "discountAmount"),
    "discount_type": ("discountType", "discount_type"),
    "discount_percentage": ("discountPercentage", "discount_percentage"),
    "taxable_amount": ("taxableAmount", "taxable_amount"),
    "exempt_amount": ("exemptAmount", "exempt_amount"),
    "tax": ("tax", "taxAmount", "tax_amount"),
    "total": ("total", "totalAmount", "total_amount", "amount", "grandTotal"),
    "status": ("status",),
    "issued_at": (
        "issuedDate",
        "date",
        "invoiceDate",
        "dateIssued",
        "issuedAt",
        "generatedAt",
        "createdAt",
    ),
    "due_at": ("dueDate", "due_date"),
    "description": ("description", "notes"),
}

PAYMENT_FIELDS: dict[str, tuple[str, ...]] = {
    "id": ("_id", "id"),
    "reference": ("transactionId", "reference", "paymentNumber", "number"),
    "invoice_number": ("invoiceNumber", "invoice_number", "invoiceId"),
    "patient_id": ("patientId", "patient_id", "accountId"),
    "patient_name": ("patientName", "patient_name", "patient"),
    "amount": ("amount", "amountPaid", "total", "totalAmount"),
    "method": ("method", "paymentMethod"),
    "status": ("status",),
    "paid_at": ("paymentDate", "date", "paidAt", "createdAt"),
    "description": ("description", "notes"),
}

PHARMACY_FIELDS: dict[str, tuple[str, ...]] = {
    "id": ("_id", "id", "transactionId"),
    "number": ("receiptNumber", "transactionNumber", "number", "reference"),
    "patient_id": ("patientId", "patient_id"),
    "patient_name": ("patientName", "patient_name", "customerName"),
    "items": ("items", "medicines", "lines"),
    "total_amount": ("totalAmount", "total", "amount", "grandTotal"),
    "tax": ("tax", "vat", "taxAmount"),
    "status": ("status",),
    "created_at": ("date", "transactionDate", "dispensedAt", "createdAt"),
    "description": ("description", "notes"),
}

LINE_ITEM_FIELDS: dict[str, tuple[str, ...]] = {
    "description": ("description", "name", "medicationName", "itemName"),
    "category": ("category", "group", "type"),
    "quantity": ("quantity", "qty"),
    "rate": ("rate", "unitPrice", "price"),
}

ARCHIVE_FIELDS: dict[str, tuple[str, ...]] = {
    "is_archived": ("isArchived", "is_archived"),
    "archived_at": ("archivedAt", "archived_at"),
    "archived_by": ("archivedBy", "archived_by"),
}


def first_present(raw: Mapping[str, Any], names: Sequence[str]) -> Any:
    """Return the first value under ``names`` that is neither None nor blank."""
    for name in names:
        value = raw.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def coerce_str(value: Any) -> str:
    """Coerce a scalar to a stripped string; containers and None become ''."""
    if value is None or isinstance(value, (Mapping, list, tuple, set)):
        return ""
    return str(value).strip()


def coerce_decimal(value: Any) -> Decimal:
    """Coerce a scalar to Decimal, degrading anything unusable to zero."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return ZERO
        return Decimal(str(value))
    if isinstance(value, str):
        text = value.strip().replace(",", "").lstrip("₱$")
        if not text:
            return ZERO
        try:
            result = Decimal(text)
        except InvalidOperation:
            return ZERO
        return result if result.is_finite() else ZERO
    return ZERO


def coerce_datetime(value: Any) -> datetime | None:
    """Parse a timestamp into an aware UTC datetime.

    Accepts datetimes, dates, ISO-8601 strings and epoch milliseconds. Naive
    values are taken as UTC. Anything unparseable yields None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)
