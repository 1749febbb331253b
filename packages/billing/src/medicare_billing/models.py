"""Domain models for invoices, payments, pharmacy sales and the unified ledger."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from medicare_billing.fields import (
    ARCHIVE_FIELDS,
    INVOICE_FIELDS,
    LINE_ITEM_FIELDS,
    PAYMENT_FIELDS,
    PHARMACY_FIELDS,
    ZERO,
    coerce_bool,
    coerce_datetime,
    coerce_decimal,
    coerce_str,
    first_present,
)


class RecordKind(str, Enum):
    """Kinds of financial event shown in the unified ledger."""

    INVOICE = "invoice"
    PAYMENT = "payment"
    PHARMACY = "pharmacy"


class ArchiveState(str, Enum):
    """Soft-delete lifecycle of an archivable entity."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _items_from_raw(value: Any) -> tuple[LineItem, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(LineItem.from_raw(item) for item in value if isinstance(item, Mapping))


@dataclass(frozen=True)
class LineItem:
    """A billed service or medicine line.

    ``amount`` is always derived from quantity and rate; an amount supplied by
    the source record is ignored.
    """

    description: str = ""
    category: str = ""
    quantity: Decimal = ZERO
    rate: Decimal = ZERO

    @property
    def amount(self) -> Decimal:
        try:
            return self.quantity * self.rate
        except ArithmeticError:
            return ZERO

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> LineItem:
        return cls(
            description=coerce_str(first_present(raw, LINE_ITEM_FIELDS["description"])),
            category=coerce_str(first_present(raw, LINE_ITEM_FIELDS["category"])),
            quantity=coerce_decimal(first_present(raw, LINE_ITEM_FIELDS["quantity"])),
            rate=coerce_decimal(first_present(raw, LINE_ITEM_FIELDS["rate"])),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "category": self.category,
            "quantity": float(self.quantity),
            "rate": float(self.rate),
            "amount": float(self.amount),
        }


@dataclass(frozen=True)
class ArchiveInfo:
    """Soft-delete metadata shared by users, patients, invoices and payments."""

    is_archived: bool = False
    archived_at: datetime | None = None
    archived_by: str | None = None

    @property
    def state(self) -> ArchiveState:
        return ArchiveState.ARCHIVED if self.is_archived else ArchiveState.ACTIVE

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> ArchiveInfo:
        archived_by = coerce_str(first_present(raw, ARCHIVE_FIELDS["archived_by"]))
        return cls(
            is_archived=coerce_bool(first_present(raw, ARCHIVE_FIELDS["is_archived"])),
            archived_at=coerce_datetime(first_present(raw, ARCHIVE_FIELDS["archived_at"])),
            archived_by=archived_by or None,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "isArchived": self.is_archived,
            "archivedAt": _isoformat(self.archived_at),
            "archivedBy": self.archived_by,
        }


@dataclass(frozen=True)
class LedgerRecord:
    """One row of the unified ledger view. Recomputed on every pass."""

    kind: RecordKind
    id: str = ""
    number: str = ""
    patient_name: str = ""
    patient_id: str = ""
    amount: Decimal = ZERO
    status: str = ""
    timestamp: datetime | None = None
    linked_invoice: str | None = None
    description: str = ""
    method: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "number": self.number,
            "patientName": self.patient_name,
            "patientId": self.patient_id,
            "amount": str(self.amount),
            "status": self.status,
            "timestamp": _isoformat(self.timestamp),
            "linkedInvoice": self.linked_invoice,
            "description": self.description,
            "method": self.method,
        }


@dataclass(frozen=True)
class Invoice:
    """A patient invoice as held by the invoice store."""

    id: str = ""
    number: str = ""
    patient_id: str = ""
    patient_name: str = ""
    items: tuple[LineItem, ...] = ()
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    discount_type: str = "none"
    discount_percentage: Decimal = ZERO
    taxable_amount: Decimal = ZERO
    exempt_amount: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal = ZERO
    status: str = "unpaid"
    issued_at: datetime | None = None
    due_at: datetime | None = None
    description: str = ""
    archive: ArchiveInfo = field(default_factory=ArchiveInfo)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> Invoice:
        def pick(name: str) -> Any:
            return first_present(raw, INVOICE_FIELDS[name])

        return cls(
            id=coerce_str(pick("id")),
            number=coerce_str(pick("number")),
            patient_id=coerce_str(pick("patient_id")),
            patient_name=coerce_str(pick("patient_name")),
            items=_items_from_raw(pick("items")),
            subtotal=coerce_decimal(pick("subtotal")),
            discount=coerce_decimal(pick("discount")),
            discount_type=coerce_str(pick("discount_type")) or "none",
            discount_percentage=coerce_decimal(pick("discount_percentage")),
            taxable_amount=coerce_decimal(pick("taxable_amount")),
            exempt_amount=coerce_decimal(pick("exempt_amount")),
            tax=coerce_decimal(pick("tax")),
            total=coerce_decimal(pick("total")),
            status=coerce_str(pick("status")) or "unpaid",
            issued_at=coerce_datetime(pick("issued_at")),
            due_at=coerce_datetime(pick("due_at")),
            description=coerce_str(pick("description")),
            archive=ArchiveInfo.from_raw(raw),
        )

    def to_ledger_record(self) -> LedgerRecord:
        return LedgerRecord(
            kind=RecordKind.INVOICE,
            id=self.id,
            number=self.number,
            patient_name=self.patient_name,
            patient_id=self.patient_id,
            amount=self.total,
            status=self.status,
            timestamp=self.issued_at,
            description=self.description,
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the invoice store's create endpoint."""
        return {
            "invoiceNumber": self.number,
            "patientId": self.patient_id,
            "patientName": self.patient_name,
            "items": [item.to_payload() for item in self.items],
            "subtotal": float(self.subtotal),
            "discount": float(self.discount),
            "discountType": self.discount_type,
            "discountPercentage": float(self.discount_percentage),
            "taxableAmount": float(self.taxable_amount),
            "exemptAmount": float(self.exempt_amount),
            "tax": float(self.tax),
            "total": float(self.total),
            "status": self.status,
            "date": _isoformat(self.issued_at),
            "dueDate": _isoformat(self.due_at),
            "notes": self.description,
        }


@dataclass(frozen=True)
class Payment:
    """A payment received against an invoice (or unattributed)."""

    id: str = ""
    reference: str = ""
    invoice_number: str = ""
    patient_id: str = ""
    patient_name: str = ""
    amount: Decimal = ZERO
    method: str = ""
    status: str = "completed"
    paid_at: datetime | None = None
    description: str = ""
    archive: ArchiveInfo = field(default_factory=ArchiveInfo)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> Payment:
        def pick(name: str) -> Any:
            return first_present(raw, PAYMENT_FIELDS[name])

        return cls(
            id=coerce_str(pick("id")),
            reference=coerce_str(pick("reference")),
            invoice_number=coerce_str(pick("invoice_number")),
            patient_id=coerce_str(pick("patient_id")),
            patient_name=coerce_str(pick("patient_name")),
            amount=coerce_decimal(pick("amount")),
            method=coerce_str(pick("method")),
            status=coerce_str(pick("status")) or "completed",
            paid_at=coerce_datetime(pick("paid_at")),
            description=coerce_str(pick("description")),
            archive=ArchiveInfo.from_raw(raw),
        )

    def to_ledger_record(self) -> LedgerRecord:
        return LedgerRecord(
            kind=RecordKind.PAYMENT,
            id=self.id,
            number=self.reference,
            patient_name=self.patient_name,
            patient_id=self.patient_id,
            amount=self.amount,
            status=self.status,
            timestamp=self.paid_at,
            linked_invoice=self.invoice_number or None,
            description=self.description,
            method=self.method,
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the payment store's create endpoint."""
        return {
            "transactionId": self.reference,
            "invoiceNumber": self.invoice_number,
            "patientId": self.patient_id,
            "patientName": self.patient_name,
            "amount": float(self.amount),
            "method": self.method,
            "status": self.status,
            "date": _isoformat(self.paid_at),
            "notes": self.description,
        }


@dataclass(frozen=True)
class PharmacyTransaction:
    """A dispensing sale from the pharmacy system. Read-only to this core."""

    id: str = ""
    number: str = ""
    patient_id: str = ""
    patient_name: str = ""
    items: tuple[LineItem, ...] = ()
    total_amount: Decimal = ZERO
    tax: Decimal = ZERO
    status: str = "completed"
    created_at: datetime | None = None
    description: str = ""

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> PharmacyTransaction:
        def pick(name: str) -> Any:
            return first_present(raw, PHARMACY_FIELDS[name])

        return cls(
            id=coerce_str(pick("id")),
            number=coerce_str(pick("number")),
            patient_id=coerce_str(pick("patient_id")),
            patient_name=coerce_str(pick("patient_name")),
            items=_items_from_raw(pick("items")),
            total_amount=coerce_decimal(pick("total_amount")),
            tax=coerce_decimal(pick("tax")),
            status=coerce_str(pick("status")) or "completed",
            created_at=coerce_datetime(pick("created_at")),
            description=coerce_str(pick("description")),
        )

    def to_ledger_record(self) -> LedgerRecord:
        return LedgerRecord(
            kind=RecordKind.PHARMACY,
            id=self.id,
            number=self.number,
            patient_name=self.patient_name,
            patient_id=self.patient_id,
            amount=self.total_amount,
            status=self.status,
            timestamp=self.created_at,
            description=self.description,
        )
