"""Tests for validated invoice and payment construction."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from medicare_billing.billing_calc import DiscountSpec, NamedDiscount
from medicare_billing.errors import ValidationError
from medicare_billing.invoices import next_transaction_label, prepare_invoice, prepare_payment
from medicare_billing.models import Invoice, LineItem


@pytest.fixture
def raw_items():
    return [
        {"description": "Consultation", "category": "Consultation", "quantity": 2, "rate": 1500},
        {"description": "Paracetamol 500mg", "category": "Pharmacy", "quantity": 10, "rate": 15},
    ]


class TestPrepareInvoice:
    """Tests for prepare_invoice."""

    def test_totals_are_recomputed(self, raw_items):
        invoice = prepare_invoice(
            "INV-2025-007", "P-0042", "Maria Santos", raw_items, DiscountSpec.percentage(20)
        )

        assert invoice.subtotal == Decimal("3150.00")
        assert invoice.discount == Decimal("630.00")
        assert invoice.taxable_amount == Decimal("150.00")
        assert invoice.exempt_amount == Decimal("3000.00")
        assert invoice.tax == Decimal("14.40")
        assert invoice.total == Decimal("2534.40")
        assert invoice.discount_type == "percentage"
        assert invoice.discount_percentage == Decimal("20")
        assert invoice.status == "unpaid"
        assert invoice.archive.is_archived is False

    def test_code_discount_records_resolved_kind(self, raw_items):
        senior = NamedDiscount(code="SENIOR", type="fixed", value=Decimal("500"))
        invoice = prepare_invoice(
            "INV-1", "P-1", "Ana Cruz", raw_items, DiscountSpec.from_code("SENIOR", senior)
        )

        assert invoice.discount == Decimal("500.00")
        assert invoice.discount_type == "fixed"
        assert invoice.discount_percentage == Decimal("0")

    def test_no_discount(self, raw_items):
        invoice = prepare_invoice("INV-1", "P-1", "Ana Cruz", raw_items)

        assert invoice.discount_type == "none"
        assert invoice.total == Decimal("3168.00")

    def test_stored_total_follows_rounded_parts(self):
        items = [
            {"description": "Vitamin C", "category": "Pharmacy", "quantity": 1, "rate": "10.125"}
        ]
        invoice = prepare_invoice("INV-1", "P-1", "Ana Cruz", items)

        assert invoice.subtotal == Decimal("10.13")
        assert invoice.tax == Decimal("1.22")
        assert invoice.total == Decimal("11.35")
        assert invoice.total == invoice.subtotal - invoice.discount + invoice.tax
        assert invoice.exempt_amount == invoice.subtotal - invoice.taxable_amount

    def test_payload_round_trips_through_normalizer(self, raw_items):
        issued = datetime(2025, 3, 10, 9, tzinfo=UTC)
        invoice = prepare_invoice("INV-1", "P-1", "Ana Cruz", raw_items, issued_at=issued)

        restored = Invoice.from_raw(invoice.to_payload())

        assert restored.number == "INV-1"
        assert restored.total == invoice.total
        assert restored.issued_at == issued
        assert restored.items == invoice.items

    @pytest.mark.parametrize("field_name", ["number", "patient_id", "patient_name"])
    def test_required_fields(self, raw_items, field_name):
        args = {"number": "INV-1", "patient_id": "P-1", "patient_name": "Ana Cruz"}
        args[field_name] = "  "

        with pytest.raises(ValidationError):
            prepare_invoice(items=raw_items, **args)

    def test_needs_items(self):
        with pytest.raises(ValidationError) as exc_info:
            prepare_invoice("INV-1", "P-1", "Ana Cruz", [])

        assert exc_info.value.details == {"field": "items"}
        assert exc_info.value.status_code == 400

    def test_rejects_bad_lines(self):
        with pytest.raises(ValidationError):
            prepare_invoice("INV-1", "P-1", "Ana Cruz", [LineItem(description="X-ray")])
        with pytest.raises(ValidationError):
            prepare_invoice("INV-1", "P-1", "Ana Cruz", [{"quantity": 1, "rate": 10}])


class TestPreparePayment:
    """Tests for prepare_payment."""

    def test_labels_unreferenced_payment(self):
        payment = prepare_payment(
            "INV-1",
            "P-1",
            "Ana Cruz",
            "1,500.00",
            "Cash",
            existing_labels=["TRANS-001", "TRANS-004", "OR-9"],
        )

        assert payment.reference == "TRANS-005"
        assert payment.amount == Decimal("1500.00")
        assert payment.method == "cash"
        assert payment.description == "Payment for INV-1"
        assert payment.paid_at is not None

    def test_keeps_given_reference(self):
        payment = prepare_payment("INV-1", "P-1", "Ana Cruz", 100, "gcash", reference="GC-778")
        assert payment.reference == "GC-778"

    @pytest.mark.parametrize("amount", [0, -5, "abc", None])
    def test_amount_must_be_positive(self, amount):
        with pytest.raises(ValidationError):
            prepare_payment("INV-1", "P-1", "Ana Cruz", amount, "cash")

    def test_unknown_method(self):
        with pytest.raises(ValidationError):
            prepare_payment("INV-1", "P-1", "Ana Cruz", 100, "barter")

    def test_payload_uses_transaction_id(self):
        payment = prepare_payment("INV-1", "P-1", "Ana Cruz", 100, "card")
        payload = payment.to_payload()

        assert payload["transactionId"] == "TRANS-001"
        assert payload["invoiceNumber"] == "INV-1"
        assert payload["amount"] == 100.0


def test_next_transaction_label():
    assert next_transaction_label([]) == "TRANS-001"
    assert next_transaction_label(["TRANS-099", "TRANS-100"]) == "TRANS-101"
    assert next_transaction_label(["TRANS-1234"]) == "TRANS-1235"
