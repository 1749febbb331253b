"""Tests for ledger normalization, dedup, labelling and patient linking."""

import copy
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from medicare_billing.ledger import (
    UNKNOWN_PATIENT,
    LedgerSources,
    extract_invoice_tokens,
    highest_transaction_number,
    label_payments,
    link_patient,
    merge_records,
    normalize_sources,
    patient_directory,
    reconcile_ledger,
    record_key,
    resolve_patient_display_name,
    sort_ledger,
)
from medicare_billing.models import LedgerRecord, Payment, RecordKind


def at(day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(2025, 3, day, hour, minute, tzinfo=UTC)


def invoice_record(number, patient_name="", amount="0", when=None, patient_id=""):
    return LedgerRecord(
        kind=RecordKind.INVOICE,
        number=number,
        patient_name=patient_name,
        patient_id=patient_id,
        amount=Decimal(amount),
        timestamp=when,
    )


def payment_record(number="", amount="0", when=None, description="", **kwargs):
    return LedgerRecord(
        kind=RecordKind.PAYMENT,
        number=number,
        amount=Decimal(amount),
        timestamp=when,
        description=description,
        **kwargs,
    )


class TestNormalization:
    """Tests for projecting raw store records onto ledger rows."""

    def test_invoice_fields(self, mock_invoice_response):
        [record] = normalize_sources(LedgerSources(invoices=[mock_invoice_response]))

        assert record.kind is RecordKind.INVOICE
        assert record.id == "665f1c2a9b1e4a0012345678"
        assert record.number == "INV-2025-007"
        assert record.patient_name == "Maria Santos"
        assert record.amount == Decimal("2534.4")
        assert record.timestamp == at(10, 9)

    def test_legacy_field_names(self):
        raw = {
            "id": "legacy-1",
            "invoice_number": "INV-OLD-1",
            "customerName": "Pedro Penduko",
            "grandTotal": "₱1,250.50",
            "invoiceDate": "2024-12-01",
        }
        [record] = normalize_sources(LedgerSources(invoices=[raw]))

        assert record.number == "INV-OLD-1"
        assert record.patient_name == "Pedro Penduko"
        assert record.amount == Decimal("1250.50")
        assert record.timestamp == datetime(2024, 12, 1, tzinfo=UTC)

    def test_earlier_field_name_wins(self):
        raw = {"number": "INV-1", "total": 100, "amount": 999}
        [record] = normalize_sources(LedgerSources(invoices=[raw]))
        assert record.amount == Decimal("100")

    def test_blank_value_falls_through(self):
        raw = {"number": "INV-1", "patientName": "  ", "patient_name": "Ana Cruz"}
        [record] = normalize_sources(LedgerSources(invoices=[raw]))
        assert record.patient_name == "Ana Cruz"

    def test_missing_scalars_default(self):
        [record] = normalize_sources(LedgerSources(invoices=[{"number": "INV-9"}]))

        assert record.amount == Decimal("0")
        assert record.timestamp is None
        assert record.patient_name == ""
        assert record.status == "unpaid"

    def test_epoch_millisecond_dates(self):
        raw = {"receiptNumber": "RX-1", "date": 1741600800000, "totalAmount": 10}
        [record] = normalize_sources(LedgerSources(pharmacy=[raw]))
        assert record.timestamp == at(10, 10)

    def test_archived_invoices_and_payments_are_skipped(self):
        sources = LedgerSources(
            invoices=[{"number": "INV-1", "isArchived": True}, {"number": "INV-2"}],
            payments=[{"transactionId": "OR-1", "isArchived": "true"}],
        )
        records = normalize_sources(sources)
        assert [r.number for r in records] == ["INV-2"]

    def test_non_mapping_rows_are_ignored(self):
        sources = LedgerSources(invoices=[None, "junk", {"number": "INV-1"}])
        assert len(normalize_sources(sources)) == 1

    def test_payment_links_its_invoice(self, mock_payment_response):
        raw = dict(mock_payment_response, invoiceNumber="INV-2025-007")
        [record] = normalize_sources(LedgerSources(payments=[raw]))

        assert record.kind is RecordKind.PAYMENT
        assert record.linked_invoice == "INV-2025-007"
        assert record.amount == Decimal("2534.40")
        assert record.method == "cash"


class TestPaymentLabels:
    """Tests for TRANS-NNN labelling."""

    def test_highest_transaction_number(self):
        assert highest_transaction_number(["TRANS-004", "OR-99", "trans-012", "", "TRANS-x"]) == 12

    def test_labels_follow_chronological_order(self):
        payments = [
            Payment(id="a", paid_at=at(10, 12)),
            Payment(id="b", paid_at=at(10, 8)),
            Payment(id="c"),
            Payment(id="d", paid_at=at(9)),
        ]
        labelled = label_payments(payments)

        assert [p.reference for p in labelled] == [
            "TRANS-003",
            "TRANS-002",
            "TRANS-004",
            "TRANS-001",
        ]

    def test_ties_keep_input_order(self):
        payments = [Payment(id="a", paid_at=at(10)), Payment(id="b", paid_at=at(10))]
        assert [p.reference for p in label_payments(payments)] == ["TRANS-001", "TRANS-002"]

    def test_existing_references_are_kept(self):
        payments = [
            Payment(id="a", reference="TRANS-007", paid_at=at(1)),
            Payment(id="b", reference="OR-55", paid_at=at(2)),
            Payment(id="c", paid_at=at(3)),
        ]
        labelled = label_payments(payments)

        assert [p.reference for p in labelled] == ["TRANS-007", "OR-55", "TRANS-008"]

    def test_reserved_labels_are_not_reused(self):
        labelled = label_payments([Payment(id="a")], reserved_labels=["TRANS-010"])
        assert labelled[0].reference == "TRANS-011"

    def test_input_is_not_mutated(self):
        payments = [Payment(id="a")]
        label_payments(payments)
        assert payments[0].reference == ""


class TestDeduplication:
    """Tests for record keys and merging."""

    def test_key_prefers_number_then_id(self):
        assert record_key(invoice_record("INV-1")) == "INV-1"
        assert record_key(LedgerRecord(kind=RecordKind.PHARMACY, id="ph-1")) == "ph-1"

    def test_composite_key(self):
        record = LedgerRecord(
            kind=RecordKind.PHARMACY,
            amount=Decimal("448"),
            timestamp=at(9, 11),
            patient_id="P-1",
        )
        assert record_key(record) == "pharmacy:2025-03-09T11:00:00+00:00:448.00:P-1"

    def test_local_record_wins(self):
        local = invoice_record("INV-1", amount="500")
        remote = invoice_record("INV-1", amount="450")

        merged = merge_records([local], [remote])

        assert merged == [local]

    def test_same_number_across_sources_merges_once(self, mock_invoice_response):
        local = invoice_record("INV-2025-007", "Maria Santos", "2534.40", at(10, 9))
        records = reconcile_ledger(
            LedgerSources(invoices=[mock_invoice_response]),
            local_records=[local],
        )

        assert len(records) == 1
        assert records[0] is local


class TestInvoiceTokens:
    """Tests for extracting invoice references from free text."""

    def test_inv_prefixed_codes_first(self):
        tokens = extract_invoice_tokens("Paid 20250310123 for INV-2025-007")
        assert tokens == ["INV-2025-007", "20250310123"]

    def test_inv_token_needs_a_digit(self):
        assert extract_invoice_tokens("Invoice pending") == []

    def test_short_digit_runs_are_ignored(self):
        assert extract_invoice_tokens("Bed 12345") == []

    def test_none_is_tolerated(self):
        assert extract_invoice_tokens(None, "") == []


class TestPatientLinking:
    """Tests for best-effort patient attribution."""

    @pytest.fixture
    def invoices(self):
        return [
            invoice_record("INV-2025-007", "Maria Santos", "2534.40", at(10, 9)),
            invoice_record("INV-2025-008", "Ana Cruz", "448.00", at(9, 20)),
            invoice_record("INV-2025-009", "Juan Dela Cruz", "448.00", at(12, 9)),
        ]

    def test_token_in_description(self, invoices):
        """A payment mentioning INV-2025-007 resolves to that invoice's patient."""
        record = payment_record("TRANS-001", "1", at(20), "Settlement for INV-2025-007")

        assert resolve_patient_display_name(record, {}, invoices) == "Maria Santos"

    def test_token_link_fills_invoice_reference(self, invoices):
        record = payment_record("TRANS-001", "1", at(20), "Settlement for inv-2025-007")
        linked = link_patient(record, invoices)

        assert linked.patient_name == "Maria Santos"
        assert linked.linked_invoice == "INV-2025-007"

    def test_own_name_is_kept(self, invoices):
        record = payment_record("TRANS-001", "1", description="INV-2025-007", patient_name="Self")
        assert resolve_patient_display_name(record, {}, invoices) == "Self"

    def test_directory_by_patient_id(self, invoices):
        record = payment_record("TRANS-001", patient_id="P-1")
        name = resolve_patient_display_name(record, {"P-1": "Lola Basyang"}, invoices)
        assert name == "Lola Basyang"

    def test_proximity_picks_nearest_invoice(self, invoices):
        record = LedgerRecord(
            kind=RecordKind.PHARMACY, number="RX-1", amount=Decimal("448"), timestamp=at(9, 11)
        )
        assert resolve_patient_display_name(record, {}, invoices) == "Ana Cruz"

    def test_proximity_respects_amount_epsilon(self, invoices):
        record = payment_record("TRANS-001", "448.02", at(9, 21))
        assert resolve_patient_display_name(record, {}, invoices) == UNKNOWN_PATIENT

    def test_proximity_respects_window(self, invoices):
        record = payment_record("TRANS-001", "2534.40", at(11, 10))
        assert resolve_patient_display_name(record, {}, invoices) == UNKNOWN_PATIENT

    def test_configurable_window(self, invoices):
        record = payment_record("TRANS-001", "2534.40", at(11, 10))
        name = resolve_patient_display_name(record, {}, invoices, window=timedelta(hours=48))
        assert name == "Maria Santos"

    def test_unmatched_token_falls_back_to_proximity(self, invoices):
        record = payment_record("TRANS-001", "448", at(12, 8), "Ref INV-1999-001")
        assert resolve_patient_display_name(record, {}, invoices) == "Juan Dela Cruz"

    def test_zero_amount_is_never_matched(self):
        invoices = [invoice_record("INV-1", "Ana Cruz", "0", at(10))]
        record = payment_record("TRANS-001", "0", at(10))
        assert resolve_patient_display_name(record, {}, invoices) == UNKNOWN_PATIENT

    def test_undated_record_is_not_matched_by_amount(self, invoices):
        record = payment_record("TRANS-001", "448")
        assert resolve_patient_display_name(record, {}, invoices) == UNKNOWN_PATIENT

    def test_invoices_are_not_linked(self, invoices):
        record = invoice_record("INV-2025-010", amount="448.00", when=at(9, 20))
        assert resolve_patient_display_name(record, {}, invoices) == UNKNOWN_PATIENT

    def test_patient_directory(self):
        directory = patient_directory(
            [
                {"_id": "p1", "name": "Ana Cruz"},
                {"patientId": "P-2", "fullName": "Juan Dela Cruz"},
                {"_id": "p3"},
                "junk",
            ]
        )
        assert directory == {"p1": "Ana Cruz", "P-2": "Juan Dela Cruz"}


class TestReconcileLedger:
    """Tests for the full reconciliation pass."""

    @pytest.fixture
    def sources(self, mock_invoice_response, mock_payment_response, mock_pharmacy_response):
        return LedgerSources(
            invoices=[mock_invoice_response],
            payments=[mock_payment_response],
            pharmacy=[mock_pharmacy_response],
        )

    def test_worked_example(self, sources):
        records = reconcile_ledger(sources)
        payment = next(r for r in records if r.kind is RecordKind.PAYMENT)

        assert payment.number == "TRANS-001"
        assert payment.patient_name == "Maria Santos"
        assert payment.linked_invoice == "INV-2025-007"

    def test_sorted_newest_first(self, sources):
        records = reconcile_ledger(sources)
        assert [r.number for r in records] == ["TRANS-001", "INV-2025-007", "RX-1001"]

    def test_undated_records_go_last(self):
        local = [invoice_record("INV-A"), invoice_record("INV-B", when=at(1))]
        assert [r.number for r in sort_ledger(local)] == ["INV-B", "INV-A"]

    def test_ties_keep_merge_order(self):
        local = [invoice_record("INV-A", when=at(1)), invoice_record("INV-B", when=at(1))]
        assert [r.number for r in sort_ledger(local)] == ["INV-A", "INV-B"]

    def test_idempotent_and_inputs_untouched(self, sources):
        snapshot = copy.deepcopy(sources)

        first = reconcile_ledger(sources)
        second = reconcile_ledger(sources)

        assert first == second
        assert sources == snapshot

    def test_local_labels_are_reserved(self, sources):
        local = [payment_record("TRANS-010", "5", at(1), patient_name="Walk-in")]
        records = reconcile_ledger(sources, local_records=local)
        assert {r.number for r in records} >= {"TRANS-010", "TRANS-011"}

    def test_suppressed_ignores_remote(self, sources):
        local = [invoice_record("INV-LOCAL", "Ana Cruz", "10", at(1))]
        records = reconcile_ledger(sources, local_records=local, suppressed=True)
        assert [r.number for r in records] == ["INV-LOCAL"]

    def test_failed_source_contributes_nothing(self, mock_invoice_response):
        sources = LedgerSources(
            invoices=[mock_invoice_response],
            failures={"payments": "Source 'payments' failed: boom"},
        )
        assert [r.number for r in reconcile_ledger(sources)] == ["INV-2025-007"]

    def test_patient_directory_is_used(self):
        sources = LedgerSources(pharmacy=[{"receiptNumber": "RX-9", "patientId": "P-7"}])
        [record] = reconcile_ledger(sources, patients={"P-7": "Ana Cruz"})
        assert record.patient_name == "Ana Cruz"
