"""Unified billing ledger reconciliation.

Invoices, payments and pharmacy sales come from three independently paged
stores. This module turns them into one deduplicated, newest-first list of
``LedgerRecord`` rows, merging in records the caller is still holding locally
(optimistic copies not yet confirmed by a store) and filling in patient names
for payments and pharmacy sales that arrived without one.

Patient linking is best-effort and conservative: a record that
cannot be tied to an invoice by reference token, or by an exact amount within
the matching window, stays unknown rather than being guessed.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from itertools import chain
from typing import Any

import structlog

from medicare_billing.billing_calc import quantize_money
from medicare_billing.clients.billing_api import BillingAPIClient
from medicare_billing.config import get_settings
from medicare_billing.errors import UpstreamFetchError
from medicare_billing.fields import coerce_str, first_present
from medicare_billing.models import (
    Invoice,
    LedgerRecord,
    Payment,
    PharmacyTransaction,
    RecordKind,
)
from medicare_billing.state import SuppressionFlag

logger = structlog.get_logger(__name__)

UNKNOWN_PATIENT = "Unknown"
DEFAULT_MATCH_WINDOW = timedelta(hours=24)
DEFAULT_AMOUNT_EPSILON = Decimal("0.01")

TRANSACTION_LABEL_RE = re.compile(r"^TRANS-(\d+)$", re.IGNORECASE)
_INVOICE_TOKEN_RE = re.compile(r"\bINV[-_]?[A-Z0-9]+(?:-[A-Z0-9]+)*", re.IGNORECASE)
_DIGIT_RUN_RE = re.compile(r"\d{6,}")

_EARLIEST = datetime.min.replace(tzinfo=UTC)
_LATEST = datetime.max.replace(tzinfo=UTC)


@dataclass(frozen=True)
class LedgerSources:
    """Raw records fetched from each store, plus per-source failure messages."""

    invoices: Sequence[Mapping[str, Any]] = ()
    payments: Sequence[Mapping[str, Any]] = ()
    pharmacy: Sequence[Mapping[str, Any]] = ()
    failures: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerSnapshot:
    """Result of one reconciliation pass."""

    records: tuple[LedgerRecord, ...] = ()
    warnings: tuple[str, ...] = ()
    suppressed: bool = False


# === Payment labels ===


def format_transaction_label(number: int) -> str:
    return f"TRANS-{number:03d}"


def highest_transaction_number(labels: Iterable[str]) -> int:
    highest = 0
    for label in labels:
        match = TRANSACTION_LABEL_RE.match(label or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def label_payments(
    payments: Sequence[Payment],
    reserved_labels: Iterable[str] = (),
) -> list[Payment]:
    """Give every payment without a reference a ``TRANS-NNN`` label.

    Unlabelled payments are numbered in ascending time order (input order
    breaks ties, undated payments go last), continuing after the highest
    ``TRANS`` number already in use so no existing label is handed out twice.
    Payments that already carry any reference keep it unchanged.
    """
    highest = highest_transaction_number(
        chain(reserved_labels, (payment.reference for payment in payments))
    )
    unlabelled = [index for index, payment in enumerate(payments) if not payment.reference]
    unlabelled.sort(key=lambda index: (payments[index].paid_at or _LATEST, index))

    labels = {
        index: format_transaction_label(highest + position)
        for position, index in enumerate(unlabelled, start=1)
    }
    return [
        replace(payment, reference=labels[index]) if index in labels else payment
        for index, payment in enumerate(payments)
    ]


# === Normalization and dedup ===


def normalize_sources(
    sources: LedgerSources,
    reserved_labels: Iterable[str] = (),
) -> list[LedgerRecord]:
    """Project raw store records onto ledger rows, skipping archived ones."""
    invoices = [
        Invoice.from_raw(raw) for raw in sources.invoices if isinstance(raw, Mapping)
    ]
    payments = [
        Payment.from_raw(raw) for raw in sources.payments if isinstance(raw, Mapping)
    ]
    pharmacy = [
        PharmacyTransaction.from_raw(raw)
        for raw in sources.pharmacy
        if isinstance(raw, Mapping)
    ]

    records = [
        invoice.to_ledger_record() for invoice in invoices if not invoice.archive.is_archived
    ]
    records.extend(
        payment.to_ledger_record()
        for payment in label_payments(payments, reserved_labels)
        if not payment.archive.is_archived
    )
    records.extend(sale.to_ledger_record() for sale in pharmacy)
    return records


def record_key(record: LedgerRecord) -> str:
    """Dedup key: display number, else id, else kind:date:amount:patient."""
    if record.number:
        return record.number
    if record.id:
        return record.id
    stamp = record.timestamp.isoformat() if record.timestamp else ""
    return f"{record.kind.value}:{stamp}:{quantize_money(record.amount)}:{record.patient_id}"


def merge_records(
    local_records: Iterable[LedgerRecord],
    remote_records: Iterable[LedgerRecord],
) -> list[LedgerRecord]:
    """Merge by key, first seen wins; local records are seen first."""
    merged: dict[str, LedgerRecord] = {}
    for record in chain(local_records, remote_records):
        merged.setdefault(record_key(record), record)
    return list(merged.values())


# === Patient linking ===


def extract_invoice_tokens(*texts: str | None) -> list[str]:
    """Invoice reference tokens found in free text, most specific first.

    ``INV``-prefixed codes containing a digit come before bare runs of six or
    more digits.
    """
    tokens: list[str] = []
    for text in texts:
        for match in _INVOICE_TOKEN_RE.finditer(text or ""):
            token = match.group(0)
            if any(ch.isdigit() for ch in token) and token not in tokens:
                tokens.append(token)
    for text in texts:
        for match in _DIGIT_RUN_RE.finditer(text or ""):
            if match.group(0) not in tokens:
                tokens.append(match.group(0))
    return tokens


def _match_by_token(
    record: LedgerRecord, invoices: Sequence[LedgerRecord]
) -> LedgerRecord | None:
    tokens = extract_invoice_tokens(record.linked_invoice, record.description, record.number)
    for token in tokens:
        wanted = token.lower()
        candidates = [inv for inv in invoices if wanted in inv.number.lower()]
        if not candidates:
            continue
        for invoice in candidates:
            if invoice.number.lower() == wanted:
                return invoice
        return candidates[0]
    return None


def _match_by_proximity(
    record: LedgerRecord,
    invoices: Sequence[LedgerRecord],
    window: timedelta,
    epsilon: Decimal,
) -> LedgerRecord | None:
    if record.timestamp is None or record.amount == 0:
        return None
    best: LedgerRecord | None = None
    best_gap: timedelta | None = None
    for invoice in invoices:
        if invoice.timestamp is None:
            continue
        if abs(invoice.amount - record.amount) >= epsilon:
            continue
        gap = abs(invoice.timestamp - record.timestamp)
        if gap > window:
            continue
        if best_gap is None or gap < best_gap:
            best, best_gap = invoice, gap
    return best


def link_patient(
    record: LedgerRecord,
    invoices: Sequence[LedgerRecord],
    patients: Mapping[str, str] | None = None,
    *,
    window: timedelta = DEFAULT_MATCH_WINDOW,
    epsilon: Decimal = DEFAULT_AMOUNT_EPSILON,
) -> LedgerRecord:
    """Return ``record`` with its patient filled in where it can be resolved.

    Order: the record's own name; the patient directory by id; for payments
    and pharmacy sales, an invoice found by reference token, then an invoice
    with the same amount within ``window``. Otherwise the record is returned
    unchanged.
    """
    if record.patient_name:
        return record
    directory = patients or {}
    if record.patient_id and directory.get(record.patient_id):
        return replace(record, patient_name=directory[record.patient_id])
    if record.kind is RecordKind.INVOICE:
        return record

    invoices = [inv for inv in invoices if inv.kind is RecordKind.INVOICE]
    invoice = _match_by_token(record, invoices) or _match_by_proximity(
        record, invoices, window, epsilon
    )
    if invoice is None:
        return record

    name = invoice.patient_name or directory.get(invoice.patient_id, "")
    if not name:
        return record
    return replace(
        record,
        patient_name=name,
        patient_id=record.patient_id or invoice.patient_id,
        linked_invoice=record.linked_invoice or invoice.number or None,
    )


def resolve_patient_display_name(
    record: LedgerRecord,
    known_patients: Mapping[str, str] | None = None,
    invoices: Sequence[LedgerRecord] = (),
    *,
    window: timedelta = DEFAULT_MATCH_WINDOW,
    epsilon: Decimal = DEFAULT_AMOUNT_EPSILON,
) -> str:
    """Name to show for a ledger row; ``"Unknown"`` when unresolved."""
    linked = link_patient(record, invoices, known_patients, window=window, epsilon=epsilon)
    return linked.patient_name or UNKNOWN_PATIENT


def patient_directory(raw_patients: Iterable[Mapping[str, Any]]) -> dict[str, str]:
    """Map patient ids to names from raw patient store records."""
    directory: dict[str, str] = {}
    for raw in raw_patients:
        if not isinstance(raw, Mapping):
            continue
        name = coerce_str(first_present(raw, ("name", "fullName", "patientName")))
        if not name:
            continue
        for key in ("_id", "id", "patientId"):
            patient_id = coerce_str(raw.get(key))
            if patient_id:
                directory.setdefault(patient_id, name)
    return directory


# === Reconciliation ===


def sort_ledger(records: Iterable[LedgerRecord]) -> list[LedgerRecord]:
    """Newest first; undated rows last; ties keep their merge order."""
    return sorted(records, key=lambda record: record.timestamp or _EARLIEST, reverse=True)


def reconcile_ledger(
    sources: LedgerSources,
    local_records: Iterable[LedgerRecord] = (),
    *,
    suppressed: bool = False,
    patients: Mapping[str, str] | None = None,
    match_window: timedelta = DEFAULT_MATCH_WINDOW,
    amount_epsilon: Decimal = DEFAULT_AMOUNT_EPSILON,
) -> list[LedgerRecord]:
    """Build the unified ledger from fetched sources and local records.

    Deterministic for identical inputs and never mutates them. When
    ``suppressed`` is set the remote sources are ignored entirely, so a view
    the user cleared locally is not repopulated.
    """
    local = list(local_records)
    remote: list[LedgerRecord] = []
    if not suppressed:
        remote = normalize_sources(sources, reserved_labels=[r.number for r in local])

    merged = merge_records(local, remote)
    invoices = [record for record in merged if record.kind is RecordKind.INVOICE]
    linked = [
        link_patient(record, invoices, patients, window=match_window, epsilon=amount_epsilon)
        for record in merged
    ]
    return sort_ledger(linked)


class LedgerReconciler:
    """Fetches the three ledger sources concurrently and reconciles them."""

    SOURCES = ("invoices", "payments", "pharmacy")

    def __init__(
        self,
        client: BillingAPIClient,
        suppression: SuppressionFlag | None = None,
        *,
        source_timeout: float | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
    ):
        settings = get_settings()
        self._client = client
        self._suppression = suppression
        self._source_timeout = (
            source_timeout if source_timeout is not None else settings.ledger_source_timeout
        )
        self._page_size = page_size or settings.ledger_page_size
        self._max_pages = max_pages or settings.ledger_max_pages
        self._match_window = timedelta(hours=settings.ledger_match_window_hours)
        self._amount_epsilon = Decimal(str(settings.ledger_amount_epsilon))
        self._logger = logger.bind(component="ledger_reconciler")

    async def _fetch_pages(
        self,
        fetch: Callable[..., Awaitable[list[dict[str, Any]]]],
        **kwargs: Any,
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for page in range(self._max_pages):
            batch = await fetch(offset=page * self._page_size, limit=self._page_size, **kwargs)
            items.extend(batch)
            if len(batch) < self._page_size:
                break
        else:
            self._logger.warning("ledger_page_cap_reached", max_pages=self._max_pages)
        return items

    async def _fetch_source(
        self,
        name: str,
        fetch: Callable[..., Awaitable[list[dict[str, Any]]]],
        **kwargs: Any,
    ) -> list[dict[str, Any]]:
        try:
            return await asyncio.wait_for(
                self._fetch_pages(fetch, **kwargs), timeout=self._source_timeout
            )
        except TimeoutError as e:
            raise UpstreamFetchError(name, f"timed out after {self._source_timeout}s") from e
        except Exception as e:
            raise UpstreamFetchError(name, str(e)) from e

    async def fetch_sources(self, patient_id: str | None = None) -> LedgerSources:
        """Fetch all sources concurrently; a failed source contributes nothing."""
        results = await asyncio.gather(
            self._fetch_source("invoices", self._client.list_invoices, archived=False),
            self._fetch_source("payments", self._client.list_payments, archived=False),
            self._fetch_source(
                "pharmacy", self._client.list_pharmacy_transactions, patient_id=patient_id
            ),
            return_exceptions=True,
        )

        collected: dict[str, list[dict[str, Any]]] = {}
        failures: dict[str, str] = {}
        for name, result in zip(self.SOURCES, results):
            if isinstance(result, Exception):
                self._logger.warning("ledger_source_failed", source=name, error=str(result))
                failures[name] = str(result)
                collected[name] = []
            elif isinstance(result, BaseException):
                raise result
            else:
                collected[name] = result

        return LedgerSources(
            invoices=collected["invoices"],
            payments=collected["payments"],
            pharmacy=collected["pharmacy"],
            failures=failures,
        )

    async def refresh(
        self,
        local_records: Iterable[LedgerRecord] = (),
        patients: Mapping[str, str] | None = None,
    ) -> LedgerSnapshot:
        """Run one reconciliation pass, honouring the suppression flag."""
        suppressed = self._suppression.is_set() if self._suppression else False
        if suppressed:
            self._logger.info("ledger_remote_merge_suppressed")
            sources = LedgerSources()
        else:
            sources = await self.fetch_sources()

        records = reconcile_ledger(
            sources,
            local_records,
            suppressed=suppressed,
            patients=patients,
            match_window=self._match_window,
            amount_epsilon=self._amount_epsilon,
        )
        self._logger.info(
            "ledger_reconciled",
            records=len(records),
            failed_sources=sorted(sources.failures),
            suppressed=suppressed,
        )
        return LedgerSnapshot(
            records=tuple(records),
            warnings=tuple(sources.failures.values()),
            suppressed=suppressed,
        )

    def clear_local_view(self) -> None:
        """Record a destructive local clear so refreshes stop re-merging remote data."""
        if self._suppression is None:
            return
        self._suppression.set()
        self._logger.info("ledger_local_view_cleared")

