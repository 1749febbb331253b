"""Medicare Billing - tax/discount calculation, ledger reconciliation and archiving
for the hospital billing system."""

__version__ = "0.1.0"

from medicare_billing.archive import (
    APIArchiveStore,
    ArchiveAction,
    ArchiveStateMachine,
    ArchiveStore,
    EntityType,
    InMemoryArchiveStore,
    TransitionResult,
)
from medicare_billing.billing_calc import (
    DiscountKind,
    DiscountSpec,
    InvoiceTotals,
    NamedDiscount,
    compute_discount,
    compute_invoice_totals,
    compute_subtotal,
    compute_tax,
    resolve_discount_code,
)
from medicare_billing.clients import BillingAPIClient, BillingAPIError
from medicare_billing.config import configure_logging, get_settings
from medicare_billing.errors import (
    AuthorizationError,
    BillingError,
    ConflictError,
    NotFoundError,
    UpstreamFetchError,
    ValidationError,
)
from medicare_billing.invoices import next_transaction_label, prepare_invoice, prepare_payment
from medicare_billing.ledger import (
    LedgerReconciler,
    LedgerSnapshot,
    LedgerSources,
    reconcile_ledger,
    resolve_patient_display_name,
)
from medicare_billing.models import (
    ArchiveInfo,
    ArchiveState,
    Invoice,
    LedgerRecord,
    LineItem,
    Payment,
    PharmacyTransaction,
    RecordKind,
)
from medicare_billing.state import SuppressionFlag

__all__ = [
    # Version
    "__version__",
    # Models
    "LineItem",
    "Invoice",
    "Payment",
    "PharmacyTransaction",
    "LedgerRecord",
    "RecordKind",
    "ArchiveInfo",
    "ArchiveState",
    # Calculator
    "DiscountKind",
    "DiscountSpec",
    "NamedDiscount",
    "InvoiceTotals",
    "compute_subtotal",
    "compute_discount",
    "compute_tax",
    "compute_invoice_totals",
    "resolve_discount_code",
    # Write path
    "prepare_invoice",
    "prepare_payment",
    "next_transaction_label",
    # Ledger
    "LedgerReconciler",
    "LedgerSources",
    "LedgerSnapshot",
    "reconcile_ledger",
    "resolve_patient_display_name",
    # Archive
    "ArchiveStateMachine",
    "ArchiveStore",
    "InMemoryArchiveStore",
    "APIArchiveStore",
    "ArchiveAction",
    "EntityType",
    "TransitionResult",
    "SuppressionFlag",
    # Clients
    "BillingAPIClient",
    "BillingAPIError",
    # Errors
    "BillingError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "UpstreamFetchError",
    # Config
    "get_settings",
    "configure_logging",
]
