"""HTTP clients for the billing stores."""

from medicare_billing.clients.billing_api import BillingAPIClient, BillingAPIError

__all__ = ["BillingAPIClient", "BillingAPIError"]
