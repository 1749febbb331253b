"""Async client for the hospital billing API (invoice, payment, patient,
pharmacy and archive stores)."""

import asyncio
from typing import Any

import httpx
import structlog

from medicare_billing.config import get_settings
from medicare_billing.errors import (
    AuthorizationError,
    BillingError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

logger = structlog.get_logger(__name__)


class BillingAPIError(BillingError):
    """Unexpected error response from the billing API."""

    pass


_STATUS_ERRORS: dict[int, type[BillingError]] = {
    400: ValidationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
}

# Archive routes are keyed by the plural collection name.
COLLECTION_PATHS = {
    "user": "users",
    "patient": "patients",
    "invoice": "invoices",
    "payment": "payments",
}


class BillingAPIClient:
    """Async client for the billing API with retry on transport errors."""

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.billing_api_url).rstrip("/")
        if api_token is None and settings.billing_api_token is not None:
            api_token = settings.billing_api_token.get_secret_value()
        self._api_token = api_token
        self._timeout = timeout if timeout is not None else settings.billing_timeout
        self._max_retries = (
            max_retries if max_retries is not None else settings.billing_max_retries
        )
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BillingAPIClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self, role: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        if role:
            headers["x-user-role"] = role
        return headers

    # === Generic Request Methods ===

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        role: str | None = None,
        retry_count: int = 0,
    ) -> dict[str, Any] | list[dict[str, Any]]:
        """Make an API request, retrying transport failures with backoff."""
        client = await self._get_client()

        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json,
                headers=self._get_headers(role),
            )
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                logger.warning(
                    "billing_request_retry",
                    method=method,
                    path=path,
                    attempt=retry_count + 1,
                    max_retries=self._max_retries,
                    error=str(e),
                )
                await asyncio.sleep(2**retry_count)
                return await self._request(method, path, params, json, role, retry_count + 1)
            logger.error(
                "billing_request_failed", method=method, path=path, attempts=retry_count + 1
            )
            raise BillingAPIError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            try:
                error_detail = response.json() if response.content else {}
            except ValueError:
                error_detail = {"raw": response.text[:500] if response.text else "empty response"}
            message = f"API error: {response.status_code}"
            if isinstance(error_detail, dict) and error_detail.get("message"):
                message = str(error_detail["message"])
            error_cls = _STATUS_ERRORS.get(response.status_code, BillingAPIError)
            raise error_cls(message, status_code=response.status_code, details=error_detail)

        return response.json() if response.content else {}

    async def get(
        self, path: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | list[dict[str, Any]]:
        return await self._request("GET", path, params=params)

    async def post(
        self,
        path: str,
        json: dict[str, Any] | None = None,
        role: str | None = None,
    ) -> dict[str, Any] | list[dict[str, Any]]:
        return await self._request("POST", path, json=json, role=role)

    async def patch(
        self, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any] | list[dict[str, Any]]:
        return await self._request("PATCH", path, json=json)

    async def delete(
        self, path: str, role: str | None = None
    ) -> dict[str, Any] | list[dict[str, Any]]:
        return await self._request("DELETE", path, role=role)

    @staticmethod
    def _clamp_limit(limit: int) -> int:
        return min(max(limit, 1), 500)

    @staticmethod
    def _extract_items(result: Any) -> list[dict[str, Any]]:
        """Return list of items from a bare list, paged or enveloped response."""
        if isinstance(result, list):
            return result
        if isinstance(result, dict):
            for key in ("data", "items"):
                items = result.get(key)
                if isinstance(items, list):
                    return items
        return []

    @staticmethod
    def _extract_entity(result: Any) -> dict[str, Any]:
        """Return the entity from a bare or ``{success, data}`` response."""
        if not isinstance(result, dict):
            return {}
        data = result.get("data")
        if isinstance(data, dict):
            return data
        return result

    def _list_params(
        self, offset: int, limit: int, archived: bool | None = None
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"offset": offset, "limit": self._clamp_limit(limit)}
        if archived is not None:
            params["archived"] = str(archived).lower()
        return params

    # === Invoice Endpoints ===

    async def list_invoices(
        self, offset: int = 0, limit: int = 100, archived: bool | None = False
    ) -> list[dict[str, Any]]:
        result = await self.get("/invoices", params=self._list_params(offset, limit, archived))
        return self._extract_items(result)

    async def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        return self._extract_entity(await self.get(f"/invoices/{invoice_id}"))

    async def create_invoice(self, data: dict[str, Any]) -> dict[str, Any]:
        return self._extract_entity(await self.post("/invoices", json=data))

    async def update_invoice(self, invoice_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._extract_entity(await self.patch(f"/invoices/{invoice_id}", json=data))

    # === Payment Endpoints ===

    async def list_payments(
        self, offset: int = 0, limit: int = 100, archived: bool | None = False
    ) -> list[dict[str, Any]]:
        result = await self.get("/payments", params=self._list_params(offset, limit, archived))
        return self._extract_items(result)

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return self._extract_entity(await self.get(f"/payments/{payment_id}"))

    async def create_payment(self, data: dict[str, Any]) -> dict[str, Any]:
        return self._extract_entity(await self.post("/payments", json=data))

    async def update_payment(self, payment_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._extract_entity(await self.patch(f"/payments/{payment_id}", json=data))

    # === Pharmacy Endpoints ===

    async def list_pharmacy_transactions(
        self, offset: int = 0, limit: int = 100, patient_id: str | None = None
    ) -> list[dict[str, Any]]:
        params = self._list_params(offset, limit)
        if patient_id:
            params["patientId"] = patient_id
        result = await self.get("/pharmacy/transactions", params=params)
        return self._extract_items(result)

    # === Patient and User Endpoints ===

    async def list_patients(
        self, offset: int = 0, limit: int = 100, archived: bool | None = False
    ) -> list[dict[str, Any]]:
        result = await self.get("/patients", params=self._list_params(offset, limit, archived))
        return self._extract_items(result)

    async def list_users(
        self, offset: int = 0, limit: int = 100, archived: bool | None = False
    ) -> list[dict[str, Any]]:
        result = await self.get("/users", params=self._list_params(offset, limit, archived))
        return self._extract_items(result)

    async def get_entity(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        collection = COLLECTION_PATHS[entity_type]
        return self._extract_entity(await self.get(f"/{collection}/{entity_id}"))

    async def list_entities(
        self,
        entity_type: str,
        archived: bool | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        collection = COLLECTION_PATHS[entity_type]
        result = await self.get(
            f"/{collection}", params=self._list_params(offset, limit, archived)
        )
        return self._extract_items(result)

    # === Archive Endpoints ===

    async def archive_entity(
        self,
        entity_type: str,
        entity_id: str,
        archived_by: str | None = None,
        role: str | None = None,
    ) -> dict[str, Any]:
        collection = COLLECTION_PATHS[entity_type]
        result = await self.post(
            f"/archive/{collection}/{entity_id}/archive",
            json={"archivedBy": archived_by or "system", "requesterRole": role or ""},
            role=role,
        )
        return self._extract_entity(result)

    async def restore_entity(
        self, entity_type: str, entity_id: str, role: str | None = None
    ) -> dict[str, Any]:
        collection = COLLECTION_PATHS[entity_type]
        result = await self.post(
            f"/archive/{collection}/{entity_id}/restore",
            json={"requesterRole": role or ""},
            role=role,
        )
        return self._extract_entity(result)

    async def delete_archived_entity(
        self, entity_type: str, entity_id: str, role: str | None = None
    ) -> None:
        collection = COLLECTION_PATHS[entity_type]
        await self.delete(f"/archive/{collection}/{entity_id}/permanent", role=role)
