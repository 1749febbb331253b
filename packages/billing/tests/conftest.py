"""Pytest configuration and fixtures."""

import os
from unittest.mock import AsyncMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("BILLING_API_URL", "http://billing.test/api")
os.environ.setdefault("BILLING_API_TOKEN", "test-token")


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.request = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def state_path(tmp_path):
    """Path for a throwaway suppression-flag file."""
    return tmp_path / "billing_state.json"


@pytest.fixture
def mock_invoice_response():
    """Mock invoice store record."""
    return {
        "_id": "665f1c2a9b1e4a0012345678",
        "invoiceNumber": "INV-2025-007",
        "patientId": "P-0042",
        "patientName": "Maria Santos",
        "items": [
            {
                "description": "Consultation",
                "category": "consultation",
                "quantity": 1,
                "rate": 3000,
            },
            {
                "description": "Paracetamol 500mg",
                "category": "pharmacy",
                "quantity": 10,
                "rate": 15,
            },
        ],
        "subtotal": 3150,
        "discount": 630,
        "tax": 14.4,
        "total": 2534.4,
        "status": "unpaid",
        "issuedDate": "2025-03-10T09:00:00Z",
        "isArchived": False,
    }


@pytest.fixture
def mock_payment_response():
    """Mock payment store record with no patient attached."""
    return {
        "_id": "665f1c2a9b1e4a0087654321",
        "invoiceNumber": "",
        "amount": "2534.40",
        "method": "cash",
        "status": "completed",
        "paymentDate": "2025-03-10T15:30:00Z",
        "notes": "Settlement for INV-2025-007",
    }


@pytest.fixture
def mock_pharmacy_response():
    """Mock pharmacy transaction record."""
    return {
        "_id": "ph-001",
        "receiptNumber": "RX-1001",
        "customerName": "Jose Rizal",
        "totalAmount": 448,
        "tax": 48,
        "date": "2025-03-09T11:00:00Z",
    }
