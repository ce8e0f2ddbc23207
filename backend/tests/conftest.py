"""
Shared fixtures: in-memory store, recording mail sender, tenant context
"""
import asyncio
import os
from datetime import date
from decimal import Decimal

import pytest

# server.py builds its default app from these at import time
os.environ.setdefault('MONGO_URL', 'mongodb://localhost:27017')
os.environ.setdefault('DB_NAME', 'procurement_test')
os.environ.setdefault('EMAIL_DEV_MODE', 'true')

from procurement_core.budget_ledger import BudgetLedger
from procurement_core.document_store import InMemoryDocumentStore
from procurement_core.models import OrderDraft, OrderLineItem, SupplierRef, TenantContext
from procurement_core.notifications import NotificationResult, NotificationSender, SupplierNotifier
from procurement_core.order_lifecycle import OrderLifecycleEngine


class RecordingSender(NotificationSender):
    """Captures every send call. Can be told to fail, reject or hang."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.reject_message = None
        self.delay = 0

    async def send(self, to, subject, body, attachment=None):
        self.calls.append({"to": to, "subject": subject, "body": body, "attachment": attachment})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if self.reject_message is not None:
            return NotificationResult(success=False, message=self.reject_message)
        return NotificationResult(success=True, message="sent", provider_id=f"msg-{len(self.calls)}")


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def ctx():
    return TenantContext(tenant_id="tenant-a", user_id="user-1", business_name="Acme Manufacturing")


@pytest.fixture
def other_ctx():
    return TenantContext(tenant_id="tenant-b", user_id="user-9")


@pytest.fixture
def engine(store, sender):
    return OrderLifecycleEngine(store, SupplierNotifier(sender, timeout_seconds=0.5))


@pytest.fixture
def ledger(store):
    return BudgetLedger(store, retry_delay_ms=1)


@pytest.fixture
def draft():
    """Valid order: 3 x 10.00 + 1 x 25.00, tax 5, shipping 10 -> total 70.00"""
    return OrderDraft(
        supplier=SupplierRef(id="sup-1", name="Bolt & Nut Co", email="orders@boltnut.com"),
        order_date=date(2026, 10, 1),
        expected_delivery_date=date(2026, 10, 20),
        delivery_address="12 Harbour Road, Dock 4",
        items=[
            OrderLineItem(product_id="p-1", name="Hex bolt M8", quantity=3, unit_price=Decimal("10.00")),
            OrderLineItem(product_id="p-2", product_name="Washer pack", quantity=1, unit_price=Decimal("25.00")),
        ],
        tax=Decimal("5.00"),
        shipping=Decimal("10.00"),
        budget_category="Raw Materials",
        notes="Deliver before noon",
    )
