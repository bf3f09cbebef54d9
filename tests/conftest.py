"""
Pytest configuration for entitlement engine tests.
Points the database at a temp SQLite file and disables gateway auth.
"""

import os
import tempfile

# Must be set before any entitlements imports (settings/engine read them once)
# Auth disable requires debug=True AND ENVIRONMENT=development
os.environ["ENTITLEMENTS_AUTH_ENABLED"] = "false"
os.environ["ENTITLEMENTS_DEBUG"] = "true"
os.environ["ENVIRONMENT"] = "development"

_test_data_dir = tempfile.mkdtemp(prefix="entitlements_test_")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")
os.environ.setdefault("ENTITLEMENTS_LOG_DIR", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("ENTITLEMENTS_STRIPE_SECRET_KEY", "sk_test_entitlements")
os.environ.setdefault("ENTITLEMENTS_STRIPE_PRICE_ID", "price_test_premium")
os.environ.setdefault("ENTITLEMENTS_STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

import hashlib
import hmac
import json
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from sqlalchemy import delete

from entitlements.core.database import create_tables, get_engine
from entitlements.core.errors import EntitlementError
from entitlements.core.errors.registry import error_registry
from entitlements.core.issue_tracker import IssueTracker, issue_tracker
from entitlements.models.entitlement import (
    PhotoStorage,
    ProcessedWebhookEvent,
    UsageRecord,
    UserEntitlement,
)
from entitlements.services import container
from entitlements.services.action_gateway import ActionGateway
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.services.quota_engine import QuotaEngine
from entitlements.services.state_machine import SubscriptionStateMachine
from entitlements.services.stripe_client import ProviderSubscription
from entitlements.services.webhook_ledger import WebhookLedger
from entitlements.services.webhook_reconciler import WebhookReconciler

create_tables(get_engine())

# Load error registry so EntitlementError returns correct HTTP status codes
error_registry.load()

WEBHOOK_SECRET = os.environ["ENTITLEMENTS_STRIPE_WEBHOOK_SECRET"]
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

def stripe_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """v1 signature as Stripe computes it: HMAC-SHA256 over "<t>.<body>"."""
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()



class SimClock:
    """Injectable clock; advance() moves simulated time forward."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeBilling:
    """In-memory stand-in for StripeBillingClient."""

    def __init__(self, clock: SimClock):
        self.configured = True
        self.clock = clock
        self.next_status = "active"
        self.fail_on: Optional[str] = None
        self.customers: Dict[str, str] = {}
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.calls: List[tuple] = []
        self._seq = 0

    def _call(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if self.fail_on == name:
            raise EntitlementError("ENT-PAY-001", detail=f"simulated {name} failure")

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        self._call("create_customer", user_id)
        return self.customers.setdefault(user_id, f"cus_{user_id}")

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        self._call("attach_payment_method", payment_method_id, customer_id)

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        self._call("set_default_payment_method", customer_id, payment_method_id)

    def create_subscription(self, customer_id: str, price_id: str, user_id: str) -> ProviderSubscription:
        self._call("create_subscription", customer_id, price_id)
        self._seq += 1
        now = self.clock()
        sub = ProviderSubscription(
            id=f"sub_{self._seq}",
            status=self.next_status,
            customer_id=customer_id,
            created=int(now.timestamp()),
            current_period_end=now + timedelta(days=30),
            client_secret="pi_secret_123" if self.next_status == "incomplete" else None,
            user_id=user_id,
        )
        self.subscriptions[sub.id] = sub
        return sub

    def cancel_at_period_end(self, subscription_id: str) -> ProviderSubscription:
        self._call("cancel_at_period_end", subscription_id)
        sub = self.subscriptions[subscription_id]
        sub = replace(sub, cancel_at=sub.current_period_end, cancel_at_period_end=True)
        self.subscriptions[subscription_id] = sub
        return sub

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        self._call("retrieve_subscription", subscription_id)
        return self.subscriptions.get(subscription_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_state():
    """Empty every table and in-memory singleton between tests."""
    with get_engine().begin() as conn:
        for model in (UserEntitlement, UsageRecord, PhotoStorage, ProcessedWebhookEvent):
            conn.execute(delete(model))
    issue_tracker.clear()
    container.reset_services(None)
    yield
    container.reset_services(None)


@pytest.fixture
def clock():
    return SimClock()


@pytest.fixture
def tracker(tmp_path):
    return IssueTracker(persist_path=str(tmp_path / "issues.json"))


@pytest.fixture
def store():
    return EntitlementStore()


@pytest.fixture
def quota(store, clock):
    return QuotaEngine(store, clock=clock)


@pytest.fixture
def state_machine(store, clock, tracker):
    return SubscriptionStateMachine(store, clock=clock, tracker=tracker)


@pytest.fixture
def billing(clock):
    return FakeBilling(clock)


@pytest.fixture
def gateway(store, state_machine, quota, billing, clock):
    return ActionGateway(store, state_machine, quota, billing, clock=clock)


@pytest.fixture
def ledger():
    return WebhookLedger()


@pytest.fixture
def reconciler(store, state_machine, billing, ledger, tracker):
    return WebhookReconciler(
        store, state_machine, billing, ledger,
        tracker=tracker, webhook_secret=WEBHOOK_SECRET, tolerance_s=300,
    )


@pytest.fixture
def services(store, quota, state_machine, gateway, ledger, reconciler):
    """Install the test collaborators behind the FastAPI dependencies."""
    bundle = container.Services(
        store=store,
        quota=quota,
        state_machine=state_machine,
        gateway=gateway,
        ledger=ledger,
        reconciler=reconciler,
    )
    container.reset_services(bundle)
    return bundle


@pytest.fixture
def client(services):
    from fastapi.testclient import TestClient
    from entitlements.main import create_app

    # No context manager: lifespan (migrations, retention loop) stays off
    return TestClient(create_app())


@pytest.fixture
def stripe_event():
    """Build a Stripe event envelope."""
    counter = {"n": 0}

    def _make(event_type: str, obj: dict, created: int, event_id: Optional[str] = None) -> dict:
        counter["n"] += 1
        return {
            "id": event_id or f"evt_test_{counter['n']}",
            "object": "event",
            "type": event_type,
            "created": created,
            "data": {"object": obj},
        }

    return _make


@pytest.fixture
def sign():
    """Serialize an event and produce a valid Stripe-Signature header."""

    def _sign(event, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None):
        payload = event if isinstance(event, bytes) else json.dumps(event).encode()
        ts = int(time.time()) if timestamp is None else timestamp
        return payload, f"t={ts},v1={stripe_signature(payload, secret, ts)}"

    return _sign
