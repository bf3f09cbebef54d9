"""
Service wiring.

One set of collaborators per process, built lazily on first use. Routers
reach them through the FastAPI dependencies below, which tests override via
``app.dependency_overrides`` or by calling reset_services() with fakes.
"""

from dataclasses import dataclass
from typing import Optional

from entitlements.services.action_gateway import ActionGateway
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.services.quota_engine import QuotaEngine
from entitlements.services.state_machine import SubscriptionStateMachine
from entitlements.services.stripe_client import StripeBillingClient
from entitlements.services.webhook_ledger import WebhookLedger
from entitlements.services.webhook_reconciler import WebhookReconciler
from entitlements.utils.time import Clock, utc_now


@dataclass
class Services:
    store: EntitlementStore
    quota: QuotaEngine
    state_machine: SubscriptionStateMachine
    gateway: ActionGateway
    ledger: WebhookLedger
    reconciler: WebhookReconciler


def build_services(
    billing: Optional[StripeBillingClient] = None,
    clock: Clock = utc_now,
    webhook_secret: Optional[str] = None,
) -> Services:
    store = EntitlementStore()
    billing = billing or StripeBillingClient()
    quota = QuotaEngine(store, clock=clock)
    state_machine = SubscriptionStateMachine(store, clock=clock)
    ledger = WebhookLedger()
    return Services(
        store=store,
        quota=quota,
        state_machine=state_machine,
        gateway=ActionGateway(store, state_machine, quota, billing, clock=clock),
        ledger=ledger,
        reconciler=WebhookReconciler(store, state_machine, billing, ledger, webhook_secret=webhook_secret),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def reset_services(services: Optional[Services] = None) -> None:
    global _services
    _services = services


# FastAPI dependencies
def get_quota_engine() -> QuotaEngine:
    return get_services().quota


def get_action_gateway() -> ActionGateway:
    return get_services().gateway


def get_webhook_reconciler() -> WebhookReconciler:
    return get_services().reconciler
