"""
Webhook Reconciler - Stripe events → subscription transitions
=============================================================

PURPOSE:
    Asynchronous producer of subscription transitions. For each delivery:
    1. **Authenticity** - stripe.WebhookSignature checks Stripe-Signature over
       the raw body; failure is the only case answered with a non-2xx (400).
    2. **Dedup** - event ids already in the ledger are acknowledged as
       ``duplicate`` without side effects.
    3. **Dispatch** - a closed set of event kinds, each ending in at most one
       apply_transition() call with marker (event.created, event.id).
    4. **Acknowledge** - once the signature is valid the delivery is always
       acknowledged; stale/invalid transitions, unknown customers and
       processing errors are logged and recorded as monitoring signals
       instead of being bounced back to Stripe for retry.

EVENTS:
    customer.subscription.created|updated  → mapped provider status
                                             (cancel_at_period_end → CANCELLED)
    customer.subscription.deleted          → EXPIRED
    invoice.payment_succeeded              → ACTIVE, period end from Stripe
    invoice.payment_failed                 → signal ENT-WHK-004 only
    anything else                          → ignored

    Events for a subscription other than the one on file are ``superseded``
    unless they make it current (ACTIVE/TRIALING).
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import stripe

from entitlements.config import settings
from entitlements.core.issue_tracker import IssueTracker, issue_tracker
from entitlements.models.entitlement import EventMarker, SubscriptionStatus
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.services.state_machine import (
    ExternalIds,
    SubscriptionStateMachine,
    TransitionOutcome,
)
from entitlements.services.stripe_client import (
    ProviderSubscription,
    StripeBillingClient,
    field_of,
    id_of,
    invoice_subscription_id,
)
from entitlements.services.webhook_ledger import WebhookLedger

logger = logging.getLogger(__name__)


class WebhookEventKind(str, Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, event_type: Optional[str]) -> "WebhookEventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    INVALID = "invalid"
    SUPERSEDED = "superseded"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    SIGNALLED = "signalled"
    UNKNOWN_CUSTOMER = "unknown_customer"
    MALFORMED = "malformed"
    ERROR = "error"
    BAD_SIGNATURE = "bad_signature"


_TRANSITION_OUTCOMES = {
    TransitionOutcome.APPLIED: WebhookOutcome.APPLIED,
    TransitionOutcome.STALE: WebhookOutcome.STALE,
    TransitionOutcome.INVALID: WebhookOutcome.INVALID,
    TransitionOutcome.SUPERSEDED: WebhookOutcome.SUPERSEDED,
}


@dataclass(frozen=True)
class WebhookResult:
    acknowledged: bool
    outcome: WebhookOutcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None


class MalformedEvent(ValueError):
    pass


class WebhookReconciler:
    """Verifies, deduplicates and applies Stripe webhook deliveries."""

    def __init__(
        self,
        store: EntitlementStore,
        state_machine: SubscriptionStateMachine,
        billing: StripeBillingClient,
        ledger: WebhookLedger,
        tracker: Optional[IssueTracker] = None,
        webhook_secret: Optional[str] = None,
        tolerance_s: Optional[int] = None,
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._billing = billing
        self._ledger = ledger
        self._tracker = tracker or issue_tracker
        self._secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self._tolerance_s = tolerance_s if tolerance_s is not None else settings.stripe_webhook_tolerance_s

        self._handlers: Dict[WebhookEventKind, Callable[[Dict[str, Any], EventMarker], Tuple[WebhookOutcome, Optional[str]]]] = {
            WebhookEventKind.SUBSCRIPTION_CREATED: self._on_subscription_changed,
            WebhookEventKind.SUBSCRIPTION_UPDATED: self._on_subscription_changed,
            WebhookEventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            WebhookEventKind.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            WebhookEventKind.PAYMENT_FAILED: self._on_payment_failed,
        }

    def handle(self, payload: bytes, signature_header: Optional[str]) -> WebhookResult:
        reason = self._signature_rejection(payload, signature_header)
        if reason is not None:
            logger.warning("Rejected Stripe webhook: %s", reason)
            self._tracker.record("ENT-WHK-001", context={"reason": reason})
            return WebhookResult(acknowledged=False, outcome=WebhookOutcome.BAD_SIGNATURE)

        try:
            event = _parse_event(payload)
        except MalformedEvent as exc:
            logger.error("Malformed Stripe webhook payload: %s", exc)
            self._tracker.record("ENT-WHK-002", context={"reason": str(exc)})
            return WebhookResult(acknowledged=True, outcome=WebhookOutcome.MALFORMED)

        event_id = event["id"]
        event_type = event["type"]

        if self._ledger.is_processed(event_id):
            logger.info("Duplicate Stripe webhook %s (%s) acknowledged", event_id, event_type)
            return WebhookResult(True, WebhookOutcome.DUPLICATE, event_id, event_type)

        kind = WebhookEventKind.parse(event_type)
        handler = self._handlers.get(kind)
        if handler is None:
            logger.debug("Ignoring Stripe webhook %s of type %s", event_id, event_type)
            self._ledger.record(event_id, event_type, WebhookOutcome.IGNORED.value)
            return WebhookResult(True, WebhookOutcome.IGNORED, event_id, event_type)

        marker = EventMarker.from_epoch_seconds(event["created"], event_id)
        try:
            outcome, user_id = handler(event["data"]["object"], marker)
        except Exception as exc:
            # Not recorded in the ledger so the event can be re-sent once fixed
            logger.exception("Error processing Stripe webhook %s (%s)", event_id, event_type)
            self._tracker.record(
                "ENT-WHK-003",
                context={"event_id": event_id, "event_type": event_type, "error": str(exc)},
            )
            return WebhookResult(True, WebhookOutcome.ERROR, event_id, event_type)

        self._ledger.record(event_id, event_type, outcome.value, user_id)
        logger.info("Stripe webhook %s (%s) -> %s", event_id, event_type, outcome.value)
        return WebhookResult(True, outcome, event_id, event_type)

    def _signature_rejection(self, payload: bytes, header: Optional[str]) -> Optional[str]:
        """None if the delivery is authentic, otherwise why it was rejected."""
        if not self._secret:
            return "webhook secret not configured"
        if not header:
            return "missing Stripe-Signature header"
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), header, self._secret, tolerance=self._tolerance_s,
            )
        except UnicodeDecodeError:
            return "payload is not UTF-8"
        except stripe.SignatureVerificationError as exc:
            return str(exc)
        return None

    # ------------------------------------------------------------------
    # Handlers: each returns (outcome, resolved user id)
    # ------------------------------------------------------------------

    def _on_subscription_changed(self, obj: Dict[str, Any], marker: EventMarker):
        subscription = ProviderSubscription.from_payload(obj)
        user_id = self._resolve_user(subscription.customer_id, subscription.user_id, marker)
        if user_id is None:
            return WebhookOutcome.UNKNOWN_CUSTOMER, None

        result = self._state_machine.apply_transition(
            user_id,
            subscription.status,
            marker,
            expires_at=subscription.current_period_end,
            external_ids=ExternalIds(customer_id=subscription.customer_id, subscription_id=subscription.id),
            cancel_at_period_end=subscription.cancel_at_period_end,
        )
        return _TRANSITION_OUTCOMES[result.outcome], user_id

    def _on_subscription_deleted(self, obj: Dict[str, Any], marker: EventMarker):
        subscription = ProviderSubscription.from_payload(obj)
        user_id = self._resolve_user(subscription.customer_id, subscription.user_id, marker)
        if user_id is None:
            return WebhookOutcome.UNKNOWN_CUSTOMER, None

        result = self._state_machine.apply_transition(
            user_id,
            SubscriptionStatus.EXPIRED,
            marker,
            external_ids=ExternalIds(customer_id=subscription.customer_id, subscription_id=subscription.id),
        )
        return _TRANSITION_OUTCOMES[result.outcome], user_id

    def _on_payment_succeeded(self, invoice: Dict[str, Any], marker: EventMarker):
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.debug("Invoice %s has no subscription; ignoring", field_of(invoice, "id"))
            return WebhookOutcome.IGNORED, None

        customer_id = id_of(field_of(invoice, "customer"))
        user_id = self._resolve_user(customer_id, _invoice_user_hint(invoice), marker)
        if user_id is None:
            return WebhookOutcome.UNKNOWN_CUSTOMER, None

        subscription = self._billing.retrieve_subscription(subscription_id)
        if subscription is None:
            logger.warning(
                "Invoice %s paid for subscription %s which Stripe no longer has",
                field_of(invoice, "id"), subscription_id,
            )
            return WebhookOutcome.IGNORED, user_id

        result = self._state_machine.apply_transition(
            user_id,
            SubscriptionStatus.ACTIVE,
            marker,
            expires_at=subscription.current_period_end,
            external_ids=ExternalIds(customer_id=customer_id, subscription_id=subscription_id),
        )
        return _TRANSITION_OUTCOMES[result.outcome], user_id

    def _on_payment_failed(self, invoice: Dict[str, Any], marker: EventMarker):
        customer_id = id_of(field_of(invoice, "customer"))
        entitlement = self._store.find_by_customer_id(customer_id) if customer_id else None
        user_id = entitlement.user_id if entitlement else None
        logger.warning(
            "Invoice payment failed for customer %s (user %s, invoice %s, attempt %s)",
            customer_id, user_id, field_of(invoice, "id"), field_of(invoice, "attempt_count"),
        )
        self._tracker.record(
            "ENT-WHK-004",
            context={"customer_id": customer_id, "user_id": user_id, "event_id": marker.event_id},
        )
        return WebhookOutcome.SIGNALLED, user_id

    def _resolve_user(
        self,
        customer_id: Optional[str],
        user_hint: Optional[str],
        marker: EventMarker,
    ) -> Optional[str]:
        """Customer id lookup first, then metadata.user_id."""
        if customer_id:
            entitlement = self._store.find_by_customer_id(customer_id)
            if entitlement is not None:
                return entitlement.user_id
        if user_hint:
            return self._store.get_or_create(user_hint).user_id

        logger.warning("Stripe webhook %s references unknown customer %s", marker.event_id, customer_id)
        self._tracker.record("ENT-WHK-005", context={"customer_id": customer_id, "event_id": marker.event_id})
        return None


def _invoice_user_hint(invoice: Dict[str, Any]) -> Optional[str]:
    details = field_of(field_of(invoice, "parent"), "subscription_details")
    for metadata in (field_of(details, "metadata"), field_of(invoice, "metadata")):
        hint = field_of(metadata, "user_id") or field_of(metadata, "userId")
        if hint:
            return hint
    return None


def _parse_event(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEvent(f"invalid JSON: {exc}") from exc
    if not isinstance(event, dict):
        raise MalformedEvent("event is not an object")
    for key in ("id", "type", "created"):
        if key not in event:
            raise MalformedEvent(f"missing {key!r}")
    if not isinstance(event["created"], int):
        raise MalformedEvent("'created' is not an integer timestamp")
    obj = field_of(event.get("data"), "object")
    if not isinstance(obj, dict):
        raise MalformedEvent("missing data.object")
    return event
