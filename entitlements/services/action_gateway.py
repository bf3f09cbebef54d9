"""
Action Gateway - client-initiated subscription changes
======================================================

PURPOSE:
    Synchronous producer of subscription transitions:
    1. **create()** - customer → payment method → subscription on Stripe,
       then an ACTIVE/TRIALING transition keyed on the subscription's own
       creation time. ``incomplete`` subscriptions (3-D Secure etc.) are not
       transitioned; the client secret is returned so the app can confirm
       and the webhook finishes the job.
    2. **cancel()** - cancel at period end on Stripe, then CANCELLED locally
       with the stored expiry kept (access continues until then).
    3. **get_status()** - effective tier, status and today's usage.

FAILURE POLICY:
    Stripe errors surface as ENT-PAY-001 (retryable) / ENT-PAY-002 and no
    transition is applied. Customer creation is idempotent per user, so a
    retried create never makes a second customer.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from entitlements.config import settings
from entitlements.core.errors import EntitlementError
from entitlements.models.entitlement import Entitlement, EventMarker, SubscriptionStatus, Tier
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.services.quota_engine import QuotaEngine, UsageSnapshot
from entitlements.services.state_machine import ExternalIds, SubscriptionStateMachine, TransitionResult
from entitlements.services.stripe_client import StripeBillingClient
from entitlements.utils.time import Clock, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

_BLOCKING_STATUSES = ("active", "trialing")


@dataclass(frozen=True)
class CreateResult:
    subscription_id: str
    status: str
    requires_confirmation: bool
    client_secret: Optional[str] = None
    transition: Optional[TransitionResult] = None


@dataclass(frozen=True)
class CancelResult:
    subscription_id: str
    cancel_at: Optional[datetime]
    transition: TransitionResult


@dataclass(frozen=True)
class EntitlementStatus:
    user_id: str
    tier: Tier
    status: SubscriptionStatus
    expires_at: Optional[datetime]
    external_customer_id: Optional[str]
    external_subscription_id: Optional[str]
    usage: UsageSnapshot


class ActionGateway:
    def __init__(
        self,
        store: EntitlementStore,
        state_machine: SubscriptionStateMachine,
        quota_engine: QuotaEngine,
        billing: StripeBillingClient,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._quota = quota_engine
        self._billing = billing
        self._clock = clock

    def _require_billing(self) -> None:
        if not self._billing.configured:
            raise EntitlementError("ENT-CFG-001", detail="Stripe secret key not configured")

    def create(
        self,
        user_id: str,
        payment_method_id: str,
        price_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> CreateResult:
        """Start a Premium subscription for *user_id*.

        Raises:
            EntitlementError: ENT-CFG-001/002 when billing is not configured,
                ENT-SUB-001 if a live subscription already exists,
                ENT-PAY-001/002 on Stripe failures.
        """
        self._require_billing()
        price = price_id or settings.stripe_price_id
        if not price:
            raise EntitlementError("ENT-CFG-002", detail="no price_id given and ENTITLEMENTS_STRIPE_PRICE_ID unset")

        entitlement = self._store.get_or_create(user_id)

        if entitlement.external_subscription_id:
            existing = self._billing.retrieve_subscription(entitlement.external_subscription_id)
            if existing is None:
                logger.info(
                    "Subscription %s on file for user %s no longer exists at Stripe; creating a new one",
                    entitlement.external_subscription_id, user_id,
                )
            elif existing.status in _BLOCKING_STATUSES:
                raise EntitlementError(
                    "ENT-SUB-001",
                    detail=f"user {user_id} already has subscription {existing.id} ({existing.status})",
                    context={"subscription_id": existing.id},
                )

        customer_id = entitlement.external_customer_id
        if not customer_id:
            created = self._billing.create_customer(user_id, email)
            # The stored id wins if another request cached one first
            customer_id = self._store.set_customer_id(user_id, created).external_customer_id

        self._billing.attach_payment_method(payment_method_id, customer_id)
        self._billing.set_default_payment_method(customer_id, payment_method_id)
        subscription = self._billing.create_subscription(customer_id, price, user_id)

        self._store.set_subscription_id(user_id, subscription.id)
        logger.info(
            "Created subscription %s for user %s (status=%s)", subscription.id, user_id, subscription.status,
        )

        if subscription.status == "incomplete":
            return CreateResult(
                subscription_id=subscription.id,
                status=subscription.status,
                requires_confirmation=True,
                client_secret=subscription.client_secret,
            )

        if subscription.created is not None:
            marker = EventMarker.from_epoch_seconds(subscription.created, f"create:{subscription.id}")
        else:
            marker = EventMarker.from_datetime(self._clock(), f"create:{subscription.id}")

        transition = self._state_machine.apply_transition(
            user_id,
            subscription.status,
            marker,
            expires_at=subscription.current_period_end,
            external_ids=ExternalIds(customer_id=customer_id, subscription_id=subscription.id),
        )
        return CreateResult(
            subscription_id=subscription.id,
            status=subscription.status,
            requires_confirmation=False,
            transition=transition,
        )

    def cancel(self, user_id: str) -> CancelResult:
        """Cancel at period end; the user keeps Premium until the stored expiry."""
        self._require_billing()
        entitlement = self._store.get_or_create(user_id)
        subscription_id = entitlement.external_subscription_id
        if not subscription_id:
            raise EntitlementError("ENT-SUB-002", detail=f"user {user_id} has no subscription on file")

        subscription = self._billing.cancel_at_period_end(subscription_id)

        now = self._clock()
        marker = EventMarker(
            occurred_at_ms=to_epoch_ms(now),
            event_id=f"cancel:{subscription_id}:{uuid.uuid4().hex}",
        )
        transition = self._state_machine.apply_transition(
            user_id, SubscriptionStatus.CANCELLED, marker, expires_at=None,
        )
        cancel_at = subscription.cancel_at or subscription.current_period_end or transition.entitlement.expires_at
        logger.info("Subscription %s for user %s set to cancel at %s", subscription_id, user_id, cancel_at)
        return CancelResult(subscription_id=subscription_id, cancel_at=cancel_at, transition=transition)

    def get_status(self, user_id: str) -> EntitlementStatus:
        entitlement: Entitlement = self._store.get_or_create(user_id)
        return EntitlementStatus(
            user_id=user_id,
            tier=entitlement.effective_tier(self._clock()),
            status=entitlement.status,
            expires_at=entitlement.expires_at,
            external_customer_id=entitlement.external_customer_id,
            external_subscription_id=entitlement.external_subscription_id,
            usage=self._quota.usage_snapshot(user_id),
        )
