"""
Subscription State Machine - single writer of tier/status
=========================================================

Both producers (the client-initiated action gateway and the Stripe webhook
reconciler) funnel every status change through apply_transition(). A
transition carries an EventMarker; it is applied only if the marker is newer
than the one stored with the entitlement, which makes redelivered or
out-of-order events harmless. A transition for a subscription that has since
been replaced on file is discarded as superseded, unless it is the one that
makes that subscription current again (ACTIVE or TRIALING).

Writes are an optimistic compare-and-swap on the stored marker. Losing the
race means another transition committed in between: re-read, re-judge
staleness and supersession, try again (bounded).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from entitlements.core.errors import EntitlementError
from entitlements.core.issue_tracker import IssueTracker, issue_tracker
from entitlements.models.entitlement import (
    Entitlement,
    EventMarker,
    SubscriptionStatus,
    derive_tier,
)
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 10

# Stripe subscription.status -> internal status
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "canceled": SubscriptionStatus.EXPIRED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "unpaid": SubscriptionStatus.EXPIRED,
    # Access is kept while Stripe retries the card; dunning ends in canceled/unpaid.
    "past_due": SubscriptionStatus.ACTIVE,
}


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    INVALID = "invalid"
    SUPERSEDED = "superseded"


# Statuses that may make a different subscription the current one
REPLACING_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


@dataclass(frozen=True)
class ExternalIds:
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class TransitionResult:
    outcome: TransitionOutcome
    entitlement: Entitlement

    @property
    def applied(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED


def map_provider_status(
    provider_status: Optional[str],
    cancel_at_period_end: bool = False,
) -> Optional[SubscriptionStatus]:
    """Map a Stripe status string; None if it has no internal equivalent.

    A live subscription set to cancel at period end is CANCELLED: access runs
    until the period ends and customer.subscription.deleted expires it.
    """
    if not provider_status:
        return None
    status = PROVIDER_STATUS_MAP.get(provider_status.lower())
    if cancel_at_period_end and status in REPLACING_STATUSES:
        return SubscriptionStatus.CANCELLED
    return status


class SubscriptionStateMachine:
    """Applies marker-ordered status transitions to the entitlement store."""

    def __init__(
        self,
        store: EntitlementStore,
        clock: Clock = utc_now,
        tracker: Optional[IssueTracker] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._tracker = tracker or issue_tracker

    def apply_transition(
        self,
        user_id: str,
        desired_status: Union[SubscriptionStatus, str],
        marker: EventMarker,
        expires_at: Optional[datetime] = None,
        external_ids: Optional[ExternalIds] = None,
        cancel_at_period_end: bool = False,
    ) -> TransitionResult:
        """Apply *desired_status* unless *marker* is stale.

        ``desired_status`` may be an internal status or a raw Stripe status;
        ``cancel_at_period_end`` qualifies the latter.
        ``expires_at=None`` keeps the stored expiry.

        A transition naming a subscription other than the one on file is
        SUPERSEDED unless it is ACTIVE or TRIALING, which makes that
        subscription the current one.

        Raises:
            EntitlementError: ENT-DB-002 if the CAS kept losing to concurrent writers.
        """
        ids = external_ids or ExternalIds()
        status = self._resolve_status(user_id, desired_status, marker, cancel_at_period_end)
        current = self._store.get_or_create(user_id)

        if status is None:
            logger.warning(
                "Invalid transition for user %s: provider status %r (event %s); entitlement unchanged",
                user_id, desired_status, marker.event_id,
            )
            self._tracker.record(
                "ENT-SUB-011",
                context={"user_id": user_id, "status": str(desired_status), "event_id": marker.event_id},
            )
            return TransitionResult(TransitionOutcome.INVALID, current)

        guarded_subscription = ids.subscription_id if status not in REPLACING_STATUSES else None

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            if not marker.supersedes(current.last_marker):
                logger.debug(
                    "Stale transition for user %s discarded: %s <= %s",
                    user_id, marker, current.last_marker,
                )
                return TransitionResult(TransitionOutcome.STALE, current)

            if guarded_subscription and current.external_subscription_id not in (None, guarded_subscription):
                logger.info(
                    "Transition for user %s targets superseded subscription %s (current %s, event %s); discarded",
                    user_id, guarded_subscription, current.external_subscription_id, marker.event_id,
                )
                return TransitionResult(TransitionOutcome.SUPERSEDED, current)

            new_expiry = expires_at if expires_at is not None else current.expires_at
            tier = derive_tier(status, new_expiry, self._clock())

            swapped = self._store.compare_and_swap(
                user_id,
                current.last_marker,
                tier=tier,
                status=status,
                expires_at=new_expiry,
                marker=marker,
                customer_id=ids.customer_id,
                subscription_id=ids.subscription_id,
                only_for_subscription=guarded_subscription,
            )
            if swapped:
                logger.info(
                    "Transition applied for user %s: %s/%s -> %s/%s (event %s)",
                    user_id, current.status.value, current.tier.value,
                    status.value, tier.value, marker.event_id,
                )
                return TransitionResult(TransitionOutcome.APPLIED, self._store.get_or_create(user_id))

            logger.debug("CAS lost for user %s (attempt %d/%d); re-reading", user_id, attempt, MAX_CAS_ATTEMPTS)
            current = self._store.get_or_create(user_id)

        raise EntitlementError(
            "ENT-DB-002",
            detail=f"transition for {user_id} lost the CAS {MAX_CAS_ATTEMPTS} times",
            context={"user_id": user_id, "event_id": marker.event_id},
        )

    def _resolve_status(
        self,
        user_id: str,
        desired: Union[SubscriptionStatus, str],
        marker: EventMarker,
        cancel_at_period_end: bool = False,
    ) -> Optional[SubscriptionStatus]:
        if isinstance(desired, SubscriptionStatus):
            return desired
        status = map_provider_status(desired, cancel_at_period_end)
        if desired == "past_due":
            logger.warning(
                "Subscription past_due for user %s; keeping access during dunning (event %s)",
                user_id, marker.event_id,
            )
            self._tracker.record("ENT-SUB-010", context={"user_id": user_id, "event_id": marker.event_id})
        return status
