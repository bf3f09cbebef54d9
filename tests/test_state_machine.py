"""
Subscription State Machine Tests
================================

Coverage:
  - Provider status mapping (incl. past_due policy and unknown statuses)
  - Staleness: older timestamp, exact replay, same-second distinct events
  - Tier/status invariant after every applied transition
  - expires_at=None keeps stored expiry; customer id is write-once
  - Bounded CAS retries → ENT-DB-002
  - cancel_at_period_end → CANCELLED; transitions for a replaced subscription
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from entitlements.core.errors import EntitlementError
from entitlements.models.entitlement import (
    EventMarker,
    SubscriptionStatus,
    Tier,
    derive_tier,
)
from entitlements.services.state_machine import (
    ExternalIds,
    TransitionOutcome,
    map_provider_status,
)

T0 = 1_772_452_800_000  # 2026-03-02T12:00:00Z in ms


def m(offset_s: int, event_id: str = None) -> EventMarker:
    return EventMarker(occurred_at_ms=T0 + offset_s * 1000, event_id=event_id or f"evt_{offset_s}")


class TestProviderMapping:

    @pytest.mark.parametrize(
        "provider,expected",
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.TRIALING),
            ("canceled", SubscriptionStatus.EXPIRED),
            ("incomplete_expired", SubscriptionStatus.EXPIRED),
            ("unpaid", SubscriptionStatus.EXPIRED),
            ("past_due", SubscriptionStatus.ACTIVE),
            ("incomplete", None),
            ("paused", None),
            ("", None),
            (None, None),
        ],
    )
    def test_mapping(self, provider, expected):
        assert map_provider_status(provider) is expected

    def test_past_due_keeps_access_and_signals(self, state_machine, tracker, store):
        result = state_machine.apply_transition("u1", "past_due", m(0))
        assert result.outcome is TransitionOutcome.APPLIED
        assert result.entitlement.status is SubscriptionStatus.ACTIVE
        assert result.entitlement.tier is Tier.PREMIUM
        assert tracker.get("ENT-SUB-010").count == 1

    def test_unknown_status_is_invalid_and_unchanged(self, state_machine, tracker, store):
        state_machine.apply_transition("u1", "active", m(0))
        before = store.get("u1")

        result = state_machine.apply_transition("u1", "paused", m(10))
        assert result.outcome is TransitionOutcome.INVALID
        assert store.get("u1") == before
        issue = tracker.get("ENT-SUB-011")
        assert issue is not None
        assert issue.last_context["status"] == "paused"


class TestStaleness:

    def test_first_transition_applies(self, state_machine):
        result = state_machine.apply_transition("u1", SubscriptionStatus.ACTIVE, m(0))
        assert result.applied
        assert result.entitlement.last_marker == m(0)

    def test_older_event_is_stale(self, state_machine, store):
        state_machine.apply_transition("u1", SubscriptionStatus.CANCELLED, m(10))
        result = state_machine.apply_transition("u1", SubscriptionStatus.ACTIVE, m(5))
        assert result.outcome is TransitionOutcome.STALE
        assert store.get("u1").status is SubscriptionStatus.CANCELLED

    def test_exact_replay_is_stale(self, state_machine):
        state_machine.apply_transition("u1", SubscriptionStatus.ACTIVE, m(0, "evt_a"))
        again = state_machine.apply_transition("u1", SubscriptionStatus.EXPIRED, m(0, "evt_a"))
        assert again.outcome is TransitionOutcome.STALE
        assert again.entitlement.status is SubscriptionStatus.ACTIVE

    def test_same_second_distinct_event_applies(self, state_machine):
        state_machine.apply_transition("u1", SubscriptionStatus.ACTIVE, m(0, "evt_a"))
        second = state_machine.apply_transition("u1", SubscriptionStatus.EXPIRED, m(0, "evt_b"))
        assert second.applied
        assert second.entitlement.status is SubscriptionStatus.EXPIRED

    def test_invalid_does_not_advance_marker(self, state_machine, store):
        state_machine.apply_transition("u1", "active", m(0))
        state_machine.apply_transition("u1", "bogus", m(50))
        assert store.get("u1").last_marker == m(0)
        assert state_machine.apply_transition("u1", "canceled", m(20)).applied


class TestInvariant:

    @pytest.mark.parametrize(
        "sequence",
        [
            ["active", "canceled", "trialing"],
            [SubscriptionStatus.TRIALING, SubscriptionStatus.EXPIRED],
            ["past_due", "unpaid", "active"],
        ],
    )
    def test_tier_follows_status(self, state_machine, store, clock, sequence):
        for i, status in enumerate(sequence):
            state_machine.apply_transition("u1", status, m(i))
            ent = store.get("u1")
            assert ent.tier is derive_tier(ent.status, ent.expires_at, clock())
            assert (ent.tier is Tier.PREMIUM) == (
                ent.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
            )

    def test_cancelled_with_future_expiry_is_premium(self, state_machine, clock):
        expiry = clock() + timedelta(days=10)
        state_machine.apply_transition("u1", "active", m(0), expires_at=expiry)
        result = state_machine.apply_transition("u1", SubscriptionStatus.CANCELLED, m(1))
        assert result.entitlement.tier is Tier.PREMIUM
        assert result.entitlement.expires_at == expiry
        assert result.entitlement.effective_tier(expiry + timedelta(seconds=1)) is Tier.FREE

    def test_cancelled_without_expiry_is_free(self, state_machine):
        result = state_machine.apply_transition("u1", SubscriptionStatus.CANCELLED, m(0))
        assert result.entitlement.tier is Tier.FREE


class TestExternalIds:

    def test_ids_recorded(self, state_machine, store):
        state_machine.apply_transition(
            "u1", "active", m(0), external_ids=ExternalIds(customer_id="cus_1", subscription_id="sub_1"),
        )
        ent = store.get("u1")
        assert ent.external_customer_id == "cus_1"
        assert ent.external_subscription_id == "sub_1"
        assert store.find_by_customer_id("cus_1").user_id == "u1"

    def test_customer_id_never_overwritten(self, state_machine, store):
        state_machine.apply_transition("u1", "active", m(0), external_ids=ExternalIds(customer_id="cus_1"))
        state_machine.apply_transition("u1", "active", m(1), external_ids=ExternalIds(customer_id="cus_2"))
        assert store.get("u1").external_customer_id == "cus_1"

    def test_missing_ids_keep_stored(self, state_machine, store):
        state_machine.apply_transition(
            "u1", "active", m(0), external_ids=ExternalIds(customer_id="cus_1", subscription_id="sub_1"),
        )
        state_machine.apply_transition("u1", SubscriptionStatus.CANCELLED, m(1))
        ent = store.get("u1")
        assert ent.external_customer_id == "cus_1"
        assert ent.external_subscription_id == "sub_1"


class TestCasRetries:

    def test_gives_up_after_bounded_attempts(self, state_machine, store):
        with patch.object(store, "compare_and_swap", return_value=False) as cas:
            with pytest.raises(EntitlementError) as exc_info:
                state_machine.apply_transition("u1", "active", m(0))
        assert exc_info.value.code == "ENT-DB-002"
        assert cas.call_count == 10

    def test_lost_race_is_rejudged(self, state_machine, store):
        """A concurrent newer write between read and CAS turns the retry stale."""
        real_cas = store.compare_and_swap
        calls = {"n": 0}

        def _interleave(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                # Another producer commits a newer transition first
                real_cas("u1", None, tier=Tier.FREE, status=SubscriptionStatus.EXPIRED,
                         expires_at=None, marker=m(100))
            return real_cas(*args, **kwargs)

        with patch.object(store, "compare_and_swap", side_effect=_interleave):
            result = state_machine.apply_transition("u1", "active", m(50))

        assert result.outcome is TransitionOutcome.STALE
        assert store.get("u1").status is SubscriptionStatus.EXPIRED


class TestPendingCancellation:

    @pytest.mark.parametrize(
        "provider,expected",
        [
            ("active", SubscriptionStatus.CANCELLED),
            ("trialing", SubscriptionStatus.CANCELLED),
            ("past_due", SubscriptionStatus.CANCELLED),
            ("canceled", SubscriptionStatus.EXPIRED),
            ("incomplete", None),
        ],
    )
    def test_mapping(self, provider, expected):
        assert map_provider_status(provider, cancel_at_period_end=True) is expected

    def test_keeps_premium_until_expiry(self, state_machine, clock):
        expiry = clock() + timedelta(days=27)
        state_machine.apply_transition("u1", "active", m(0), expires_at=expiry)
        result = state_machine.apply_transition("u1", "active", m(5), expires_at=expiry, cancel_at_period_end=True)
        assert result.entitlement.status is SubscriptionStatus.CANCELLED
        assert result.entitlement.tier is Tier.PREMIUM
        assert result.entitlement.effective_tier(expiry + timedelta(seconds=1)) is Tier.FREE


class TestSupersededSubscription:

    @pytest.fixture
    def replaced(self, state_machine, store):
        """sub_2 is live; sub_1 was an earlier attempt."""
        state_machine.apply_transition("u1", "active", m(0), external_ids=ExternalIds("cus_1", "sub_2"))
        return store.get("u1")

    @pytest.mark.parametrize(
        "status",
        ["incomplete_expired", "canceled", SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED],
    )
    def test_old_subscription_cannot_end_access(self, state_machine, store, replaced, status):
        result = state_machine.apply_transition("u1", status, m(10), external_ids=ExternalIds("cus_1", "sub_1"))
        assert result.outcome is TransitionOutcome.SUPERSEDED
        ent = store.get("u1")
        assert ent == replaced
        assert ent.tier is Tier.PREMIUM
        assert ent.external_subscription_id == "sub_2"

    @pytest.mark.parametrize("status", ["active", "trialing"])
    def test_live_subscription_becomes_current(self, state_machine, store, replaced, status):
        result = state_machine.apply_transition("u1", status, m(10), external_ids=ExternalIds("cus_1", "sub_3"))
        assert result.outcome is TransitionOutcome.APPLIED
        assert store.get("u1").external_subscription_id == "sub_3"

    def test_current_subscription_still_applies(self, state_machine, store, replaced):
        result = state_machine.apply_transition("u1", "canceled", m(10), external_ids=ExternalIds("cus_1", "sub_2"))
        assert result.outcome is TransitionOutcome.APPLIED
        assert store.get("u1").tier is Tier.FREE

    def test_no_subscription_on_file_applies(self, state_machine, store):
        result = state_machine.apply_transition("u1", "canceled", m(0), external_ids=ExternalIds("cus_1", "sub_1"))
        assert result.outcome is TransitionOutcome.APPLIED
        assert store.get("u1").external_subscription_id == "sub_1"

    def test_replacement_between_read_and_swap_is_rejudged(self, state_machine, store):
        state_machine.apply_transition("u1", "active", m(0), external_ids=ExternalIds("cus_1", "sub_1"))
        real_cas = store.compare_and_swap
        calls = {"n": 0}

        def _interleave(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                # A retried create records its new subscription first
                store.set_subscription_id("u1", "sub_2")
            return real_cas(*args, **kwargs)

        with patch.object(store, "compare_and_swap", side_effect=_interleave):
            result = state_machine.apply_transition(
                "u1", "incomplete_expired", m(10), external_ids=ExternalIds("cus_1", "sub_1"),
            )

        assert result.outcome is TransitionOutcome.SUPERSEDED
        ent = store.get("u1")
        assert ent.status is SubscriptionStatus.ACTIVE
        assert ent.external_subscription_id == "sub_2"
