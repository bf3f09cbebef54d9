"""
Quota Engine Tests
==================

Coverage:
  - Free-tier message scenario (10 allowed, 11th denied with next-midnight reset)
  - Day rollover driven by the injected clock (no reset job)
  - Voice seconds: multi-unit amounts against the ceiling
  - Photo cap: lifetime, permanent denial, survives rollover
  - Premium: always allowed, usage still counted
  - Cancelled-with-grace keeps Premium until expiry
  - Input validation (amount, metric)
  - Usage snapshot and history
"""

from datetime import datetime, timedelta, timezone

import pytest

from entitlements.core.errors import EntitlementError
from entitlements.models.entitlement import EventMarker, SubscriptionStatus, Tier, UsageMetric


def _make_premium(state_machine, user_id, clock, status=SubscriptionStatus.ACTIVE, expires_at=None):
    marker = EventMarker.from_datetime(clock(), f"evt_{user_id}_{status.value}")
    return state_machine.apply_transition(user_id, status, marker, expires_at=expires_at)


class TestFreeMessages:

    def test_ten_allowed_then_denied(self, quota, clock):
        for i in range(10):
            decision = quota.check_and_consume("u1", UsageMetric.MESSAGE, 1)
            assert decision.allowed is True
            assert decision.used == i + 1
            assert decision.limit == 10

        denied = quota.check_and_consume("u1", UsageMetric.MESSAGE, 1)
        assert denied.allowed is False
        assert denied.used == 10
        assert denied.tier is Tier.FREE
        assert denied.reason.metric is UsageMetric.MESSAGE
        assert denied.reason.reset_at == datetime(2026, 3, 3, tzinfo=timezone.utc)
        assert denied.reason.permanent is False
        assert denied.reason.retry_after_s == 12 * 3600

    def test_denial_does_not_increment(self, quota, store, clock):
        for _ in range(15):
            quota.check_and_consume("u1", "message", 1)
        assert store.get_usage("u1", clock().date()).messages_used == 10

    def test_rollover_at_utc_midnight(self, quota, clock):
        for _ in range(10):
            quota.check_and_consume("u1", "message", 1)
        assert quota.check_and_consume("u1", "message", 1).allowed is False

        clock.now = datetime(2026, 3, 2, 23, 59, 59, tzinfo=timezone.utc)
        denied = quota.check_and_consume("u1", "message", 1)
        assert denied.allowed is False
        assert denied.reason.retry_after_s == 1

        clock.now = datetime(2026, 3, 3, 0, 0, 0, tzinfo=timezone.utc)
        decision = quota.check_and_consume("u1", "message", 1)
        assert decision.allowed is True
        assert decision.used == 1

    def test_users_are_independent(self, quota):
        for _ in range(10):
            quota.check_and_consume("u1", "message", 1)
        assert quota.check_and_consume("u2", "message", 1).allowed is True


class TestVoiceSeconds:

    def test_amount_must_fit_under_ceiling(self, quota):
        assert quota.check_and_consume("u1", "voice_seconds", 590).allowed is True
        over = quota.check_and_consume("u1", "voice_seconds", 20)
        assert over.allowed is False
        assert over.used == 590
        exact = quota.check_and_consume("u1", "voice_seconds", 10)
        assert exact.allowed is True
        assert exact.used == 600

    def test_messages_and_voice_counted_separately(self, quota):
        for _ in range(10):
            quota.check_and_consume("u1", "message", 1)
        assert quota.check_and_consume("u1", "voice_seconds", 60).allowed is True


class TestPhotoCap:

    def test_cap_is_permanent(self, quota, clock):
        assert quota.check_and_consume("u1", "photo", 100).allowed is True
        denied = quota.check_and_consume("u1", "photo", 1)
        assert denied.allowed is False
        assert denied.reason.permanent is True
        assert denied.reason.reset_at is None
        assert denied.reason.retry_after_s is None

    def test_cap_survives_rollover(self, quota, clock):
        quota.check_and_consume("u1", "photo", 100)
        clock.advance(days=3)
        assert quota.check_and_consume("u1", "photo", 1).allowed is False


class TestPremium:

    def test_premium_always_allowed_and_counted(self, quota, state_machine, store, clock):
        _make_premium(state_machine, "p1", clock)
        for _ in range(25):
            decision = quota.check_and_consume("p1", "message", 1)
            assert decision.allowed is True
            assert decision.limit is None
            assert decision.tier is Tier.PREMIUM
        assert store.get_usage("p1", clock().date()).messages_used == 25

    def test_trialing_is_premium(self, quota, state_machine, clock):
        _make_premium(state_machine, "p1", clock, status=SubscriptionStatus.TRIALING)
        assert quota.check_and_consume("p1", "photo", 150).allowed is True

    def test_cancelled_keeps_premium_until_expiry(self, quota, state_machine, clock):
        expiry = clock() + timedelta(days=2)
        _make_premium(state_machine, "p1", clock, expires_at=expiry)
        clock.advance(seconds=1)
        _make_premium(state_machine, "p1", clock, status=SubscriptionStatus.CANCELLED)

        for _ in range(12):
            assert quota.check_and_consume("p1", "message", 1).allowed is True

        clock.now = expiry + timedelta(seconds=1)
        for _ in range(10):
            assert quota.check_and_consume("p1", "message", 1).allowed is True
        last = quota.check_and_consume("p1", "message", 1)
        assert last.allowed is False
        assert last.tier is Tier.FREE


class TestValidation:

    @pytest.mark.parametrize("amount", [0, -1, 1.5, True, "3"])
    def test_rejects_bad_amount(self, quota, amount):
        with pytest.raises(EntitlementError) as exc_info:
            quota.check_and_consume("u1", "message", amount)
        assert exc_info.value.code == "ENT-QTA-002"

    def test_rejects_unknown_metric(self, quota):
        with pytest.raises(EntitlementError) as exc_info:
            quota.check_and_consume("u1", "video", 1)
        assert exc_info.value.code == "ENT-QTA-003"


class TestSnapshotAndHistory:

    def test_snapshot_free(self, quota, clock):
        quota.check_and_consume("u1", "message", 3)
        quota.check_and_consume("u1", "photo", 2)
        snap = quota.usage_snapshot("u1")
        assert snap.tier is Tier.FREE
        assert snap.used == {"message": 3, "voice_seconds": 0, "photo": 2}
        assert snap.limits == {"message": 10, "voice_seconds": 600, "photo": 100}
        assert snap.day == "2026-03-02"
        assert snap.reset_at == datetime(2026, 3, 3, tzinfo=timezone.utc)

    def test_snapshot_premium_has_no_limits(self, quota, state_machine, clock):
        _make_premium(state_machine, "p1", clock)
        snap = quota.usage_snapshot("p1")
        assert set(snap.limits.values()) == {None}

    def test_history_newest_first(self, quota, clock):
        for day in range(3):
            quota.check_and_consume("u1", "message", day + 1)
            clock.advance(days=1)
        history = quota.usage_history("u1", days=7)
        assert [h.messages_used for h in history] == [3, 2, 1]
        assert history[0].day > history[-1].day

    def test_history_window(self, quota, clock):
        quota.check_and_consume("u1", "message", 1)
        clock.advance(days=5)
        quota.check_and_consume("u1", "message", 2)
        assert [h.messages_used for h in quota.usage_history("u1", days=3)] == [2]
        assert len(quota.usage_history("u1", days=500)) == 2
