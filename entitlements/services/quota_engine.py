"""
Quota Engine - Free-tier Usage Gate
===================================

PURPOSE:
    Decides whether a usage event (message, voice seconds, photo) is allowed
    and records it in the same step:
    1. **check_and_consume()** - PREMIUM users are always allowed (usage is
       still counted); FREE users are allowed only if the atomic
       increment-with-ceiling succeeds.
    2. **usage_snapshot()** - today's counters plus limits, for status views.
    3. **usage_history()** - per-day records for the last N days.

LIMITS (FREE tier, ENTITLEMENTS_ prefix):
    ENTITLEMENTS_FREE_MESSAGES_PER_DAY       - default 10
    ENTITLEMENTS_FREE_VOICE_SECONDS_PER_DAY  - default 600
    ENTITLEMENTS_FREE_PHOTO_CAP              - default 100, lifetime

DAY BOUNDARY:
    Daily counters are keyed by the UTC date of the injected clock, so a new
    day starts from zero without a reset job. Photos are never reset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from entitlements.config import settings
from entitlements.core.errors import EntitlementError
from entitlements.models.entitlement import Tier, UsageMetric
from entitlements.services.entitlement_store import DailyUsage, EntitlementStore
from entitlements.utils.time import Clock, next_utc_midnight, utc_day, utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "QuotaEngine",
    "QuotaDecision",
    "QuotaExceeded",
    "UsageSnapshot",
    "MAX_HISTORY_DAYS",
]

MAX_HISTORY_DAYS = 90


@dataclass(frozen=True)
class QuotaExceeded:
    """Why a usage event was denied."""

    metric: UsageMetric
    reset_at: Optional[datetime]
    permanent: bool = False  # photo cap: lifted only by upgrading
    retry_after_s: Optional[int] = None  # whole seconds until reset_at, same clock


@dataclass(frozen=True)
class QuotaDecision:
    """Result of a check_and_consume() call."""

    allowed: bool
    metric: UsageMetric
    tier: Tier
    used: int
    limit: Optional[int]  # None = unlimited (PREMIUM)
    reason: Optional[QuotaExceeded] = None


@dataclass(frozen=True)
class UsageSnapshot:
    tier: Tier
    used: Dict[str, int]
    limits: Dict[str, Optional[int]]
    reset_at: datetime
    day: str


class QuotaEngine:
    """Tier-aware quota gate over the entitlement store."""

    def __init__(self, store: EntitlementStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    def limit_for(self, metric: UsageMetric) -> int:
        if metric is UsageMetric.MESSAGE:
            return settings.free_messages_per_day
        if metric is UsageMetric.VOICE_SECONDS:
            return settings.free_voice_seconds_per_day
        return settings.free_photo_cap

    def check_and_consume(self, user_id: str, metric: UsageMetric | str, amount: int = 1) -> QuotaDecision:
        """Gate one usage event and count it if allowed.

        Raises:
            EntitlementError: ENT-QTA-003 for an unknown metric,
                ENT-QTA-002 for a non-positive or non-integer amount.
        """
        metric = _parse_metric(metric)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise EntitlementError(
                "ENT-QTA-002",
                detail=f"amount must be a positive integer, got {amount!r}",
                context={"metric": metric.value},
            )

        now = self._clock()
        day = utc_day(now)
        tier = self._store.get_or_create(user_id).effective_tier(now)
        limit = self.limit_for(metric)

        if tier is Tier.PREMIUM:
            self._store.increment_with_ceiling(user_id, metric, amount, day, limit=None)
            used = self._store.get_usage(user_id, day).used(metric)
            return QuotaDecision(allowed=True, metric=metric, tier=tier, used=used, limit=None)

        allowed = self._store.increment_with_ceiling(user_id, metric, amount, day, limit=limit)
        used = self._store.get_usage(user_id, day).used(metric)
        if allowed:
            return QuotaDecision(allowed=True, metric=metric, tier=tier, used=used, limit=limit)

        reset_at = next_utc_midnight(now) if metric.is_daily else None
        reason = QuotaExceeded(
            metric=metric,
            reset_at=reset_at,
            permanent=not metric.is_daily,
            retry_after_s=max(1, int((reset_at - now).total_seconds())) if reset_at else None,
        )
        logger.info(
            "Quota exceeded for user %s: %s used=%d amount=%d limit=%d",
            user_id, metric.value, used, amount, limit,
        )
        return QuotaDecision(
            allowed=False, metric=metric, tier=tier, used=used, limit=limit, reason=reason,
        )

    def usage_snapshot(self, user_id: str) -> UsageSnapshot:
        now = self._clock()
        day = utc_day(now)
        tier = self._store.get_or_create(user_id).effective_tier(now)
        counters = self._store.get_usage(user_id, day)
        return UsageSnapshot(
            tier=tier,
            used={m.value: counters.used(m) for m in UsageMetric},
            limits={m.value: (None if tier is Tier.PREMIUM else self.limit_for(m)) for m in UsageMetric},
            reset_at=next_utc_midnight(now),
            day=day.isoformat(),
        )

    def usage_history(self, user_id: str, days: int = 30) -> List[DailyUsage]:
        """Per-day usage for the last *days* UTC days (today included, max 90)."""
        days = max(1, min(int(days), MAX_HISTORY_DAYS))
        since = utc_day(self._clock()) - timedelta(days=days - 1)
        return self._store.usage_history(user_id, since)


def _parse_metric(metric: UsageMetric | str) -> UsageMetric:
    if isinstance(metric, UsageMetric):
        return metric
    try:
        return UsageMetric(metric)
    except ValueError:
        raise EntitlementError("ENT-QTA-003", detail=f"unknown metric {metric!r}") from None
