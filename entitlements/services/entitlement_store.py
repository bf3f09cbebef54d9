"""
Entitlement Store - durable per-user entitlement and usage records
===================================================================

PURPOSE:
    Owns every read and write against the entitlement tables:
    1. **UserEntitlement** - lazily created FREE·EXPIRED row per user; the
       tier/status columns are written only through compare_and_swap(),
       which the state machine drives.
    2. **UsageRecord / PhotoStorage** - counters with an atomic
       increment-with-ceiling primitive used by the quota engine.

CONCURRENCY:
    No locks are held across statements. Both serialization points are a
    single conditional UPDATE:
      - entitlement CAS:  ... WHERE user_id = :u AND last_event_* = :expected
                          [AND external_subscription_id IN (NULL, :sub)]
      - usage increment:  ... SET c = c + :n WHERE key AND c + :n <= :limit
    The caller learns the outcome from the affected row count. Rows are
    created lazily; a concurrent insert of the same key is absorbed via
    IntegrityError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from entitlements.core.database import get_engine, sqlite_retry
from entitlements.core.errors import EntitlementError
from entitlements.models.entitlement import (
    Entitlement,
    EventMarker,
    PhotoStorage,
    SubscriptionStatus,
    Tier,
    UsageMetric,
    UsageRecord,
    UserEntitlement,
)
from entitlements.utils.time import utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "EntitlementStore",
    "UsageCounters",
    "DailyUsage",
]

T = TypeVar("T")

_DAILY_COLUMNS = {
    UsageMetric.MESSAGE: "messages_used",
    UsageMetric.VOICE_SECONDS: "voice_seconds_used",
}


@dataclass(frozen=True)
class UsageCounters:
    """Counters relevant to a user on a given UTC day."""

    day: date
    messages_used: int = 0
    voice_seconds_used: int = 0
    photos_stored: int = 0

    def used(self, metric: UsageMetric) -> int:
        if metric is UsageMetric.MESSAGE:
            return self.messages_used
        if metric is UsageMetric.VOICE_SECONDS:
            return self.voice_seconds_used
        return self.photos_stored


@dataclass(frozen=True)
class DailyUsage:
    day: date
    messages_used: int
    voice_seconds_used: int


class EntitlementStore:
    """SQL-backed store for entitlements, usage counters and photo totals."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def _run(self, fn: Callable[[], T]) -> T:
        try:
            return sqlite_retry(fn)
        except OperationalError as exc:
            raise EntitlementError("ENT-DB-001", detail=str(exc)) from exc

    # ------------------------------------------------------------------
    # Entitlements
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> Optional[Entitlement]:
        def _fetch() -> Optional[Entitlement]:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(UserEntitlement).where(UserEntitlement.user_id == user_id)
                ).first()
            return _to_entitlement(row)

        return self._run(_fetch)

    def get_or_create(self, user_id: str) -> Entitlement:
        """Return the user's entitlement, creating the FREE·EXPIRED default if absent."""
        existing = self.get(user_id)
        if existing is not None:
            return existing

        now = utc_now()

        def _insert() -> None:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(UserEntitlement).values(
                        user_id=user_id,
                        tier=Tier.FREE.value,
                        status=SubscriptionStatus.EXPIRED.value,
                        created_at=now,
                        updated_at=now,
                    )
                )

        try:
            self._run(_insert)
            logger.info("Created default entitlement for user %s", user_id)
        except IntegrityError:
            logger.debug("Entitlement for user %s created concurrently", user_id)

        created = self.get(user_id)
        if created is None:  # pragma: no cover - row vanished between insert and read
            raise EntitlementError("ENT-DB-001", detail=f"entitlement for {user_id} missing after insert")
        return created

    def find_by_customer_id(self, customer_id: str) -> Optional[Entitlement]:
        def _fetch() -> Optional[Entitlement]:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(UserEntitlement).where(UserEntitlement.external_customer_id == customer_id)
                ).first()
            return _to_entitlement(row)

        return self._run(_fetch)

    def set_customer_id(self, user_id: str, customer_id: str) -> Entitlement:
        """Cache the Stripe customer id. An id already on file is never replaced."""
        self.get_or_create(user_id)

        def _update() -> int:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(UserEntitlement)
                    .where(UserEntitlement.user_id == user_id)
                    .where(UserEntitlement.external_customer_id.is_(None))
                    .values(external_customer_id=customer_id, updated_at=utc_now())
                )
                return result.rowcount

        if self._run(_update) == 0:
            logger.info("User %s already has a customer id on file; keeping it", user_id)
        return self.get_or_create(user_id)

    def set_subscription_id(self, user_id: str, subscription_id: str) -> Entitlement:
        """Record the current Stripe subscription id (ids are replaced, never cleared)."""
        self.get_or_create(user_id)

        def _update() -> None:
            with self.engine.begin() as conn:
                conn.execute(
                    update(UserEntitlement)
                    .where(UserEntitlement.user_id == user_id)
                    .values(external_subscription_id=subscription_id, updated_at=utc_now())
                )

        self._run(_update)
        return self.get_or_create(user_id)

    def compare_and_swap(
        self,
        user_id: str,
        expected: Optional[EventMarker],
        *,
        tier: Tier,
        status: SubscriptionStatus,
        expires_at: Optional[datetime],
        marker: EventMarker,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        only_for_subscription: Optional[str] = None,
    ) -> bool:
        """Write a transition iff the stored marker still equals *expected*.

        With *only_for_subscription*, the row must also have no subscription
        on file or that one.

        Returns False when another writer committed first; the caller re-reads
        and re-decides.
        """
        values = {
            "tier": tier.value,
            "status": status.value,
            "expires_at": expires_at,
            "last_event_ts": marker.occurred_at_ms,
            "last_event_id": marker.event_id,
            "updated_at": utc_now(),
        }
        if subscription_id:
            values["external_subscription_id"] = subscription_id

        stmt = update(UserEntitlement).where(UserEntitlement.user_id == user_id)
        if expected is None:
            stmt = stmt.where(UserEntitlement.last_event_ts.is_(None))
        else:
            stmt = stmt.where(
                UserEntitlement.last_event_ts == expected.occurred_at_ms,
                UserEntitlement.last_event_id == expected.event_id,
            )
        if only_for_subscription:
            stmt = stmt.where(
                or_(
                    UserEntitlement.external_subscription_id.is_(None),
                    UserEntitlement.external_subscription_id == only_for_subscription,
                )
            )

        def _swap() -> int:
            with self.engine.begin() as conn:
                return conn.execute(stmt.values(**values)).rowcount

        swapped = self._run(_swap) == 1
        if swapped and customer_id:
            # Customer ids are write-once; outside the CAS so a mismatch can't block it
            self.set_customer_id(user_id, customer_id)
        return swapped

    # ------------------------------------------------------------------
    # Usage counters
    # ------------------------------------------------------------------

    def get_usage(self, user_id: str, day: date) -> UsageCounters:
        def _fetch() -> UsageCounters:
            with self.engine.connect() as conn:
                daily = conn.execute(
                    select(UsageRecord.messages_used, UsageRecord.voice_seconds_used)
                    .where(UsageRecord.user_id == user_id, UsageRecord.day == day)
                ).first()
                photos = conn.execute(
                    select(PhotoStorage.photos_stored).where(PhotoStorage.user_id == user_id)
                ).scalar()
            return UsageCounters(
                day=day,
                messages_used=daily.messages_used if daily else 0,
                voice_seconds_used=daily.voice_seconds_used if daily else 0,
                photos_stored=photos or 0,
            )

        return self._run(_fetch)

    def usage_history(self, user_id: str, since: date) -> List[DailyUsage]:
        """Daily records on or after *since*, most recent first."""
        def _fetch() -> List[DailyUsage]:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(UsageRecord.day, UsageRecord.messages_used, UsageRecord.voice_seconds_used)
                    .where(UsageRecord.user_id == user_id, UsageRecord.day >= since)
                    .order_by(UsageRecord.day.desc())
                ).all()
            return [
                DailyUsage(day=r.day, messages_used=r.messages_used, voice_seconds_used=r.voice_seconds_used)
                for r in rows
            ]

        return self._run(_fetch)

    def increment_with_ceiling(
        self,
        user_id: str,
        metric: UsageMetric,
        amount: int,
        day: date,
        limit: Optional[int],
    ) -> bool:
        """Atomically add *amount* unless the result would exceed *limit*.

        ``limit=None`` increments unconditionally. Returns True if the
        counter was incremented.
        """
        if metric is UsageMetric.PHOTO:
            self._ensure_photo_row(user_id)
            column = PhotoStorage.photos_stored
            stmt = update(PhotoStorage).where(PhotoStorage.user_id == user_id)
            values = {"photos_stored": column + amount, "updated_at": utc_now()}
        else:
            self._ensure_usage_row(user_id, day)
            name = _DAILY_COLUMNS[metric]
            column = getattr(UsageRecord, name)
            stmt = update(UsageRecord).where(UsageRecord.user_id == user_id, UsageRecord.day == day)
            values = {name: column + amount, "updated_at": utc_now()}

        if limit is not None:
            stmt = stmt.where(column + amount <= limit)

        def _increment() -> int:
            with self.engine.begin() as conn:
                return conn.execute(stmt.values(**values)).rowcount

        return self._run(_increment) == 1

    def _ensure_usage_row(self, user_id: str, day: date) -> None:
        def _exists() -> bool:
            with self.engine.connect() as conn:
                return conn.execute(
                    select(UsageRecord.user_id).where(UsageRecord.user_id == user_id, UsageRecord.day == day)
                ).first() is not None

        if self._run(_exists):
            return

        def _insert() -> None:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(UsageRecord).values(
                        user_id=user_id, day=day, messages_used=0, voice_seconds_used=0, updated_at=utc_now()
                    )
                )

        try:
            self._run(_insert)
        except IntegrityError:
            pass  # another request created today's row first

    def _ensure_photo_row(self, user_id: str) -> None:
        def _exists() -> bool:
            with self.engine.connect() as conn:
                return conn.execute(
                    select(PhotoStorage.user_id).where(PhotoStorage.user_id == user_id)
                ).first() is not None

        if self._run(_exists):
            return

        def _insert() -> None:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(PhotoStorage).values(user_id=user_id, photos_stored=0, updated_at=utc_now())
                )

        try:
            self._run(_insert)
        except IntegrityError:
            pass

    def prune_usage(self, before: date) -> int:
        """Delete daily usage rows older than *before*. Returns rows deleted."""
        def _delete() -> int:
            with self.engine.begin() as conn:
                return conn.execute(delete(UsageRecord).where(UsageRecord.day < before)).rowcount

        deleted = self._run(_delete)
        if deleted:
            logger.info("Pruned %d usage records older than %s", deleted, before.isoformat())
        return deleted


def _to_entitlement(row) -> Optional[Entitlement]:
    return Entitlement.from_row(row) if row is not None else None
