"""
Entitlement Models
==================

SQLModel tables for persistent entitlement state:
- UserEntitlement: one row per user - tier, status, Stripe ids, expiry and
  the marker of the last applied billing event.
- UsageRecord: one row per (user, UTC day) - daily message/voice counters.
- PhotoStorage: one row per user - lifetime photo count (capped, not daily).
- ProcessedWebhookEvent: dedup ledger for at-least-once webhook delivery.

Plus the frozen domain snapshots handed out by the store (Entitlement,
EventMarker) and the tier rule shared by every writer.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Column, DateTime
from sqlmodel import Field, SQLModel

from entitlements.utils.time import as_utc


class Tier(str, Enum):
    FREE = "FREE"
    PREMIUM = "PREMIUM"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class UsageMetric(str, Enum):
    MESSAGE = "message"
    VOICE_SECONDS = "voice_seconds"
    PHOTO = "photo"

    @property
    def is_daily(self) -> bool:
        return self is not UsageMetric.PHOTO


PREMIUM_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


def derive_tier(
    status: SubscriptionStatus,
    expires_at: Optional[datetime],
    now: datetime,
) -> Tier:
    """Status determines tier; a CANCELLED subscription keeps PREMIUM until expiry."""
    if status in PREMIUM_STATUSES:
        return Tier.PREMIUM
    if status is SubscriptionStatus.CANCELLED and expires_at is not None and as_utc(expires_at) > as_utc(now):
        return Tier.PREMIUM
    return Tier.FREE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Tables
# =============================================================================

class UserEntitlement(SQLModel, table=True):
    """Authoritative tier/status record for a user."""

    __tablename__ = "user_entitlements"

    user_id: str = Field(primary_key=True, max_length=128)
    tier: str = Field(default=Tier.FREE.value, max_length=16)
    status: str = Field(default=SubscriptionStatus.EXPIRED.value, max_length=16)
    external_customer_id: Optional[str] = Field(default=None, unique=True, index=True, nullable=True, max_length=255)
    external_subscription_id: Optional[str] = Field(default=None, index=True, nullable=True, max_length=255)
    expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    # Marker of the last applied transition: (epoch ms, event id)
    last_event_ts: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    last_event_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class UsageRecord(SQLModel, table=True):
    """Daily usage counters, keyed by (user_id, UTC day)."""

    __tablename__ = "usage_records"

    user_id: str = Field(primary_key=True, max_length=128)
    day: date = Field(primary_key=True, index=True)
    messages_used: int = Field(default=0)
    voice_seconds_used: int = Field(default=0)
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class PhotoStorage(SQLModel, table=True):
    """Lifetime photo counter."""

    __tablename__ = "photo_storage"

    user_id: str = Field(primary_key=True, max_length=128)
    photos_stored: int = Field(default=0)
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class ProcessedWebhookEvent(SQLModel, table=True):
    """One row per Stripe event id that has been handled."""

    __tablename__ = "webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=128)
    outcome: str = Field(max_length=32)
    user_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    processed_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )


# =============================================================================
# Domain snapshots
# =============================================================================

@dataclass(frozen=True, order=True)
class EventMarker:
    """Ordering token for billing updates: (epoch milliseconds, event id)."""

    occurred_at_ms: int
    event_id: str

    @classmethod
    def from_epoch_seconds(cls, seconds: int, event_id: str) -> "EventMarker":
        return cls(occurred_at_ms=int(seconds) * 1000, event_id=event_id)

    @classmethod
    def from_datetime(cls, value: datetime, event_id: str) -> "EventMarker":
        return cls(occurred_at_ms=int(as_utc(value).timestamp() * 1000), event_id=event_id)

    def supersedes(self, other: Optional["EventMarker"]) -> bool:
        """True if this marker may overwrite state written under *other*.

        Older timestamps lose; an identical marker is a replay. Distinct events
        sharing a timestamp are both accepted (Stripe stamps events in seconds).
        """
        if other is None:
            return True
        if self.occurred_at_ms != other.occurred_at_ms:
            return self.occurred_at_ms > other.occurred_at_ms
        return self.event_id != other.event_id


@dataclass(frozen=True)
class Entitlement:
    """Read-only view of a UserEntitlement row."""

    user_id: str
    tier: Tier
    status: SubscriptionStatus
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_marker: Optional[EventMarker] = None

    @classmethod
    def from_row(cls, row: UserEntitlement) -> "Entitlement":
        marker = None
        if row.last_event_ts is not None and row.last_event_id is not None:
            marker = EventMarker(occurred_at_ms=row.last_event_ts, event_id=row.last_event_id)
        return cls(
            user_id=row.user_id,
            tier=Tier(row.tier),
            status=SubscriptionStatus(row.status),
            external_customer_id=row.external_customer_id,
            external_subscription_id=row.external_subscription_id,
            expires_at=as_utc(row.expires_at),
            last_marker=marker,
        )

    def effective_tier(self, now: datetime) -> Tier:
        """Tier as of *now*; a lapsed CANCELLED grace period reads as FREE."""
        return derive_tier(self.status, self.expires_at, now)
