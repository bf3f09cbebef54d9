"""
Processed-webhook ledger.

Stripe delivers at least once; the webhook_events table remembers every
event id that has been handled, with its outcome. A TTL cache in front of it
answers the common case (Stripe retrying within seconds) without a query.
"""

import logging
from datetime import datetime
from typing import Optional

from cachetools import TTLCache
from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from entitlements.config import settings
from entitlements.core.database import get_engine, sqlite_retry
from entitlements.models.entitlement import ProcessedWebhookEvent
from entitlements.utils.time import utc_now

logger = logging.getLogger(__name__)


class WebhookLedger:
    def __init__(self, engine: Optional[Engine] = None, cache: Optional[TTLCache] = None) -> None:
        self._engine = engine
        self._seen = cache if cache is not None else TTLCache(
            maxsize=settings.webhook_dedup_cache_size,
            ttl=settings.webhook_dedup_cache_ttl_s,
        )

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def is_processed(self, event_id: str) -> bool:
        if event_id in self._seen:
            return True

        def _fetch() -> bool:
            with self.engine.connect() as conn:
                return conn.execute(
                    select(ProcessedWebhookEvent.event_id).where(ProcessedWebhookEvent.event_id == event_id)
                ).first() is not None

        found = sqlite_retry(_fetch)
        if found:
            self._seen[event_id] = True
        return found

    def record(self, event_id: str, event_type: str, outcome: str, user_id: Optional[str] = None) -> bool:
        """Record a handled event. Returns False if it was already recorded."""
        self._seen[event_id] = True

        def _insert() -> None:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(ProcessedWebhookEvent).values(
                        event_id=event_id,
                        event_type=event_type,
                        outcome=outcome,
                        user_id=user_id,
                        processed_at=utc_now(),
                    )
                )

        try:
            sqlite_retry(_insert)
            return True
        except IntegrityError:
            logger.info("Webhook event %s already recorded by a concurrent delivery", event_id)
            return False

    def prune(self, before: datetime) -> int:
        """Delete ledger rows processed before *before*. Returns rows deleted."""
        def _delete() -> int:
            with self.engine.begin() as conn:
                return conn.execute(
                    delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < before)
                ).rowcount

        deleted = sqlite_retry(_delete)
        if deleted:
            logger.info("Pruned %d webhook ledger rows older than %s", deleted, before.isoformat())
        return deleted

    def clear_cache(self) -> None:
        self._seen.clear()
