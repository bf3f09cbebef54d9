"""
Retention - prune old usage rows and webhook ledger entries.

Daily usage rows are only needed for the history endpoint (90 days) and the
webhook ledger only needs to outlive Stripe's retry window (3 days), so both
tables are trimmed on a timer started from the application lifespan.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from entitlements.config import settings
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.services.webhook_ledger import WebhookLedger
from entitlements.utils.time import Clock, utc_day, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionReport:
    usage_rows_deleted: int
    ledger_rows_deleted: int


def run_retention(
    store: EntitlementStore,
    ledger: WebhookLedger,
    clock: Clock = utc_now,
    usage_days: Optional[int] = None,
    ledger_days: Optional[int] = None,
) -> RetentionReport:
    now = clock()
    usage_days = usage_days if usage_days is not None else settings.usage_retention_days
    ledger_days = ledger_days if ledger_days is not None else settings.webhook_ledger_retention_days

    usage_deleted = store.prune_usage(utc_day(now) - timedelta(days=usage_days))
    ledger_deleted = ledger.prune(now - timedelta(days=ledger_days))
    return RetentionReport(usage_rows_deleted=usage_deleted, ledger_rows_deleted=ledger_deleted)


async def retention_loop(store: EntitlementStore, ledger: WebhookLedger, interval_s: Optional[int] = None) -> None:
    interval = interval_s or settings.retention_interval_s
    while True:
        try:
            report = await asyncio.to_thread(run_retention, store, ledger)
            logger.debug(
                "Retention pass: %d usage rows, %d ledger rows deleted",
                report.usage_rows_deleted, report.ledger_rows_deleted,
            )
        except Exception as exc:
            logger.error("Retention pass failed: %s", exc, exc_info=True)
        await asyncio.sleep(interval)
