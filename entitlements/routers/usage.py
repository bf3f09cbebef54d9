"""
Usage Router
============

    POST /api/usage/{metric}/consume  - gate + count one usage event
                                        (200 allowed, 429 denied)
    GET  /api/usage/today             - today's counters and limits
    GET  /api/usage/history?days=N    - per-day records, newest first (N ≤ 90)

The host application calls /consume before serving a chat message, a voice
session chunk or a photo upload, and respects the answer.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from entitlements.auth.user_auth import AuthenticatedUser, get_current_user
from entitlements.core.errors.registry import error_registry
from entitlements.services.container import get_quota_engine
from entitlements.services.quota_engine import MAX_HISTORY_DAYS, QuotaEngine

logger = logging.getLogger(__name__)

router = APIRouter()


class ConsumeRequest(BaseModel):
    amount: int = Field(default=1, description="Units to consume: messages, seconds or photos")


class ConsumeResponse(BaseModel):
    allowed: bool
    metric: str
    tier: str
    used: int
    limit: Optional[int] = None
    reset_at: Optional[datetime] = None
    permanent: bool = False


class TodayUsageResponse(BaseModel):
    day: str
    tier: str
    used: Dict[str, int]
    limits: Dict[str, Optional[int]]
    reset_at: datetime


class DailyUsageItem(BaseModel):
    day: str
    messages_used: int
    voice_seconds_used: int


class UsageHistoryResponse(BaseModel):
    days: int
    records: List[DailyUsageItem]


@router.post("/{metric}/consume", response_model=ConsumeResponse)
def consume_usage(
    metric: str,
    body: Optional[ConsumeRequest] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    quota: QuotaEngine = Depends(get_quota_engine),
):
    amount = body.amount if body is not None else 1
    decision = quota.check_and_consume(user.user_id, metric, amount)
    response = ConsumeResponse(
        allowed=decision.allowed,
        metric=decision.metric.value,
        tier=decision.tier.value,
        used=decision.used,
        limit=decision.limit,
    )
    if decision.allowed:
        return response

    reason = decision.reason
    response.reset_at = reason.reset_at
    response.permanent = reason.permanent
    entry = error_registry.get("ENT-QTA-001")
    content = response.model_dump(mode="json")
    if entry is not None:
        content["error"] = {
            "code": entry.code,
            "title": entry.title,
            "message": entry.safe_message,
            "retryable": entry.retryable,
            "user_action_required": entry.user_action_required,
            "remediation": entry.remediation,
        }
    headers = {}
    if reason.retry_after_s is not None:
        headers["Retry-After"] = str(reason.retry_after_s)
    return JSONResponse(status_code=429, content=content, headers=headers)


@router.get("/today", response_model=TodayUsageResponse)
def usage_today(
    user: AuthenticatedUser = Depends(get_current_user),
    quota: QuotaEngine = Depends(get_quota_engine),
):
    snapshot = quota.usage_snapshot(user.user_id)
    return TodayUsageResponse(
        day=snapshot.day,
        tier=snapshot.tier.value,
        used=snapshot.used,
        limits=snapshot.limits,
        reset_at=snapshot.reset_at,
    )


@router.get("/history", response_model=UsageHistoryResponse)
def usage_history(
    days: int = Query(default=30, ge=1, le=MAX_HISTORY_DAYS),
    user: AuthenticatedUser = Depends(get_current_user),
    quota: QuotaEngine = Depends(get_quota_engine),
):
    records = quota.usage_history(user.user_id, days)
    return UsageHistoryResponse(
        days=days,
        records=[
            DailyUsageItem(
                day=r.day.isoformat(),
                messages_used=r.messages_used,
                voice_seconds_used=r.voice_seconds_used,
            )
            for r in records
        ],
    )
