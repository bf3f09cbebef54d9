"""
Health check endpoints.

- GET /api/health          - cheap: process alive, version, uptime
- GET /api/health/deep     - bounded checks for database and Stripe config
- GET /api/health/issues   - active monitoring signals from the ring buffer
"""
import asyncio
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text

from entitlements.auth.user_auth import AuthenticatedUser, get_current_user
from entitlements.config import settings
from entitlements.core.database import get_engine
from entitlements.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENT_TIMEOUT = 2.0  # seconds


# ── Cheap health ─────────────────────────────────────────────────────
@router.get("/health")
async def health_check():
    """Cheap health check - no network calls."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── Deep health (auth required - exposes infrastructure details) ─────
@router.get("/health/deep")
async def deep_health_check(_user: AuthenticatedUser = Depends(get_current_user)):
    components = {}
    results = await asyncio.gather(
        _bounded_check("database", asyncio.to_thread(_check_database)),
        _bounded_check("stripe", _check_stripe()),
    )
    for name, result in results:
        components[name] = result

    statuses = [c.get("status", "down") for c in components.values()]
    if "down" in statuses:
        overall = "down"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "ok"

    return {
        "status": overall,
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "components": components,
    }


async def _bounded_check(name: str, coro) -> tuple[str, dict]:
    """Run a component check with a 2-second timeout."""
    try:
        result = await asyncio.wait_for(coro, timeout=COMPONENT_TIMEOUT)
        return name, result
    except asyncio.TimeoutError:
        return name, {"status": "down", "detail_safe": "Health check timed out"}
    except Exception as e:
        logger.warning("health_check_error", extra={"component": name, "error": str(e)})
        return name, {"status": "down", "detail_safe": f"Check failed: {type(e).__name__}"}


def _check_database() -> dict:
    """SELECT 1 against the entitlement database."""
    start = time.perf_counter()
    try:
        with get_engine().connect() as conn:
            value = conn.execute(text("SELECT 1")).scalar()
        latency_ms = round((time.perf_counter() - start) * 1000, 1)
        if value != 1:
            return {"status": "down", "latency_ms": latency_ms}
        return {"status": "degraded" if latency_ms > 250 else "ok", "latency_ms": latency_ms}
    except Exception as e:
        latency_ms = round((time.perf_counter() - start) * 1000, 1)
        return {
            "status": "down",
            "latency_ms": latency_ms,
            "detail_safe": f"Query failed: {type(e).__name__}",
        }


async def _check_stripe() -> dict:
    if not settings.stripe_configured:
        return {"status": "degraded", "detail_safe": "Stripe secret key not configured"}
    if not settings.stripe_webhook_secret:
        return {"status": "degraded", "detail_safe": "Webhook signing secret not configured"}
    return {"status": "ok"}


# ── Issues endpoint (auth required) ──────────────────────────────────
@router.get("/health/issues")
async def get_issues(_user: AuthenticatedUser = Depends(get_current_user)):
    """Return active monitoring signals from the issue tracker."""
    from entitlements.core.issue_tracker import issue_tracker

    issues = issue_tracker.get_active_issues()
    return {
        "issues": issues,
        "count": len(issues),
    }
