"""
Gateway-forwarded user authentication.

The entitlement service sits behind the host application's API gateway,
which authenticates the end user and forwards:
    X-User-Id       - the authenticated user id
    X-Internal-Key  - shared secret proving the request came via the gateway
                      (checked only when ENTITLEMENTS_INTERNAL_API_KEY is set)

Auth can be switched off for local development only when debug=True AND
ENVIRONMENT=development; X-User-Id is then trusted on its own.
"""

import hmac
import logging
import os

from fastapi import Request
from pydantic import BaseModel

from entitlements.config import settings
from entitlements.core.errors import EntitlementError
from entitlements.core.structured_logging import user_id_var

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"
INTERNAL_KEY_HEADER = "X-Internal-Key"
DEV_USER_ID = "dev_user_auth_disabled"


class AuthenticatedUser(BaseModel):
    user_id: str
    via_gateway: bool = True


def _is_auth_enabled() -> bool:
    """Auth is disabled only with ENTITLEMENTS_AUTH_ENABLED=false, debug=True and ENVIRONMENT=development."""
    env_value = os.environ.get("ENTITLEMENTS_AUTH_ENABLED", "").lower()
    if env_value in ("true", "1", "yes"):
        return True
    if env_value in ("false", "0", "no"):
        environment = os.environ.get("ENVIRONMENT", "production").lower()
        if settings.debug and environment == "development":
            logger.warning(
                "AUTH DISABLED: ENTITLEMENTS_AUTH_ENABLED=false with debug=True and ENVIRONMENT=development. "
                "Do NOT use this in production."
            )
            return False
        logger.warning(
            "Ignoring ENTITLEMENTS_AUTH_ENABLED=false because debug=%s and ENVIRONMENT=%s.",
            settings.debug,
            environment,
        )
        return True
    return settings.auth_enabled


async def get_current_user(request: Request) -> AuthenticatedUser:
    user_id = (request.headers.get(USER_HEADER) or "").strip()

    if not _is_auth_enabled():
        user = AuthenticatedUser(user_id=user_id or DEV_USER_ID, via_gateway=False)
        request.state.user = user
        user_id_var.set(user.user_id)
        return user

    if settings.internal_api_key:
        presented = request.headers.get(INTERNAL_KEY_HEADER) or ""
        if not hmac.compare_digest(presented.encode(), settings.internal_api_key.encode()):
            raise EntitlementError("ENT-SEC-001", detail="X-Internal-Key missing or wrong")

    if not user_id:
        raise EntitlementError("ENT-API-001", detail=f"{USER_HEADER} header missing")

    user = AuthenticatedUser(user_id=user_id)
    request.state.user = user
    user_id_var.set(user_id)
    return user
