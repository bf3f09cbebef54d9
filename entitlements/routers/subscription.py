"""
Subscription Router
===================

    GET  /api/subscription/status  - effective tier, status, expiry, today's usage
    POST /api/subscription/create  - start Premium (Stripe customer + subscription)
    POST /api/subscription/cancel  - cancel at period end; Premium kept until expiry

Handlers are plain ``def``: the gateway talks to Stripe and the database
synchronously, so FastAPI runs them in its threadpool. Failures are raised
as EntitlementError and rendered by the registry-backed error handler.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from entitlements.auth.user_auth import AuthenticatedUser, get_current_user
from entitlements.services.action_gateway import ActionGateway
from entitlements.services.container import get_action_gateway

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class CreateSubscriptionRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1, description="Stripe PaymentMethod id (pm_...)")
    price_id: Optional[str] = Field(default=None, description="Overrides ENTITLEMENTS_STRIPE_PRICE_ID")
    email: Optional[str] = Field(default=None, description="Stored on the Stripe customer")


class CreateSubscriptionResponse(BaseModel):
    subscription_id: str
    status: str
    requires_confirmation: bool
    client_secret: Optional[str] = None
    tier: Optional[str] = None


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    subscription_id: str
    cancel_at: Optional[datetime] = None
    status: str


class UsageView(BaseModel):
    day: str
    used: Dict[str, int]
    limits: Dict[str, Optional[int]]
    reset_at: datetime


class SubscriptionStatusResponse(BaseModel):
    user_id: str
    tier: str
    status: str
    expires_at: Optional[datetime] = None
    has_customer: bool
    subscription_id: Optional[str] = None
    usage: UsageView


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/status", response_model=SubscriptionStatusResponse)
def get_subscription_status(
    user: AuthenticatedUser = Depends(get_current_user),
    gateway: ActionGateway = Depends(get_action_gateway),
):
    status = gateway.get_status(user.user_id)
    return SubscriptionStatusResponse(
        user_id=status.user_id,
        tier=status.tier.value,
        status=status.status.value,
        expires_at=status.expires_at,
        has_customer=status.external_customer_id is not None,
        subscription_id=status.external_subscription_id,
        usage=UsageView(
            day=status.usage.day,
            used=status.usage.used,
            limits=status.usage.limits,
            reset_at=status.usage.reset_at,
        ),
    )


@router.post("/create", response_model=CreateSubscriptionResponse)
def create_subscription(
    body: CreateSubscriptionRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    gateway: ActionGateway = Depends(get_action_gateway),
):
    result = gateway.create(
        user.user_id,
        payment_method_id=body.payment_method_id,
        price_id=body.price_id,
        email=body.email,
    )
    tier = result.transition.entitlement.tier.value if result.transition else None
    return CreateSubscriptionResponse(
        subscription_id=result.subscription_id,
        status=result.status,
        requires_confirmation=result.requires_confirmation,
        client_secret=result.client_secret,
        tier=tier,
    )


@router.post("/cancel", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    gateway: ActionGateway = Depends(get_action_gateway),
):
    result = gateway.cancel(user.user_id)
    return CancelSubscriptionResponse(
        subscription_id=result.subscription_id,
        cancel_at=result.cancel_at,
        status=result.transition.entitlement.status.value,
    )
