"""
Stripe client - thin wrapper over the stripe SDK
================================================

Every call into Stripe made by the service goes through StripeBillingClient
so that:
  - the SDK is configured once, and only when a secret key is present
    (otherwise ENT-CFG-001 / HTTP 503);
  - stripe.StripeError is translated into EntitlementError (ENT-PAY-001,
    card declines ENT-PAY-002) and never leaks to routers;
  - subscription payloads are read the same way whether they come from an
    API response or a webhook body, across Stripe API versions.

Tests replace the client with a fake exposing the same methods.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from entitlements.config import settings
from entitlements.core.errors import EntitlementError
from entitlements.utils.time import from_epoch

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stripe SDK - imported and configured lazily, once a secret key exists.
# ---------------------------------------------------------------------------
_stripe = None


def _get_stripe():
    """Return the configured stripe module, or raise ENT-CFG-001."""
    global _stripe
    if not settings.stripe_secret_key:
        raise EntitlementError("ENT-CFG-001", detail="ENTITLEMENTS_STRIPE_SECRET_KEY not set")
    if _stripe is None:
        import stripe

        stripe.api_key = settings.stripe_secret_key
        stripe.max_network_retries = settings.stripe_max_network_retries
        _stripe = stripe
    return _stripe


def field_of(obj: Any, key: str, default: Any = None) -> Any:
    """Read *key* from a dict or StripeObject, tolerating either shape."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError):
        return getattr(obj, key, default)


def id_of(obj: Any) -> Optional[str]:
    """Expandable fields arrive as an id string or as the expanded object."""
    if obj is None or isinstance(obj, str):
        return obj
    return field_of(obj, "id")


@dataclass(frozen=True)
class ProviderSubscription:
    """The parts of a Stripe subscription the entitlement engine acts on."""

    id: str
    status: str
    customer_id: Optional[str] = None
    created: Optional[int] = None
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    client_secret: Optional[str] = None
    user_id: Optional[str] = None  # metadata.user_id, if the subscription carries one

    @classmethod
    def from_payload(cls, obj: Any) -> "ProviderSubscription":
        metadata = field_of(obj, "metadata") or {}
        return cls(
            id=field_of(obj, "id"),
            status=field_of(obj, "status") or "",
            customer_id=id_of(field_of(obj, "customer")),
            created=field_of(obj, "created"),
            current_period_end=from_epoch(_period_end(obj)),
            cancel_at=from_epoch(field_of(obj, "cancel_at")),
            cancel_at_period_end=bool(field_of(obj, "cancel_at_period_end")),
            client_secret=_client_secret(field_of(obj, "latest_invoice")),
            user_id=field_of(metadata, "user_id") or field_of(metadata, "userId"),
        )


def _period_end(obj: Any) -> Optional[int]:
    # Newer API versions moved current_period_end onto subscription items
    value = field_of(obj, "current_period_end")
    if value:
        return value
    items = field_of(field_of(obj, "items"), "data") or []
    if items:
        return field_of(items[0], "current_period_end")
    return None


def _client_secret(invoice: Any) -> Optional[str]:
    if invoice is None or isinstance(invoice, str):
        return None
    intent = field_of(invoice, "payment_intent")
    if intent is not None and not isinstance(intent, str):
        secret = field_of(intent, "client_secret")
        if secret:
            return secret
    return field_of(field_of(invoice, "confirmation_secret"), "client_secret")


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Subscription id of an invoice (top-level or under parent.subscription_details)."""
    sub = id_of(field_of(invoice, "subscription"))
    if sub:
        return sub
    details = field_of(field_of(invoice, "parent"), "subscription_details")
    return id_of(field_of(details, "subscription"))


class StripeBillingClient:
    """Subscription operations against Stripe, with errors mapped to ENT-PAY-*."""

    @property
    def configured(self) -> bool:
        return settings.stripe_configured

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        stripe = _get_stripe()
        params = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        with _provider_call("create_customer", user_id):
            customer = stripe.Customer.create(idempotency_key=f"customer-create:{user_id}", **params)
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        stripe = _get_stripe()
        with _provider_call("attach_payment_method", customer_id):
            stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        stripe = _get_stripe()
        with _provider_call("set_default_payment_method", customer_id):
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )

    def create_subscription(self, customer_id: str, price_id: str, user_id: str) -> ProviderSubscription:
        stripe = _get_stripe()
        with _provider_call("create_subscription", user_id):
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                metadata={"user_id": user_id},
                payment_settings={
                    "payment_method_types": ["card"],
                    "save_default_payment_method": "on_subscription",
                },
                expand=["latest_invoice.payment_intent"],
            )
        return ProviderSubscription.from_payload(subscription)

    def cancel_at_period_end(self, subscription_id: str) -> ProviderSubscription:
        stripe = _get_stripe()
        with _provider_call("cancel_subscription", subscription_id):
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        return ProviderSubscription.from_payload(subscription)

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        """Fetch a subscription; None if Stripe no longer knows it."""
        stripe = _get_stripe()
        try:
            with _provider_call("retrieve_subscription", subscription_id):
                subscription = stripe.Subscription.retrieve(subscription_id)
        except _MissingResource:
            return None
        return ProviderSubscription.from_payload(subscription)


class _MissingResource(Exception):
    pass


@contextmanager
def _provider_call(operation: str, subject: str):
    """Translate stripe.StripeError raised inside the block into EntitlementError."""
    stripe = _get_stripe()
    try:
        yield
    except stripe.StripeError as exc:
        if isinstance(exc, stripe.InvalidRequestError) and exc.code == "resource_missing":
            raise _MissingResource(str(exc)) from exc

        context = {
            "operation": operation,
            "subject": subject,
            "stripe_code": exc.code,
            "request_id": exc.request_id,
        }
        if isinstance(exc, stripe.CardError):
            logger.info("Stripe declined %s for %s: %s", operation, subject, exc.user_message)
            raise EntitlementError("ENT-PAY-002", detail=str(exc), context=context) from exc

        logger.error("Stripe %s failed for %s: %s", operation, subject, exc)
        raise EntitlementError("ENT-PAY-001", detail=str(exc), context=context) from exc
