"""
Stripe billing provider implementation.

Implements the BillingProvider protocol using the Stripe API.
Handles webhook signature verification and event normalization, including
the field moves between Stripe API versions (subscription periods on items,
invoice subscription under parent.subscription_details).
"""
import json
import logging
from typing import Dict, Any, Optional
from datetime import datetime, timedelta, timezone

import stripe

from logtopost.features.billing.provider import (
    EVENT_KINDS,
    BillingEvent,
    BillingPaymentError,
    BillingProviderError,
    BillingWebhookError,
    ProviderSubscription,
)


logger = logging.getLogger(__name__)

# Stripe rejects checkout trials ending sooner than this.
MIN_CHECKOUT_TRIAL = timedelta(hours=48)


def _timestamp(value: Any) -> Optional[datetime]:
    """Convert a Stripe epoch-seconds field to an aware datetime, None if malformed."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
        if seconds <= 0:
            return None
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _ref(value: Any) -> Optional[str]:
    """Expanded objects carry their id; unexpanded fields are the id itself."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(data: Dict[str, Any]) -> Dict[str, Any]:
    items = (data.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _subscription_from_data(data: Dict[str, Any]) -> ProviderSubscription:
    item = _first_item(data)
    return ProviderSubscription(
        id=data.get("id"),
        customer_ref=_ref(data.get("customer")),
        status=data.get("status") or "",
        current_period_start=_timestamp(data.get("current_period_start") or item.get("current_period_start")),
        current_period_end=_timestamp(data.get("current_period_end") or item.get("current_period_end")),
        trial_end=_timestamp(data.get("trial_end")),
        metadata=dict(data.get("metadata") or {}),
    )


def _invoice_subscription_ref(data: Dict[str, Any]) -> Optional[str]:
    ref = _ref(data.get("subscription"))
    if ref:
        return ref
    details = ((data.get("parent") or {}).get("subscription_details") or {})
    return _ref(details.get("subscription"))


def _invoice_period(data: Dict[str, Any]):
    lines = (data.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") or {}) if lines else {}
    start = _timestamp(period.get("start"))
    end = _timestamp(period.get("end"))
    if start is None:
        # Subscription-cycle invoices bill the period that begins where the invoice period ends
        start = _timestamp(data.get("period_end"))
    return start, end


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        timeout: float = 10.0,
        webhook_tolerance: int = 300,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
            timeout: Per-request network timeout in seconds
            webhook_tolerance: Accepted signature age in seconds
        """
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance

        stripe.api_key = secret_key
        stripe.default_http_client = stripe.new_default_http_client(timeout=timeout)

    def find_customer_by_email(self, email: str) -> Optional[str]:
        try:
            customers = stripe.Customer.list(email=email, limit=1)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}") from e
        if customers.data:
            return customers.data[0].id
        return None

    def create_customer(self, user_id: str, email: str) -> str:
        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"user_id": user_id},
                idempotency_key=f"customer-{user_id}",
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}") from e
        return customer.id

    def has_subscription_history(self, email: str) -> bool:
        try:
            customers = stripe.Customer.list(email=email, limit=10)
            for customer in customers.data:
                subscriptions = stripe.Subscription.list(customer=customer.id, status="all", limit=1)
                if subscriptions.data:
                    return True
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription history lookup failed: {e}") from e
        return False

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_ref)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}") from e
        return _subscription_from_data(_as_dict(subscription))

    def end_trial(self, subscription_ref: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.modify(subscription_ref, trial_end="now")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe trial end failed: {e}") from e
        return _subscription_from_data(_as_dict(subscription))

    def cancel_subscription(self, subscription_ref: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.cancel(subscription_ref)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}") from e
        return _subscription_from_data(_as_dict(subscription))

    def default_payment_method(self, customer_ref: str) -> Optional[str]:
        try:
            methods = stripe.PaymentMethod.list(customer=customer_ref, type="card", limit=1)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe payment method lookup failed: {e}") from e
        if methods.data:
            return methods.data[0].id
        return None

    def create_subscription(
        self,
        customer_ref: str,
        price_id: str,
        payment_method_ref: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.create(
                customer=customer_ref,
                items=[{"price": price_id}],
                default_payment_method=payment_method_ref,
                metadata=metadata or {},
            )
        except stripe.CardError as e:
            raise BillingPaymentError(f"Payment declined: {e.user_message or e}") from e
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription creation failed: {e}") from e
        return _subscription_from_data(_as_dict(subscription))

    def create_checkout_session(
        self,
        customer_ref: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        trial_end: Optional[datetime] = None,
    ) -> str:
        """Create Stripe checkout session."""
        metadata = metadata or {}
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_end is not None:
            if trial_end - datetime.now(timezone.utc) >= MIN_CHECKOUT_TRIAL:
                subscription_data["trial_end"] = int(trial_end.timestamp())
            else:
                logger.info(
                    "[billing] remaining trial too short for checkout trial, charging now",
                    extra={"customer_ref": customer_ref, "trial_end": trial_end.isoformat()},
                )

        try:
            session = stripe.checkout.Session.create(
                customer=customer_ref,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                client_reference_id=metadata.get("user_id"),
                subscription_data=subscription_data,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}") from e
        return session.url

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_ref,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}") from e
        return session.url

    def construct_event(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        """Verify the Stripe-Signature header over the raw body and parse the event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.webhook_tolerance)
            event = json.loads(body)
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload encoding: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise BillingWebhookError("Invalid payload: missing event id or type")
        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> BillingEvent:
        """Normalize a Stripe event into a BillingEvent."""
        event_type = event["type"]
        data = (event.get("data") or {}).get("object") or {}
        metadata = data.get("metadata") or {}

        result = BillingEvent(
            event_id=event["id"],
            event_type=event_type,
            occurred_at=_timestamp(event.get("created")),
            kind=EVENT_KINDS.get(event_type),
            customer_ref=_ref(data.get("customer")),
            user_id=metadata.get("user_id"),
            raw=data,
        )

        if event_type == "checkout.session.completed":
            result.subscription_ref = _ref(data.get("subscription"))
            result.user_id = result.user_id or data.get("client_reference_id")
            result.mode = data.get("mode")

        elif event_type.startswith("customer.subscription."):
            subscription = _subscription_from_data(data)
            result.subscription_ref = subscription.id
            result.provider_status = subscription.status
            result.period_start = subscription.current_period_start
            result.period_end = subscription.current_period_end
            result.trial_end = subscription.trial_end

        elif event_type.startswith("invoice."):
            result.subscription_ref = _invoice_subscription_ref(data)
            result.period_start, result.period_end = _invoice_period(data)

        return result
