"""
Billing provider protocol.

Defines the interface the entitlement components use to talk to the billing
provider (Stripe). Business logic depends on this protocol only, so tests run
against an in-memory fake.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from logtopost.features.entitlements.transitions import EventKind


# Provider event type -> local event kind. Anything else is acknowledged and ignored.
EVENT_KINDS: Dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
}


@dataclass
class ProviderSubscription:
    """Provider-side subscription snapshot."""
    id: str
    customer_ref: Optional[str]
    status: str  # provider vocabulary: trialing, active, past_due, canceled, ...
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class BillingEvent:
    """A verified webhook event, normalized to the fields reconciliation needs.

    Timestamps that were missing or malformed in the payload are None.
    """
    event_id: str
    event_type: str
    occurred_at: Optional[datetime]
    kind: Optional[EventKind] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    user_id: Optional[str] = None
    provider_status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    mode: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Every call may raise BillingProviderError (network failure, timeout,
    provider-side error). construct_event raises BillingWebhookError when the
    signature or payload is invalid.
    """

    def find_customer_by_email(self, email: str) -> Optional[str]:
        """Return the first provider customer ref registered with ``email``."""
        ...

    def create_customer(self, user_id: str, email: str) -> str:
        """Create a customer tagged with ``user_id``; idempotent per user."""
        ...

    def has_subscription_history(self, email: str) -> bool:
        """True if any customer with ``email`` ever held a subscription, in any status."""
        ...

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        ...

    def end_trial(self, subscription_ref: str) -> ProviderSubscription:
        """End a trialing subscription now, starting the paid period."""
        ...

    def cancel_subscription(self, subscription_ref: str) -> ProviderSubscription:
        """Cancel immediately (not at period end)."""
        ...

    def default_payment_method(self, customer_ref: str) -> Optional[str]:
        """Return a card payment method on file, if any."""
        ...

    def create_subscription(
        self,
        customer_ref: str,
        price_id: str,
        payment_method_ref: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderSubscription:
        """Start a new subscription charged to ``payment_method_ref``.

        Raises BillingPaymentError when the charge is declined.
        """
        ...

    def create_checkout_session(
        self,
        customer_ref: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        trial_end: Optional[datetime] = None,
    ) -> str:
        """Create a subscription checkout session and return its URL.

        ``trial_end`` attaches a trial ending at that instant; None means no trial.
        """
        ...

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        ...

    def construct_event(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        """Verify the signature over the raw ``payload`` and parse the event."""
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Webhook signature or payload invalid."""
    pass


class BillingPaymentError(BillingProviderError):
    """The provider declined a charge."""
    pass
