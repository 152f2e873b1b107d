"""
Checkout/Portal Initiator.

Coordinates user-initiated billing flows:
- Checkout (with server-side trial inclusion) and mid-trial upgrade
- Customer portal
- Immediate cancellation and restart of a cancelled subscription

Local writes made here are provisional; the webhook processor is the
authoritative final writer of subscription status. All Stripe-specific code
is in stripe_provider.py.
"""
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, Optional

from logtopost.core.config import EntitlementConfig, Settings, settings
from logtopost.core.errors import InvalidPlanError, ProviderUnavailableError, ValidationError
from logtopost.core.metrics import billing_provider_call_seconds
from logtopost.features.billing.provider import (
    BillingPaymentError,
    BillingProvider,
    BillingProviderError,
)
from logtopost.features.billing.stripe_provider import StripeProvider
from logtopost.features.entitlements.store import EntitlementStore, utc_now
from logtopost.features.entitlements.transitions import (
    EventKind,
    apply_transition,
    map_provider_status,
    mark_trial_used,
    reset_usage_for_period,
)
from logtopost.features.usage.service import UsageLedger
from logtopost.features.users.service import get_user_email
from logtopost.models.entitlement import Entitlement, SubscriptionStatus


logger = logging.getLogger(__name__)


def billing_enabled(settings_obj: Optional[Settings] = None) -> bool:
    """Check if billing is enabled (Stripe configured)."""
    cfg = settings_obj or settings
    return bool(cfg.STRIPE_SECRET_KEY)


def get_provider(settings_obj: Optional[Settings] = None) -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    cfg = settings_obj or settings
    if not billing_enabled(cfg):
        return None
    try:
        return StripeProvider(
            cfg.STRIPE_SECRET_KEY,
            cfg.STRIPE_WEBHOOK_SECRET,
            timeout=cfg.PROVIDER_TIMEOUT_SECONDS,
        )
    except BillingProviderError:
        logger.exception("[billing] provider initialisation failed")
        return None


@contextmanager
def _provider_errors(action: str, user_id: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    except BillingPaymentError:
        raise
    except BillingProviderError as e:
        logger.warning(
            "[billing] provider call failed",
            extra={"user_id": user_id, "action": action, "error_message": str(e)},
        )
        raise ProviderUnavailableError(
            "Billing provider is unavailable, please try again",
            details={"action": action},
        ) from e
    finally:
        billing_provider_call_seconds.observe(time.perf_counter() - started, labels={"action": action})


@dataclass(frozen=True)
class CheckoutResult:
    url: str
    trial_included: bool = False
    status: Optional[str] = None


class BillingService:
    """User-initiated checkout, portal, cancel and restart flows."""

    def __init__(
        self,
        config: EntitlementConfig,
        store: EntitlementStore,
        provider: BillingProvider,
        ledger: UsageLedger,
    ):
        self.config = config
        self.store = store
        self.provider = provider
        self.ledger = ledger

    def _require_plan(self, plan: Optional[str]) -> str:
        if plan not in self.config.purchasable_plans:
            raise InvalidPlanError(
                "Invalid plan selected. Only premium plan is available.",
                details={"plan": plan},
            )
        return plan

    def _ensure_customer(self, entitlement: Entitlement) -> str:
        """Stored ref, else provider lookup by email, else create. Persisted before returning."""
        if entitlement.billing_customer_ref:
            return entitlement.billing_customer_ref

        user_id = entitlement.user_id
        email = get_user_email(user_id)
        with _provider_errors("ensure_customer", user_id):
            customer_ref = self.provider.find_customer_by_email(email)
            if customer_ref is None:
                customer_ref = self.provider.create_customer(user_id, email)
                logger.info("[billing] customer created", extra={"user_id": user_id, "customer_ref": customer_ref})
        return self.store.assign_customer_ref(user_id, customer_ref)

    def _checkout_trial_end(self, entitlement: Entitlement, now: datetime) -> Optional[datetime]:
        """Trial end to attach at checkout, never extending a local trial."""
        if entitlement.has_had_trial:
            return None
        if entitlement.status not in (SubscriptionStatus.TRIALING, SubscriptionStatus.NO_SUBSCRIPTION):
            return None
        if entitlement.trial_ends_at is not None:
            if entitlement.trial_ends_at <= now:
                return None
            return entitlement.trial_ends_at
        return now + timedelta(days=self.config.trial_days)

    def start_checkout(self, user_id: str, plan: Optional[str], now: Optional[datetime] = None) -> CheckoutResult:
        plan = self._require_plan(plan)
        now = now or utc_now()
        entitlement = self.store.require(user_id)
        customer_ref = self._ensure_customer(entitlement)
        trial_end = self._checkout_trial_end(entitlement, now)

        with _provider_errors("checkout", user_id):
            url = self.provider.create_checkout_session(
                customer_ref,
                self.config.premium_price_id,
                self.config.checkout_success_url,
                self.config.checkout_cancel_url,
                metadata={"user_id": user_id, "plan": plan},
                trial_end=trial_end,
            )

        logger.info(
            "[billing] checkout session created",
            extra={"user_id": user_id, "plan": plan, "trial_included": trial_end is not None},
        )
        return CheckoutResult(url=url, trial_included=trial_end is not None)

    def upgrade_now(self, user_id: str, plan: Optional[str], now: Optional[datetime] = None) -> CheckoutResult:
        """End the trial now and start the paid plan."""
        plan = self._require_plan(plan)
        now = now or utc_now()
        entitlement = self.store.require(user_id)
        if entitlement.status != SubscriptionStatus.TRIALING:
            raise ValidationError("User is not on trial", details={"status": entitlement.status.value})

        if not entitlement.billing_subscription_ref:
            customer_ref = self._ensure_customer(entitlement)
            with _provider_errors("checkout", user_id):
                url = self.provider.create_checkout_session(
                    customer_ref,
                    self.config.premium_price_id,
                    self.config.checkout_success_url.replace("success=true", "success=true&trial_ended=true"),
                    self.config.portal_return_url + "?canceled=true",
                    metadata={"user_id": user_id, "plan": plan, "end_trial_early": "true"},
                    trial_end=None,
                )
            logger.info("[billing] end-trial checkout session created", extra={"user_id": user_id})
            return CheckoutResult(url=url, status=entitlement.status.value)

        with _provider_errors("end_trial", user_id):
            subscription = self.provider.end_trial(entitlement.billing_subscription_ref)

        def upgrade(current: Entitlement) -> Entitlement:
            moved = apply_transition(current, EventKind.TRIAL_UPGRADED)
            if moved.status != SubscriptionStatus.ACTIVE:
                return current
            updates: Dict[str, Any] = {"trial_ends_at": now}
            if subscription.current_period_end is not None:
                updates["subscription_ends_at"] = subscription.current_period_end
            moved = mark_trial_used(moved).model_copy(update=updates)
            return reset_usage_for_period(moved, subscription.current_period_start or now)

        updated = self.store.update(user_id, upgrade)
        logger.info(
            "[billing] trial ended early",
            extra={"user_id": user_id, "subscription_ref": subscription.id, "status": updated.status.value},
        )
        return CheckoutResult(url=self.config.portal_return_url, status=updated.status.value)

    def open_portal(self, user_id: str) -> str:
        entitlement = self.store.require(user_id)
        customer_ref = self._ensure_customer(entitlement)
        with _provider_errors("portal", user_id):
            url = self.provider.create_portal_session(customer_ref, self.config.portal_return_url)
        logger.info("[billing] portal session created", extra={"user_id": user_id})
        return url

    def cancel_subscription(self, user_id: str, now: Optional[datetime] = None) -> datetime:
        """Cancel immediately. Returns the cancellation time."""
        now = now or utc_now()
        entitlement = self.store.require(user_id)
        subscription_ref = entitlement.billing_subscription_ref

        if entitlement.status == SubscriptionStatus.TRIALING:
            if subscription_ref:
                with _provider_errors("cancel", user_id):
                    self.provider.cancel_subscription(subscription_ref)
            end_field = "trial_ends_at"
        elif entitlement.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE) and subscription_ref:
            with _provider_errors("cancel", user_id):
                self.provider.cancel_subscription(subscription_ref)
            end_field = "subscription_ends_at"
        else:
            raise ValidationError(
                "No active subscription or trial to cancel",
                details={"status": entitlement.status.value},
            )

        def cancel(current: Entitlement) -> Entitlement:
            moved = apply_transition(current, EventKind.USER_CANCELLED)
            if moved.status != SubscriptionStatus.CANCELLED or moved is current:
                return current
            return mark_trial_used(moved).model_copy(update={end_field: now})

        self.store.update(user_id, cancel)
        logger.info("[billing] subscription cancelled", extra={"user_id": user_id, "previous_status": entitlement.status.value})
        return now

    def restart_subscription(self, user_id: str, plan: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Start a new subscription for a cancelled user with a card on file."""
        plan = self._require_plan(plan)
        now = now or utc_now()
        entitlement = self.store.require(user_id)
        if entitlement.status != SubscriptionStatus.CANCELLED:
            raise ValidationError(
                "Only cancelled subscriptions can be restarted",
                details={"status": entitlement.status.value},
            )

        customer_ref = entitlement.billing_customer_ref
        if not customer_ref:
            raise ValidationError(
                "No payment method on file. Please add a payment method first.",
                details={"requires_payment_method": True},
            )

        with _provider_errors("restart", user_id):
            payment_method = self.provider.default_payment_method(customer_ref)
            if payment_method is None:
                raise ValidationError(
                    "No payment method on file. Please add a payment method first.",
                    details={"requires_payment_method": True},
                )
            try:
                subscription = self.provider.create_subscription(
                    customer_ref,
                    self.config.premium_price_id,
                    payment_method,
                    metadata={"user_id": user_id, "plan": plan, "restarted_subscription": "true"},
                )
            except BillingPaymentError as e:
                raise ValidationError(
                    "Payment failed. Please update your payment method.",
                    details={"requires_payment_method": True},
                ) from e

        provider_status = map_provider_status(subscription.status)

        def restart(current: Entitlement) -> Entitlement:
            moved = apply_transition(current, EventKind.SUBSCRIPTION_RESTARTED, provider_status)
            if current.status != SubscriptionStatus.CANCELLED:
                return current
            updates: Dict[str, Any] = {"billing_subscription_ref": subscription.id}
            if subscription.current_period_end is not None:
                updates["subscription_ends_at"] = subscription.current_period_end
            moved = moved.model_copy(update=updates)
            return reset_usage_for_period(moved, subscription.current_period_start or now)

        updated = self.store.update(user_id, restart)
        logger.info(
            "[billing] subscription restarted",
            extra={"user_id": user_id, "subscription_ref": subscription.id, "status": updated.status.value},
        )
        return {
            "success": True,
            "message": "Premium subscription restarted successfully",
            "subscription": {
                "id": subscription.id,
                "status": updated.status.value,
                "plan": updated.plan.value,
                "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
            },
        }

    def get_subscription(self, user_id: str) -> Dict[str, Any]:
        entitlement = self.store.require(user_id)
        return {
            "status": entitlement.status.value,
            "plan": entitlement.plan.value,
            "has_access": entitlement.has_access,
            "has_had_trial": entitlement.has_had_trial,
            "trial_ends_at": entitlement.trial_ends_at.isoformat() if entitlement.trial_ends_at else None,
            "subscription_ends_at": entitlement.subscription_ends_at.isoformat() if entitlement.subscription_ends_at else None,
            "usage": self.ledger.usage_snapshot(entitlement),
        }

    def list_plans(self) -> Dict[str, Any]:
        return list_plans(self.config)


def list_plans(config: EntitlementConfig) -> Dict[str, Any]:
    """Plan descriptors; usable without a configured provider."""
    return {
        "plans": [
            {
                "id": "trial",
                "name": "Free Trial",
                "price": 0,
                "currency": config.currency,
                "generations": config.quota("trial"),
                "duration_days": config.trial_days,
            },
            {
                "id": "premium",
                "name": "Premium",
                "price": config.premium_price,
                "currency": config.currency,
                "generations": config.quota("premium"),
                "interval": "month",
            },
        ]
    }
