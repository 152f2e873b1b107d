"""
logtopost/features/billing/webhooks.py

Webhook Event Processor: the authoritative writer of subscription status.

Handles:
- Dedup of redelivered events via billing_events
- One handler per event kind, each computing an absolute next state
- Stale-event guard for payload-snapshot events
- Failure semantics: storage/provider errors propagate (provider redelivers),
  unmatched events are acknowledged as dropped
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from logtopost.core.config import EntitlementConfig
from logtopost.core.database import billing_events, get_db_session
from logtopost.core.logging import bind_event, log_event, truncate_field
from logtopost.core.metrics import billing_webhook_events_total, billing_webhook_seconds
from logtopost.features.billing.provider import BillingEvent, BillingProvider
from logtopost.features.entitlements.store import EntitlementStore, utc_now
from logtopost.features.entitlements.transitions import (
    EventKind,
    apply_transition,
    is_stale,
    map_provider_status,
    mark_trial_used,
    record_event_time,
    reset_usage_for_period,
)
from logtopost.models.entitlement import (
    ACCESS_STATUSES,
    PRIVILEGED_STATUSES,
    Entitlement,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)

LIVE_STATUSES = ACCESS_STATUSES | {SubscriptionStatus.PAST_DUE}


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DROPPED = "dropped"
    DUPLICATE = "duplicate"


TERMINAL_ROW_STATUSES = frozenset({"processed", "ignored", "dropped"})


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: WebhookOutcome
    user_id: Optional[str] = None
    detail: Optional[str] = None


def _processed(user_id: str, detail: Optional[str] = None) -> WebhookResult:
    return WebhookResult("", "", WebhookOutcome.PROCESSED, user_id, detail)


def _ignored(detail: str, user_id: Optional[str] = None) -> WebhookResult:
    return WebhookResult("", "", WebhookOutcome.IGNORED, user_id, detail)


def _dropped(detail: str) -> WebhookResult:
    return WebhookResult("", "", WebhookOutcome.DROPPED, None, detail)


class WebhookProcessor:
    """Applies verified billing events to the entitlement store."""

    def __init__(self, config: EntitlementConfig, store: EntitlementStore, provider: BillingProvider):
        self.config = config
        self.store = store
        self.provider = provider
        self._handlers: Dict[EventKind, Callable[[BillingEvent, datetime], WebhookResult]] = {
            EventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            EventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            EventKind.INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_payment_succeeded,
            EventKind.INVOICE_PAYMENT_FAILED: self._on_invoice_payment_failed,
        }

    def process(self, event: BillingEvent, now: Optional[datetime] = None) -> WebhookResult:
        """Apply one event. Raises on transient failure so the provider redelivers."""
        started = time.perf_counter()
        try:
            with bind_event(event.event_id):
                return self._process(event, now or utc_now())
        finally:
            billing_webhook_seconds.observe(time.perf_counter() - started, labels={"event_type": event.event_type})

    def _process(self, event: BillingEvent, now: datetime) -> WebhookResult:
        previous = self._begin(event)
        if previous in TERMINAL_ROW_STATUSES:
            billing_webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": "duplicate"})
            log_event("info", "[webhook] duplicate delivery skipped", event_id=event.event_id, event_type=event.event_type,
                      extra={"previous_status": previous})
            return WebhookResult(event.event_id, event.event_type, WebhookOutcome.DUPLICATE, detail=previous)

        handler = self._handlers.get(event.kind) if event.kind else None
        try:
            if handler is None:
                outcome = _ignored(f"unhandled event type {event.event_type}")
            else:
                outcome = handler(event, now)
        except Exception as e:
            self._finish(event, "failed", None, f"{type(e).__name__}: {e}", now)
            billing_webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": "failed"})
            log_event("error", "[webhook] processing failed", event_id=event.event_id, event_type=event.event_type,
                      error_code=getattr(e, "code", type(e).__name__), extra={"error_message": str(e)})
            raise

        result = WebhookResult(event.event_id, event.event_type, outcome.outcome, outcome.user_id, outcome.detail)
        self._finish(event, result.outcome.value, result.user_id, result.detail, now)
        billing_webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": result.outcome.value})
        level = "warning" if result.outcome == WebhookOutcome.DROPPED else "info"
        log_event(level, f"[webhook] {result.outcome.value}", user_id=result.user_id, event_id=event.event_id,
                  event_type=event.event_type, extra={"detail": result.detail})
        return result

    # -- dedup bookkeeping ---------------------------------------------------

    def _begin(self, event: BillingEvent) -> Optional[str]:
        """Claim the event row. Returns the prior status when one exists."""
        try:
            with get_db_session() as session:
                existing = session.execute(
                    select(billing_events.c.status).where(billing_events.c.event_id == event.event_id)
                ).scalar()
                if existing is None:
                    session.execute(
                        insert(billing_events).values(
                            event_id=event.event_id,
                            event_type=event.event_type,
                            status="pending",
                            occurred_at=event.occurred_at,
                        )
                    )
                    return None
                if existing not in TERMINAL_ROW_STATUSES:
                    session.execute(
                        update(billing_events)
                        .where(billing_events.c.event_id == event.event_id)
                        .values(status="pending", detail=None)
                    )
                return existing
        except IntegrityError:
            # A concurrent delivery inserted the row first
            with get_db_session() as session:
                return session.execute(
                    select(billing_events.c.status).where(billing_events.c.event_id == event.event_id)
                ).scalar()

    def _finish(self, event: BillingEvent, status: str, user_id: Optional[str], detail: Optional[str], now: datetime) -> None:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.event_id == event.event_id)
                .values(
                    status=status,
                    user_id=user_id,
                    detail=truncate_field(detail) if detail else None,
                    processed_at=now,
                )
            )

    def prune_events(self, now: Optional[datetime] = None) -> int:
        """Delete event rows older than the dedup window."""
        now = now or utc_now()
        cutoff = now - timedelta(days=self.config.webhook_dedup_days)
        with get_db_session() as session:
            result = session.execute(delete(billing_events).where(billing_events.c.received_at < cutoff))
            pruned = result.rowcount or 0
        logger.info("[webhook] pruned billing events", extra={"pruned": pruned, "cutoff": cutoff.isoformat()})
        return pruned

    # -- handlers --------------------------------------------------------------

    def _on_checkout_completed(self, event: BillingEvent, now: datetime) -> WebhookResult:
        if event.mode != "subscription":
            return _ignored(f"checkout mode {event.mode}")
        if not event.subscription_ref:
            return _dropped("subscription checkout without subscription ref")

        entitlement = self.store.get(event.user_id) if event.user_id else None
        if entitlement is None:
            entitlement = self.store.find_by_customer_ref(event.customer_ref)
        if entitlement is None:
            return _dropped(f"no user for checkout (user_id={event.user_id}, customer={event.customer_ref})")

        # Provider truth, not the session snapshot
        subscription = self.provider.retrieve_subscription(event.subscription_ref)
        status = map_provider_status(subscription.status)
        customer_ref = subscription.customer_ref or event.customer_ref
        # a new checkout always opens a clean period, trial or paid
        period_start = subscription.current_period_start or event.occurred_at or now

        def apply(current: Entitlement) -> Entitlement:
            if current.status in PRIVILEGED_STATUSES:
                return current
            moved = apply_transition(current, EventKind.CHECKOUT_COMPLETED, status)
            updates: Dict[str, Any] = {"billing_subscription_ref": subscription.id}
            if current.billing_customer_ref is None and customer_ref:
                updates["billing_customer_ref"] = customer_ref
            if subscription.current_period_end is not None:
                updates["subscription_ends_at"] = subscription.current_period_end
            if status == SubscriptionStatus.TRIALING:
                moved = mark_trial_used(moved)
                if subscription.trial_end is not None:
                    updates["trial_ends_at"] = subscription.trial_end
            moved = moved.model_copy(update=updates)
            moved = reset_usage_for_period(moved, period_start)
            return record_event_time(moved, event.occurred_at)

        updated = self.store.update(entitlement.user_id, apply)
        return _processed(updated.user_id, f"status={updated.status.value}")

    def _locate_subscription_owner(self, event: BillingEvent):
        """Find the user by subscription ref, falling back to customer ref then metadata."""
        entitlement = self.store.find_by_subscription_ref(event.subscription_ref)
        if entitlement is not None:
            return entitlement, False
        entitlement = self.store.find_by_customer_ref(event.customer_ref)
        if entitlement is None and event.user_id:
            entitlement = self.store.get(event.user_id)
        return entitlement, entitlement is not None

    def _on_subscription_updated(self, event: BillingEvent, now: datetime) -> WebhookResult:
        entitlement, by_fallback = self._locate_subscription_owner(event)
        if entitlement is None:
            return _dropped(f"no user for subscription {event.subscription_ref}")

        status = map_provider_status(event.provider_status)
        superseded = (
            by_fallback
            and entitlement.billing_subscription_ref is not None
            and entitlement.billing_subscription_ref != event.subscription_ref
        )
        if superseded and status not in LIVE_STATUSES:
            return _dropped(
                f"{status.value} for superseded subscription {event.subscription_ref} "
                f"(current {entitlement.billing_subscription_ref})"
            )
        if is_stale(entitlement, event.occurred_at):
            return _ignored("stale event", entitlement.user_id)

        def apply(current: Entitlement) -> Entitlement:
            if current.status in PRIVILEGED_STATUSES or is_stale(current, event.occurred_at):
                return current
            moved = apply_transition(current, EventKind.SUBSCRIPTION_UPDATED, status)
            updates: Dict[str, Any] = {"billing_subscription_ref": event.subscription_ref}
            if current.billing_customer_ref is None and event.customer_ref:
                updates["billing_customer_ref"] = event.customer_ref
            if event.period_end is not None:
                updates["subscription_ends_at"] = event.period_end
            if status == SubscriptionStatus.TRIALING:
                moved = mark_trial_used(moved)
                if event.trial_end is not None:
                    updates["trial_ends_at"] = event.trial_end
            moved = moved.model_copy(update=updates)
            return record_event_time(moved, event.occurred_at)

        updated = self.store.update(entitlement.user_id, apply)
        return _processed(updated.user_id, f"status={updated.status.value}")

    def _on_subscription_deleted(self, event: BillingEvent, now: datetime) -> WebhookResult:
        entitlement = self.store.find_by_subscription_ref(event.subscription_ref)
        if entitlement is None:
            return _dropped(f"no user for deleted subscription {event.subscription_ref}")

        def apply(current: Entitlement) -> Entitlement:
            if current.status in PRIVILEGED_STATUSES:
                return current
            moved = apply_transition(current, EventKind.SUBSCRIPTION_DELETED)
            if current.status != SubscriptionStatus.CANCELLED or current.subscription_ends_at is None:
                moved = moved.model_copy(update={"subscription_ends_at": now})
            return record_event_time(moved, event.occurred_at)

        updated = self.store.update(entitlement.user_id, apply)
        return _processed(updated.user_id, f"status={updated.status.value}")

    def _locate_invoice_owner(self, event: BillingEvent) -> Optional[Entitlement]:
        entitlement = self.store.find_by_customer_ref(event.customer_ref)
        if entitlement is None:
            entitlement = self.store.find_by_subscription_ref(event.subscription_ref)
        return entitlement

    def _on_invoice_payment_succeeded(self, event: BillingEvent, now: datetime) -> WebhookResult:
        entitlement = self._locate_invoice_owner(event)
        if entitlement is None:
            return _dropped(f"no user for invoice (customer={event.customer_ref})")
        if is_stale(entitlement, event.occurred_at):
            return _ignored("stale event", entitlement.user_id)

        def apply(current: Entitlement) -> Entitlement:
            if current.status in PRIVILEGED_STATUSES or is_stale(current, event.occurred_at):
                return current
            moved = apply_transition(current, EventKind.INVOICE_PAYMENT_SUCCEEDED)
            updates: Dict[str, Any] = {}
            if event.subscription_ref:
                updates["billing_subscription_ref"] = event.subscription_ref
            if event.period_end is not None:
                updates["subscription_ends_at"] = event.period_end
            moved = moved.model_copy(update=updates)
            moved = reset_usage_for_period(moved, event.period_start or event.occurred_at or now)
            return record_event_time(moved, event.occurred_at)

        updated = self.store.update(entitlement.user_id, apply)
        return _processed(updated.user_id, f"status={updated.status.value}")

    def _on_invoice_payment_failed(self, event: BillingEvent, now: datetime) -> WebhookResult:
        entitlement = self._locate_invoice_owner(event)
        if entitlement is None:
            return _dropped(f"no user for failed invoice (customer={event.customer_ref})")
        if is_stale(entitlement, event.occurred_at):
            return _ignored("stale event", entitlement.user_id)

        def apply(current: Entitlement) -> Entitlement:
            if current.status in PRIVILEGED_STATUSES or is_stale(current, event.occurred_at):
                return current
            moved = apply_transition(current, EventKind.INVOICE_PAYMENT_FAILED)
            return record_event_time(moved, event.occurred_at)

        updated = self.store.update(entitlement.user_id, apply)
        return _processed(updated.user_id, f"status={updated.status.value}")
