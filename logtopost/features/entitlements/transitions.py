"""
logtopost/features/entitlements/transitions.py

Pure entitlement state machine.

- map_provider_status: the one place provider status strings become local statuses
- TRANSITIONS: (current status, event kind) -> next status
- apply_transition / reset_usage_for_period / mark_trial_used: pure helpers
  producing the next Entitlement from the current one

Nothing here touches the database or the billing provider.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from logtopost.models.entitlement import (
    Entitlement,
    Plan,
    PRIVILEGED_STATUSES,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Every way an entitlement status can change."""
    # Provider webhooks (authoritative)
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    # Synchronous user actions (provisional)
    TRIAL_UPGRADED = "trial_upgraded"
    USER_CANCELLED = "user_cancelled"
    SUBSCRIPTION_RESTARTED = "subscription_restarted"
    # Reconciliation of fail-open trial grants
    TRIAL_REVOKED = "trial_revoked"


class _FromProvider:
    """Sentinel: the next status is whatever the provider currently reports."""

    def __repr__(self) -> str:
        return "FROM_PROVIDER"


FROM_PROVIDER = _FromProvider()

_PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


def map_provider_status(provider_status: Optional[str]) -> SubscriptionStatus:
    """Map a provider subscription status onto the local status enum.

    Unknown values land on PAST_DUE: no access, but recoverable by the next
    event that reports a known status.
    """
    status = _PROVIDER_STATUS_MAP.get((provider_status or "").lower())
    if status is None:
        logger.warning(
            "[entitlements] unknown provider status, treating as past_due",
            extra={"provider_status": provider_status},
        )
        return SubscriptionStatus.PAST_DUE
    return status


def plan_for_status(status: SubscriptionStatus) -> Plan:
    if status == SubscriptionStatus.TRIALING:
        return Plan.TRIAL
    if status == SubscriptionStatus.NO_SUBSCRIPTION:
        return Plan.NONE
    return Plan.PREMIUM


Target = Union[SubscriptionStatus, _FromProvider]

_NON_PRIVILEGED = tuple(s for s in SubscriptionStatus if s not in PRIVILEGED_STATUSES)


def _build_transitions() -> Dict[Tuple[SubscriptionStatus, EventKind], Target]:
    table: Dict[Tuple[SubscriptionStatus, EventKind], Target] = {}

    for current in _NON_PRIVILEGED:
        table[(current, EventKind.CHECKOUT_COMPLETED)] = FROM_PROVIDER
        table[(current, EventKind.SUBSCRIPTION_UPDATED)] = FROM_PROVIDER
        table[(current, EventKind.SUBSCRIPTION_DELETED)] = SubscriptionStatus.CANCELLED
        table[(current, EventKind.INVOICE_PAYMENT_SUCCEEDED)] = SubscriptionStatus.ACTIVE
        table[(current, EventKind.INVOICE_PAYMENT_FAILED)] = SubscriptionStatus.PAST_DUE

    # A failed retry on an already-deleted subscription must not revive it
    table[(SubscriptionStatus.CANCELLED, EventKind.INVOICE_PAYMENT_FAILED)] = SubscriptionStatus.CANCELLED

    table[(SubscriptionStatus.TRIALING, EventKind.TRIAL_UPGRADED)] = SubscriptionStatus.ACTIVE
    for current in (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
        table[(current, EventKind.USER_CANCELLED)] = SubscriptionStatus.CANCELLED
    table[(SubscriptionStatus.CANCELLED, EventKind.SUBSCRIPTION_RESTARTED)] = FROM_PROVIDER
    table[(SubscriptionStatus.TRIALING, EventKind.TRIAL_REVOKED)] = SubscriptionStatus.CANCELLED

    # Administrative overrides are sticky
    for privileged in PRIVILEGED_STATUSES:
        for kind in EventKind:
            table[(privileged, kind)] = privileged

    return table


TRANSITIONS = _build_transitions()


def next_status(
    current: SubscriptionStatus,
    kind: EventKind,
    provider_status: Optional[SubscriptionStatus] = None,
) -> Optional[SubscriptionStatus]:
    """Look up the next status, or None when the transition is not allowed."""
    target = TRANSITIONS.get((current, kind))
    if target is None:
        return None
    if target is FROM_PROVIDER:
        if provider_status is None:
            raise ValueError(f"{kind.value} requires the provider-reported status")
        return provider_status
    return target


def is_allowed(current: SubscriptionStatus, kind: EventKind) -> bool:
    return (current, kind) in TRANSITIONS


def apply_transition(
    entitlement: Entitlement,
    kind: EventKind,
    provider_status: Optional[SubscriptionStatus] = None,
) -> Entitlement:
    """Return the entitlement with status and plan moved by ``kind``.

    Disallowed transitions return the entitlement unchanged. The plan always
    follows the resulting status so the status/plan invariants hold.
    """
    status = next_status(entitlement.status, kind, provider_status)
    if status is None:
        return entitlement
    plan = plan_for_status(status)
    if status == entitlement.status and plan == entitlement.plan:
        return entitlement
    return entitlement.model_copy(update={"status": status, "plan": plan})


def reset_usage_for_period(entitlement: Entitlement, period_start: Optional[datetime]) -> Entitlement:
    """Point reset: start the period beginning at ``period_start``.

    Applies only when the stored period is older, so repeating the same reset
    (redelivery, or two events announcing the same period) leaves usage
    recorded since the first one intact.
    """
    if period_start is None:
        return entitlement
    current = entitlement.usage_period_start
    if current is not None and current >= period_start:
        return entitlement
    return entitlement.model_copy(
        update={"generations_used_this_period": 0, "usage_period_start": period_start}
    )


def mark_trial_used(entitlement: Entitlement) -> Entitlement:
    if entitlement.has_had_trial:
        return entitlement
    return entitlement.model_copy(update={"has_had_trial": True})


def is_stale(entitlement: Entitlement, occurred_at: Optional[datetime]) -> bool:
    """True when an event predates the newest provider event already applied."""
    if occurred_at is None or entitlement.last_event_at is None:
        return False
    return occurred_at < entitlement.last_event_at


def record_event_time(entitlement: Entitlement, occurred_at: Optional[datetime]) -> Entitlement:
    if occurred_at is None:
        return entitlement
    if entitlement.last_event_at is not None and entitlement.last_event_at >= occurred_at:
        return entitlement
    return entitlement.model_copy(update={"last_event_at": occurred_at})
