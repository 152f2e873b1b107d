"""
logtopost/models/entitlement.py

Entitlement record: subscription status, plan, usage counter and trial
markers for one user, plus the closed enums they are expressed in.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    NO_SUBSCRIPTION = "no_subscription"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    # Administrative override: unrestricted, unmetered access.
    LIFETIME = "lifetime"


class Plan(str, Enum):
    NONE = "none"
    TRIAL = "trial"
    PREMIUM = "premium"


# Statuses that pass the quota gate (subject to the plan limit).
ACCESS_STATUSES = frozenset({SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE})

# Statuses that bypass the quota gate entirely.
PRIVILEGED_STATUSES = frozenset({SubscriptionStatus.LIFETIME})


class Entitlement(BaseModel):
    """
    Persisted entitlement row for one user.

    Invariants:
    - status ACTIVE or LIFETIME implies plan PREMIUM
    - status TRIALING implies plan TRIAL
    - has_had_trial never goes back to False
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    status: SubscriptionStatus
    plan: Plan
    generations_used_this_period: int = 0
    usage_period_start: Optional[datetime] = None
    has_had_trial: bool = False
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    last_event_at: Optional[datetime] = None
    version: int = 1

    def invariant_violations(self) -> List[str]:
        problems = []
        if self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.LIFETIME) and self.plan != Plan.PREMIUM:
            problems.append(f"status {self.status.value} requires plan premium, got {self.plan.value}")
        if self.status == SubscriptionStatus.TRIALING and self.plan != Plan.TRIAL:
            problems.append(f"status trialing requires plan trial, got {self.plan.value}")
        if self.generations_used_this_period < 0:
            problems.append("generations_used_this_period must be non-negative")
        return problems

    @property
    def has_access(self) -> bool:
        return self.status in ACCESS_STATUSES or self.status in PRIVILEGED_STATUSES
