"""
logtopost/features/usage/service.py

Usage Ledger: the quota gate in front of every generation.

Handles:
- Gate decision (check_and_consume) from the stored entitlement
- Commit of one generation after the metered action succeeded (record_usage)
- Scheduled period reset (reset_period_usage)
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional
import logging

from logtopost.core.config import EntitlementConfig
from logtopost.core.errors import AppError, LimitReachedError, SubscriptionRequiredError
from logtopost.core.metrics import (
    billing_last_reset_users,
    generations_recorded_total,
    quota_denials_total,
    usage_resets_total,
)
from logtopost.features.entitlements.store import EntitlementStore, utc_now
from logtopost.features.entitlements.transitions import reset_usage_for_period
from logtopost.models.entitlement import (
    ACCESS_STATUSES,
    PRIVILEGED_STATUSES,
    Entitlement,
    Plan,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)


class DenyReason(str, Enum):
    SUBSCRIPTION_REQUIRED = "subscription_required"
    LIMIT_REACHED = "limit_reached"


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    plan: Plan
    used: int
    limit: Optional[int]
    reason: Optional[DenyReason] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def unmetered(self) -> bool:
        return self.allowed and self.limit is None

    def to_error(self) -> AppError:
        """Translate a denial into the error surfaced to the caller."""
        details = {
            "plan": self.plan.value,
            "used": self.used,
            "limit": self.limit,
            "upgrade_required": self.plan != Plan.PREMIUM,
        }
        details.update(self.details)
        if self.reason == DenyReason.LIMIT_REACHED:
            return LimitReachedError(
                f"You have used all {self.limit} generations for this period",
                details=details,
            )
        return SubscriptionRequiredError("An active subscription or trial is required", details=details)


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class UsageLedger:
    """Quota gate backed by the entitlement row's period counter."""

    def __init__(self, config: EntitlementConfig, store: EntitlementStore):
        self.config = config
        self.store = store

    def check_and_consume(self, user_id: str, now: Optional[datetime] = None) -> UsageDecision:
        """Decide whether ``user_id`` may perform one metered generation.

        Nothing is written here; the generation is committed by record_usage
        once the action succeeded.
        """
        now = now or utc_now()
        entitlement = self.store.require(user_id)
        decision = self._decide(entitlement, now)

        if decision.allowed:
            logger.info(
                "[usage] ALLOWED",
                extra={"user_id": user_id, "plan": decision.plan.value, "used": decision.used, "limit": decision.limit},
            )
        else:
            quota_denials_total.inc(labels={"reason": decision.reason.value})
            logger.info(
                "[usage] DENIED",
                extra={"user_id": user_id, "plan": decision.plan.value, "reason": decision.reason.value},
            )
        return decision

    def _decide(self, entitlement: Entitlement, now: datetime) -> UsageDecision:
        used = entitlement.generations_used_this_period
        plan = entitlement.plan

        if entitlement.status in PRIVILEGED_STATUSES:
            return UsageDecision(allowed=True, plan=plan, used=used, limit=None)

        limit = self.config.quota(plan.value)
        if entitlement.status not in ACCESS_STATUSES:
            return UsageDecision(
                allowed=False, plan=plan, used=used, limit=limit,
                reason=DenyReason.SUBSCRIPTION_REQUIRED,
                details={"status": entitlement.status.value},
            )

        if (
            entitlement.status == SubscriptionStatus.TRIALING
            and entitlement.trial_ends_at is not None
            and entitlement.trial_ends_at <= now
        ):
            return UsageDecision(
                allowed=False, plan=plan, used=used, limit=limit,
                reason=DenyReason.SUBSCRIPTION_REQUIRED,
                details={"status": entitlement.status.value, "trial_expired": True},
            )

        if used >= limit:
            return UsageDecision(
                allowed=False, plan=plan, used=used, limit=limit,
                reason=DenyReason.LIMIT_REACHED,
            )

        return UsageDecision(allowed=True, plan=plan, used=used, limit=limit)

    def record_usage(self, user_id: str) -> bool:
        """Commit one generation. Returns False when the quota was already used up.

        Privileged users are unmetered and never incremented.
        """
        entitlement = self.store.require(user_id)
        if entitlement.status in PRIVILEGED_STATUSES:
            return True

        limit = self.config.quota(entitlement.plan.value)
        recorded = self.store.increment_usage(user_id, limit, ACCESS_STATUSES)
        if recorded:
            generations_recorded_total.inc(labels={"plan": entitlement.plan.value})
        else:
            logger.warning(
                "[usage] increment rejected at quota",
                extra={"user_id": user_id, "plan": entitlement.plan.value, "limit": limit},
            )
        return recorded

    @contextmanager
    def metered(self, user_id: str) -> Iterator[UsageDecision]:
        """Gate a block of work and record it only when the block succeeds.

        Raises SubscriptionRequiredError / LimitReachedError on denial.
        """
        decision = self.check_and_consume(user_id)
        if not decision.allowed:
            raise decision.to_error()
        yield decision
        self.record_usage(user_id)

    def usage_snapshot(self, entitlement: Entitlement) -> Dict[str, Any]:
        used = entitlement.generations_used_this_period
        if entitlement.status in PRIVILEGED_STATUSES:
            return {"used": used, "limit": None, "remaining": None, "percentage": 0}
        limit = self.config.quota(entitlement.plan.value)
        remaining = max(limit - used, 0)
        percentage = round(min(used / limit, 1.0) * 100) if limit else 0
        return {"used": used, "limit": limit, "remaining": remaining, "percentage": percentage}

    def reset_period_usage(self, now: Optional[datetime] = None) -> int:
        """Scheduled reset for the calendar period containing ``now``.

        Users without a billing subscription start the month's period.
        Subscription-backed users are reset by renewal invoices; here they are
        only caught up when their period is older than usage_period_days.
        """
        now = now or utc_now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        period_start = month_start(now)
        overdue_before = now - timedelta(days=self.config.usage_period_days)

        reset_count = 0
        for entitlement in self.store.list_by_status(ACCESS_STATUSES):
            if entitlement.billing_subscription_ref is None:
                target = period_start
                source = "calendar"
            else:
                stored = entitlement.usage_period_start
                if stored is not None and stored >= overdue_before:
                    continue
                target = now
                source = "overdue"

            before = entitlement.version
            updated = self.store.update(
                entitlement.user_id,
                lambda current, target=target: self._reset_if_eligible(current, target, overdue_before),
            )
            if updated.version != before:
                reset_count += 1
                usage_resets_total.inc(labels={"source": source})

        billing_last_reset_users.set(reset_count)
        logger.info(
            "[usage] period reset complete",
            extra={"period_start": period_start.isoformat(), "reset_count": reset_count},
        )
        return reset_count

    @staticmethod
    def _reset_if_eligible(current: Entitlement, target: datetime, overdue_before: datetime) -> Entitlement:
        if current.status not in ACCESS_STATUSES:
            return current
        if current.billing_subscription_ref is not None:
            stored = current.usage_period_start
            if stored is not None and stored >= overdue_before:
                return current
        return reset_usage_for_period(current, target)
