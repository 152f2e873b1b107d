"""
logtopost/features/trials/service.py

Trial Eligibility Evaluator.

Handles:
- One-shot eligibility check at registration (provider subscription history by email)
- Fail-open on provider errors, flagged for later review
- Reconciliation of flagged registrations (revokes trials granted by mistake)
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from sqlalchemy import insert, select, update

from logtopost.core.config import EntitlementConfig
from logtopost.core.database import get_db_session, trial_eligibility_reviews
from logtopost.core.logging import log_event
from logtopost.core.metrics import trial_eligibility_fail_open_total, trial_revocations_total
from logtopost.features.billing.provider import BillingProvider, BillingProviderError
from logtopost.features.entitlements.store import EntitlementStore, utc_now
from logtopost.features.entitlements.transitions import (
    EventKind,
    apply_transition,
    mark_trial_used,
)
from logtopost.features.users.service import get_user_by_email
from logtopost.models.entitlement import Entitlement, SubscriptionStatus
from logtopost.models.user import User


logger = logging.getLogger(__name__)


def revoke_trial(current: Entitlement) -> Entitlement:
    """Withdraw a local trial that should never have been granted."""
    if current.status != SubscriptionStatus.TRIALING or current.billing_subscription_ref is not None:
        return current
    moved = apply_transition(current, EventKind.TRIAL_REVOKED)
    return mark_trial_used(moved).model_copy(update={"trial_ends_at": None})


class TrialEligibilityEvaluator:
    """Decides whether an email may start a free trial."""

    def __init__(
        self,
        config: EntitlementConfig,
        provider: Optional[BillingProvider],
        store: Optional[EntitlementStore] = None,
    ):
        self.config = config
        self.provider = provider
        self.store = store

    def is_eligible_for_trial(self, email: str) -> bool:
        """False when any provider customer with this email ever held a subscription.

        Provider failure fails open: the registration gets a trial and is
        flagged for reconcile_flagged to re-check.
        """
        email = User.normalize_email(email)
        if self.provider is None:
            logger.debug("[trials] billing disabled, skipping history check")
            return True

        try:
            has_history = self.provider.has_subscription_history(email)
        except BillingProviderError as e:
            self._flag(email, str(e))
            trial_eligibility_fail_open_total.inc()
            log_event("warning", "[trials] eligibility check failed open", error_code="provider_unavailable",
                      extra={"error_message": str(e)})
            return True

        if has_history:
            logger.info("[trials] previous subscription history found, trial denied")
            return False
        return True

    def _flag(self, email: str, reason: str) -> None:
        with get_db_session() as session:
            session.execute(
                insert(trial_eligibility_reviews).values(email=email, reason=reason[:500], created_at=utc_now())
            )

    def reconcile_flagged(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Re-check registrations whose eligibility failed open."""
        now = now or utc_now()
        summary = {"checked": 0, "revoked": 0, "eligible": 0, "errors": 0}
        if self.provider is None or self.store is None:
            return summary

        with get_db_session() as session:
            rows = session.execute(
                select(trial_eligibility_reviews.c.id, trial_eligibility_reviews.c.email)
                .where(trial_eligibility_reviews.c.resolved_at.is_(None))
                .order_by(trial_eligibility_reviews.c.created_at)
            ).fetchall()

        for row in rows:
            summary["checked"] += 1
            try:
                has_history = self.provider.has_subscription_history(row.email)
            except BillingProviderError as e:
                summary["errors"] += 1
                logger.warning("[trials] review check failed, will retry", extra={"review_id": row.id, "error_message": str(e)})
                continue

            resolution = "eligible"
            user = get_user_by_email(row.email)
            if has_history and user is not None:
                before = self.store.get(user.id)
                after = self.store.update(user.id, revoke_trial)
                if before is not None and after.status != before.status:
                    resolution = "revoked"
                    trial_revocations_total.inc()
                    log_event("info", "[trials] trial revoked after review", user_id=user.id)

            with get_db_session() as session:
                session.execute(
                    update(trial_eligibility_reviews)
                    .where(trial_eligibility_reviews.c.id == row.id)
                    .values(user_id=user.id if user else None, resolved_at=now, resolution=resolution)
                )
            summary[resolution] += 1

        logger.info("[trials] review reconciliation complete", extra=summary)
        return summary
