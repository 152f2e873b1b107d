"""
Trial eligibility at registration, fail-open flagging and reconciliation.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from logtopost.core.database import get_db_session, trial_eligibility_reviews
from logtopost.core.errors import ConflictError, ValidationError
from logtopost.core.metrics import trial_eligibility_fail_open_total, trial_revocations_total
from logtopost.features.trials.service import TrialEligibilityEvaluator, revoke_trial
from logtopost.features.users.service import get_user_by_email, register_user
from logtopost.models.entitlement import Plan, SubscriptionStatus
from logtopost.tests.mocks import T0


def _register(email, entitlement_config, store, evaluator, password="correct-horse"):
    return register_user(email, password, config=entitlement_config, store=store, evaluator=evaluator, now=T0)


def _reviews():
    with get_db_session() as session:
        return session.execute(select(trial_eligibility_reviews)).fetchall()


def test_new_email_is_eligible(evaluator):
    assert evaluator.is_eligible_for_trial("fresh@example.com") is True


def test_previous_subscriber_is_not_eligible(evaluator, fake_provider):
    fake_provider.history_emails.add("returning@example.com")
    assert evaluator.is_eligible_for_trial("Returning@Example.com ") is False


def test_billing_disabled_is_eligible(entitlement_config):
    assert TrialEligibilityEvaluator(entitlement_config, None).is_eligible_for_trial("a@example.com") is True


def test_provider_failure_fails_open_and_flags(evaluator, fake_provider):
    fake_provider.failing.add("has_subscription_history")
    assert evaluator.is_eligible_for_trial("flaky@example.com") is True

    rows = _reviews()
    assert len(rows) == 1
    assert rows[0].email == "flaky@example.com"
    assert rows[0].resolved_at is None
    assert trial_eligibility_fail_open_total.value() == 1


def test_register_eligible_user_starts_trial(entitlement_config, store, evaluator):
    user, ent = _register("New@Example.com", entitlement_config, store, evaluator)
    assert user.email == "new@example.com"
    assert ent.status == SubscriptionStatus.TRIALING
    assert ent.plan == Plan.TRIAL
    assert ent.has_had_trial is False
    assert ent.trial_ends_at == T0 + timedelta(days=entitlement_config.trial_days)
    assert ent.generations_used_this_period == 0
    assert store.get(user.id).status == SubscriptionStatus.TRIALING


def test_register_previous_subscriber_gets_no_trial(entitlement_config, store, evaluator, fake_provider):
    fake_provider.history_emails.add("returning@example.com")
    user, ent = _register("returning@example.com", entitlement_config, store, evaluator)
    assert ent.status == SubscriptionStatus.CANCELLED
    assert ent.plan == Plan.PREMIUM
    assert ent.has_had_trial is True
    assert ent.trial_ends_at is None


def test_register_duplicate_email_conflicts(entitlement_config, store, evaluator):
    _register("dup@example.com", entitlement_config, store, evaluator)
    with pytest.raises(ConflictError):
        _register("DUP@example.com", entitlement_config, store, evaluator)


@pytest.mark.parametrize("email,password", [
    ("not-an-email", "long-enough"),
    ("ok@example.com", "short"),
    ("ok@example.com", ""),
])
def test_register_validates_input(entitlement_config, store, evaluator, email, password):
    with pytest.raises(ValidationError):
        _register(email, entitlement_config, store, evaluator, password=password)
    assert get_user_by_email("ok@example.com") is None


def test_reconcile_revokes_trial_granted_by_mistake(entitlement_config, store, evaluator, fake_provider):
    fake_provider.failing.add("has_subscription_history")
    user, ent = _register("abuser@example.com", entitlement_config, store, evaluator)
    assert ent.status == SubscriptionStatus.TRIALING

    fake_provider.failing.clear()
    fake_provider.history_emails.add("abuser@example.com")
    summary = evaluator.reconcile_flagged(now=T0 + timedelta(hours=1))

    assert summary == {"checked": 1, "revoked": 1, "eligible": 0, "errors": 0}
    revoked = store.get(user.id)
    assert revoked.status == SubscriptionStatus.CANCELLED
    assert revoked.plan == Plan.PREMIUM
    assert revoked.has_had_trial is True
    assert revoked.trial_ends_at is None
    assert trial_revocations_total.value() == 1

    row = _reviews()[0]
    assert row.resolution == "revoked"
    assert row.user_id == user.id

    # Resolved rows are not checked again
    assert evaluator.reconcile_flagged()["checked"] == 0


def test_reconcile_keeps_genuinely_eligible_trial(entitlement_config, store, evaluator, fake_provider):
    fake_provider.failing.add("has_subscription_history")
    user, _ = _register("honest@example.com", entitlement_config, store, evaluator)

    fake_provider.failing.clear()
    summary = evaluator.reconcile_flagged()
    assert summary["eligible"] == 1
    assert store.get(user.id).status == SubscriptionStatus.TRIALING
    assert _reviews()[0].resolution == "eligible"


def test_reconcile_leaves_rows_open_while_provider_is_down(entitlement_config, store, evaluator, fake_provider):
    fake_provider.failing.add("has_subscription_history")
    _register("pending@example.com", entitlement_config, store, evaluator)

    summary = evaluator.reconcile_flagged()
    assert summary == {"checked": 1, "revoked": 0, "eligible": 0, "errors": 1}
    assert _reviews()[0].resolved_at is None


def test_revoke_trial_does_not_touch_subscribed_users(make_user):
    ent = make_user(SubscriptionStatus.TRIALING, billing_subscription_ref="sub_1")
    assert revoke_trial(ent) is ent
    active = make_user(SubscriptionStatus.ACTIVE)
    assert revoke_trial(active) is active
