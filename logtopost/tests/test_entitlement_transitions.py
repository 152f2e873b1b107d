"""
Entitlement state machine: provider status mapping, transition table and the
pure helpers built on it. No I/O.
"""
from datetime import datetime, timedelta, timezone

import pytest

from logtopost.features.entitlements.transitions import (
    FROM_PROVIDER,
    TRANSITIONS,
    EventKind,
    apply_transition,
    is_allowed,
    is_stale,
    map_provider_status,
    mark_trial_used,
    next_status,
    plan_for_status,
    record_event_time,
    reset_usage_for_period,
)
from logtopost.models.entitlement import Entitlement, Plan, SubscriptionStatus

S = SubscriptionStatus
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _ent(status=S.TRIALING, **fields):
    return Entitlement(user_id="u1", status=status, plan=plan_for_status(status), **fields)


@pytest.mark.parametrize("provider_status,expected", [
    ("trialing", S.TRIALING),
    ("active", S.ACTIVE),
    ("past_due", S.PAST_DUE),
    ("unpaid", S.PAST_DUE),
    ("incomplete", S.PAST_DUE),
    ("canceled", S.CANCELLED),
    ("cancelled", S.CANCELLED),
    ("incomplete_expired", S.CANCELLED),
    ("ACTIVE", S.ACTIVE),
])
def test_map_provider_status_known_values(provider_status, expected):
    assert map_provider_status(provider_status) == expected


def test_map_provider_status_unknown_is_past_due():
    assert map_provider_status("brand_new_status") == S.PAST_DUE
    assert map_provider_status(None) == S.PAST_DUE


def test_plan_follows_status():
    assert plan_for_status(S.TRIALING) == Plan.TRIAL
    assert plan_for_status(S.NO_SUBSCRIPTION) == Plan.NONE
    for status in (S.ACTIVE, S.PAST_DUE, S.CANCELLED, S.LIFETIME):
        assert plan_for_status(status) == Plan.PREMIUM


def test_every_provider_event_allowed_from_every_ordinary_status():
    provider_kinds = [
        EventKind.CHECKOUT_COMPLETED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
        EventKind.INVOICE_PAYMENT_SUCCEEDED,
        EventKind.INVOICE_PAYMENT_FAILED,
    ]
    for status in S:
        for kind in provider_kinds:
            assert is_allowed(status, kind), (status, kind)


def test_from_provider_requires_provider_status():
    assert TRANSITIONS[(S.TRIALING, EventKind.SUBSCRIPTION_UPDATED)] is FROM_PROVIDER
    with pytest.raises(ValueError):
        next_status(S.TRIALING, EventKind.SUBSCRIPTION_UPDATED)
    assert next_status(S.TRIALING, EventKind.SUBSCRIPTION_UPDATED, S.ACTIVE) == S.ACTIVE


def test_payment_failure_does_not_revive_cancelled():
    assert next_status(S.CANCELLED, EventKind.INVOICE_PAYMENT_FAILED) == S.CANCELLED
    assert next_status(S.ACTIVE, EventKind.INVOICE_PAYMENT_FAILED) == S.PAST_DUE


def test_user_actions_limited_to_sensible_sources():
    assert next_status(S.TRIALING, EventKind.TRIAL_UPGRADED) == S.ACTIVE
    assert next_status(S.ACTIVE, EventKind.TRIAL_UPGRADED) is None
    assert next_status(S.CANCELLED, EventKind.USER_CANCELLED) is None
    assert next_status(S.NO_SUBSCRIPTION, EventKind.USER_CANCELLED) is None
    assert next_status(S.ACTIVE, EventKind.SUBSCRIPTION_RESTARTED) is None
    assert next_status(S.CANCELLED, EventKind.SUBSCRIPTION_RESTARTED, S.ACTIVE) == S.ACTIVE
    assert next_status(S.ACTIVE, EventKind.TRIAL_REVOKED) is None


def test_lifetime_is_sticky_for_every_event():
    for kind in EventKind:
        assert next_status(S.LIFETIME, kind, S.CANCELLED) == S.LIFETIME


def test_apply_transition_keeps_plan_consistent():
    moved = apply_transition(_ent(S.TRIALING), EventKind.SUBSCRIPTION_UPDATED, S.ACTIVE)
    assert moved.status == S.ACTIVE
    assert moved.plan == Plan.PREMIUM
    assert moved.invariant_violations() == []

    back = apply_transition(moved, EventKind.SUBSCRIPTION_UPDATED, S.TRIALING)
    assert back.plan == Plan.TRIAL


def test_apply_transition_disallowed_returns_same_object():
    ent = _ent(S.CANCELLED)
    assert apply_transition(ent, EventKind.USER_CANCELLED) is ent


def test_reset_usage_is_a_point_operation():
    period = NOW - timedelta(days=1)
    ent = _ent(S.ACTIVE, generations_used_this_period=42, usage_period_start=period - timedelta(days=30))

    reset = reset_usage_for_period(ent, period)
    assert reset.generations_used_this_period == 0
    assert reset.usage_period_start == period

    used_again = reset.model_copy(update={"generations_used_this_period": 3})
    assert reset_usage_for_period(used_again, period) is used_again
    assert reset_usage_for_period(used_again, period - timedelta(days=3)) is used_again
    assert reset_usage_for_period(used_again, None) is used_again


def test_reset_usage_from_null_period():
    ent = _ent(S.ACTIVE, generations_used_this_period=7)
    assert reset_usage_for_period(ent, NOW).generations_used_this_period == 0


def test_mark_trial_used_is_monotonic():
    ent = _ent(S.TRIALING)
    used = mark_trial_used(ent)
    assert used.has_had_trial is True
    assert mark_trial_used(used) is used


def test_stale_guard_and_event_time():
    ent = _ent(S.ACTIVE, last_event_at=NOW)
    assert is_stale(ent, NOW - timedelta(seconds=1))
    assert not is_stale(ent, NOW)
    assert not is_stale(ent, None)
    assert not is_stale(_ent(S.ACTIVE), NOW)

    assert record_event_time(ent, NOW - timedelta(hours=1)) is ent
    assert record_event_time(ent, NOW + timedelta(hours=1)).last_event_at == NOW + timedelta(hours=1)


def test_invariant_violations_reported():
    bad = Entitlement(user_id="u1", status=S.ACTIVE, plan=Plan.TRIAL)
    assert bad.invariant_violations()
    bad_trial = Entitlement(user_id="u1", status=S.TRIALING, plan=Plan.PREMIUM)
    assert bad_trial.invariant_violations()
