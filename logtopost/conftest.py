# logtopost/conftest.py
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import insert

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from logtopost.core.config import EntitlementConfig
from logtopost.core.database import create_all_tables, drop_all_tables, get_db_session, init_engine, users
from logtopost.core.metrics import METRICS
from logtopost.features.billing.service import BillingService
from logtopost.features.billing.webhooks import WebhookProcessor
from logtopost.features.entitlements.store import EntitlementStore
from logtopost.features.trials.service import TrialEligibilityEvaluator
from logtopost.features.usage.service import UsageLedger
from logtopost.models.entitlement import Entitlement, Plan, SubscriptionStatus
from logtopost.tests.mocks import T0, FakeBillingProvider


@pytest.fixture(scope="function", autouse=True)
def sqlite_db():
    """Fresh in-memory database per test."""
    init_engine("sqlite://")
    create_all_tables()
    METRICS.reset()
    yield
    drop_all_tables()


@pytest.fixture
def entitlement_config():
    return EntitlementConfig(
        plan_quotas={"none": 0, "trial": 10, "premium": 100},
        premium_price_id="price_premium_test",
        frontend_url="http://frontend.test",
    )


@pytest.fixture
def store(entitlement_config):
    return EntitlementStore(entitlement_config)


@pytest.fixture
def ledger(entitlement_config, store):
    return UsageLedger(entitlement_config, store)


@pytest.fixture
def fake_provider():
    return FakeBillingProvider()


@pytest.fixture
def billing_service(entitlement_config, store, fake_provider, ledger):
    return BillingService(entitlement_config, store, fake_provider, ledger)


@pytest.fixture
def processor(entitlement_config, store, fake_provider):
    return WebhookProcessor(entitlement_config, store, fake_provider)


@pytest.fixture
def evaluator(entitlement_config, store, fake_provider):
    return TrialEligibilityEvaluator(entitlement_config, fake_provider, store)


_PLAN_FOR_STATUS = {
    SubscriptionStatus.NO_SUBSCRIPTION: Plan.NONE,
    SubscriptionStatus.TRIALING: Plan.TRIAL,
}


@pytest.fixture
def make_user(store):
    """Insert a user + entitlement row. Keyword args override entitlement fields."""

    def _make(status=SubscriptionStatus.TRIALING, email=None, **fields) -> Entitlement:
        user_id = fields.pop("user_id", None) or str(uuid4())
        email = email or f"{user_id[:8]}@example.com"
        values = {
            "plan": _PLAN_FOR_STATUS.get(status, Plan.PREMIUM),
            "usage_period_start": T0 - timedelta(days=5),
        }
        if status == SubscriptionStatus.TRIALING:
            values["trial_ends_at"] = datetime.now(timezone.utc) + timedelta(days=7)
        values.update(fields)
        with get_db_session() as session:
            session.execute(insert(users).values(id=user_id, email=email, password_hash="x", created_at=T0))
        return store.create(Entitlement(user_id=user_id, status=status, **values))

    return _make
