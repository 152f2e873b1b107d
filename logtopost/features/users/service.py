"""
User domain service.
- register_user(email, password): uniqueness, trial eligibility, entitlement creation
- get_user(user_id) / get_user_by_email(email) / get_user_email(user_id)
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4
import logging

from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError

from logtopost.core.auth import hash_password
from logtopost.core.config import EntitlementConfig
from logtopost.core.database import get_db_session, users
from logtopost.core.errors import ConflictError, NotFoundError, ValidationError
from logtopost.features.entitlements.store import EntitlementStore
from logtopost.models.entitlement import Entitlement, Plan, SubscriptionStatus
from logtopost.models.user import User


logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def _row_to_user(row) -> User:
    return User(id=row.id, email=row.email, created_at=row.created_at)


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.id == user_id)).first()
        return _row_to_user(row) if row else None


def get_user_by_email(email: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.email == User.normalize_email(email))).first()
        return _row_to_user(row) if row else None


def get_user_email(user_id: str) -> str:
    user = get_user(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user.email


def initial_entitlement(user_id: str, eligible: bool, config: EntitlementConfig, now: datetime) -> Entitlement:
    """Entitlement a new account starts with, given the trial decision."""
    if eligible:
        return Entitlement(
            user_id=user_id,
            status=SubscriptionStatus.TRIALING,
            plan=Plan.TRIAL,
            has_had_trial=False,
            trial_ends_at=now + timedelta(days=config.trial_days),
            usage_period_start=now,
        )
    return Entitlement(
        user_id=user_id,
        status=SubscriptionStatus.CANCELLED,
        plan=Plan.PREMIUM,
        has_had_trial=True,
        trial_ends_at=None,
        usage_period_start=now,
    )


def register_user(
    email: str,
    password: str,
    *,
    config: EntitlementConfig,
    store: EntitlementStore,
    evaluator,
    now: Optional[datetime] = None,
):
    """Create a user and their entitlement.

    Trial eligibility is evaluated once here and recorded in the entitlement;
    it is never re-evaluated from client input.

    Returns:
        (User, Entitlement)
    """
    normalized = User.normalize_email(email)
    if "@" not in normalized:
        raise ValidationError("A valid email address is required")
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if get_user_by_email(normalized) is not None:
        raise ConflictError("User already exists")

    eligible = evaluator.is_eligible_for_trial(normalized)
    now = now or datetime.now(timezone.utc)
    user_id = str(uuid4())
    entitlement = initial_entitlement(user_id, eligible, config, now)

    try:
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    id=user_id,
                    email=normalized,
                    password_hash=hash_password(password),
                    created_at=now,
                )
            )
            entitlement = store.create(entitlement, session=session)
    except IntegrityError as e:
        # Lost a race with a concurrent registration of the same email
        raise ConflictError("User already exists") from e

    logger.info(
        "[users] registered",
        extra={"user_id": user_id, "status": entitlement.status.value, "trial_eligible": eligible},
    )
    return User(id=user_id, email=normalized, created_at=now), entitlement
