"""
logtopost/features/entitlements/store.py

Entitlement Store: persistence for the per-user entitlement row.

Every transition is a single conditional write: read the row with its
version, compute the next state in pure code, then UPDATE ... WHERE
version = <read version>. A lost race is retried once and then surfaces
as StateConflictError.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from sqlalchemy import insert, select, update

from logtopost.core.config import EntitlementConfig
from logtopost.core.database import get_db_session, user_entitlements
from logtopost.core.errors import NotFoundError, StateConflictError
from logtopost.models.entitlement import Entitlement, Plan, SubscriptionStatus


logger = logging.getLogger(__name__)

Mutation = Callable[[Entitlement], Entitlement]

_DATETIME_FIELDS = (
    "usage_period_start",
    "trial_ends_at",
    "subscription_ends_at",
    "last_event_at",
)

_WRITABLE_FIELDS = (
    "status",
    "plan",
    "generations_used_this_period",
    "usage_period_start",
    "has_had_trial",
    "trial_ends_at",
    "subscription_ends_at",
    "billing_customer_ref",
    "billing_subscription_ref",
    "last_event_at",
)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_entitlement(row) -> Entitlement:
    data = dict(row._mapping)
    for name in _DATETIME_FIELDS:
        data[name] = as_utc(data.get(name))
    return Entitlement(
        user_id=data["user_id"],
        status=SubscriptionStatus(data["status"]),
        plan=Plan(data["plan"]),
        generations_used_this_period=data["generations_used_this_period"],
        usage_period_start=data["usage_period_start"],
        has_had_trial=bool(data["has_had_trial"]),
        trial_ends_at=data["trial_ends_at"],
        subscription_ends_at=data["subscription_ends_at"],
        billing_customer_ref=data["billing_customer_ref"],
        billing_subscription_ref=data["billing_subscription_ref"],
        last_event_at=data["last_event_at"],
        version=data["version"],
    )


def _to_values(entitlement: Entitlement) -> dict:
    values = {name: getattr(entitlement, name) for name in _WRITABLE_FIELDS}
    values["status"] = entitlement.status.value
    values["plan"] = entitlement.plan.value
    return values


class EntitlementStore:
    """Reads and conditionally writes user_entitlements rows."""

    def __init__(self, config: EntitlementConfig):
        self.config = config

    def get(self, user_id: str) -> Optional[Entitlement]:
        with get_db_session() as session:
            row = session.execute(
                select(user_entitlements).where(user_entitlements.c.user_id == user_id)
            ).first()
            return _row_to_entitlement(row) if row else None

    def require(self, user_id: str) -> Entitlement:
        entitlement = self.get(user_id)
        if entitlement is None:
            raise NotFoundError(f"No entitlement for user {user_id}")
        return entitlement

    def find_by_subscription_ref(self, subscription_ref: Optional[str]) -> Optional[Entitlement]:
        if not subscription_ref:
            return None
        return self._find_one(user_entitlements.c.billing_subscription_ref == subscription_ref)

    def find_by_customer_ref(self, customer_ref: Optional[str]) -> Optional[Entitlement]:
        if not customer_ref:
            return None
        return self._find_one(user_entitlements.c.billing_customer_ref == customer_ref)

    def _find_one(self, condition) -> Optional[Entitlement]:
        with get_db_session() as session:
            row = session.execute(
                select(user_entitlements)
                .where(condition)
                .order_by(user_entitlements.c.updated_at.desc())
                .limit(1)
            ).first()
            return _row_to_entitlement(row) if row else None

    def list_by_status(self, statuses: Iterable[SubscriptionStatus]) -> List[Entitlement]:
        with get_db_session() as session:
            rows = session.execute(
                select(user_entitlements)
                .where(user_entitlements.c.status.in_([s.value for s in statuses]))
                .order_by(user_entitlements.c.user_id)
            ).fetchall()
            return [_row_to_entitlement(row) for row in rows]

    def create(self, entitlement: Entitlement, *, session=None) -> Entitlement:
        """Insert the initial row (registration). Joins ``session`` when given."""
        problems = entitlement.invariant_violations()
        if problems:
            raise ValueError("; ".join(problems))
        now = utc_now()
        values = _to_values(entitlement)
        values.update(user_id=entitlement.user_id, version=1, created_at=now, updated_at=now)
        if session is not None:
            session.execute(insert(user_entitlements).values(**values))
        else:
            with get_db_session() as own_session:
                own_session.execute(insert(user_entitlements).values(**values))
        return entitlement.model_copy(update={"version": 1})

    def update(self, user_id: str, mutate: Mutation, *, attempts: int = 2) -> Entitlement:
        """Apply ``mutate`` as one optimistic read-modify-write.

        ``mutate`` must be pure: it may run more than once when a concurrent
        writer wins the first attempt. Exceptions raised by it propagate
        without writing anything.
        """
        for attempt in range(1, attempts + 1):
            with get_db_session() as session:
                row = session.execute(
                    select(user_entitlements).where(user_entitlements.c.user_id == user_id)
                ).first()
                if row is None:
                    raise NotFoundError(f"No entitlement for user {user_id}")
                current = _row_to_entitlement(row)
                proposed = mutate(current)
                if proposed == current:
                    return current

                # has_had_trial is monotonic regardless of what the mutation says
                if current.has_had_trial and not proposed.has_had_trial:
                    proposed = proposed.model_copy(update={"has_had_trial": True})
                problems = proposed.invariant_violations()
                if problems:
                    raise ValueError("; ".join(problems))

                new_version = current.version + 1
                result = session.execute(
                    update(user_entitlements)
                    .where(user_entitlements.c.user_id == user_id)
                    .where(user_entitlements.c.version == current.version)
                    .values(**_to_values(proposed), version=new_version, updated_at=utc_now())
                )
                if result.rowcount == 1:
                    return proposed.model_copy(update={"version": new_version})

            logger.warning(
                "[entitlements] optimistic write lost, retrying",
                extra={"user_id": user_id, "attempt": attempt},
            )

        raise StateConflictError(f"Entitlement for user {user_id} changed concurrently")

    def assign_customer_ref(self, user_id: str, customer_ref: str) -> str:
        """Persist the billing customer ref if none is stored yet.

        Returns the ref that ends up stored; a concurrently assigned ref wins
        over ``customer_ref``.
        """
        with get_db_session() as session:
            result = session.execute(
                update(user_entitlements)
                .where(user_entitlements.c.user_id == user_id)
                .where(user_entitlements.c.billing_customer_ref.is_(None))
                .values(
                    billing_customer_ref=customer_ref,
                    version=user_entitlements.c.version + 1,
                    updated_at=utc_now(),
                )
            )
            if result.rowcount == 1:
                return customer_ref
            stored = session.execute(
                select(user_entitlements.c.billing_customer_ref).where(
                    user_entitlements.c.user_id == user_id
                )
            ).scalar()
        if stored is None:
            raise NotFoundError(f"No entitlement for user {user_id}")
        return stored

    def increment_usage(self, user_id: str, limit: int, statuses: Iterable[SubscriptionStatus]) -> bool:
        """Atomically add one generation while the counter is below ``limit``."""
        with get_db_session() as session:
            result = session.execute(
                update(user_entitlements)
                .where(user_entitlements.c.user_id == user_id)
                .where(user_entitlements.c.status.in_([s.value for s in statuses]))
                .where(user_entitlements.c.generations_used_this_period < limit)
                .values(
                    generations_used_this_period=user_entitlements.c.generations_used_this_period + 1,
                    version=user_entitlements.c.version + 1,
                    updated_at=utc_now(),
                )
            )
            return result.rowcount == 1
