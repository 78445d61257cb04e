"""
Subscription persistence with optimistic versioning.

Every writer reads a Subscription, derives the new state, and calls
save_subscription once. The UPDATE is conditioned on the version that was
read; if another writer got there first nothing matches and
ConcurrentUpdateError is raised instead of silently losing an update.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, insert, update, and_
from sqlalchemy.orm import Session

from subscription_billing.core.database import session_scope, billing_subscriptions
from subscription_billing.core.errors import ConcurrentUpdateError
from subscription_billing.models.subscription import Subscription, SubscriptionStatus


def _row_to_subscription(row) -> Subscription:
    data = dict(row._mapping)
    data.pop("created_at", None)
    data.pop("updated_at", None)
    data["addons"] = data.get("addons") or []
    return Subscription.model_validate(data)


def get_subscription(
    tenant_id: str,
    *,
    session: Optional[Session] = None,
    lock: bool = False,
) -> Optional[Subscription]:
    """Load the tenant's subscription; lock=True takes a row lock where supported."""
    with session_scope(session) as s:
        stmt = select(billing_subscriptions).where(billing_subscriptions.c.tenant_id == tenant_id)
        if lock:
            stmt = stmt.with_for_update()
        row = s.execute(stmt).first()
        return _row_to_subscription(row) if row else None


def create_subscription(subscription: Subscription, *, session: Optional[Session] = None) -> Subscription:
    ts = datetime.now(timezone.utc)
    with session_scope(session) as s:
        result = s.execute(
            insert(billing_subscriptions).values(
                **subscription.to_row(),
                version=1,
                created_at=ts,
                updated_at=ts,
            )
        )
        new_id = result.inserted_primary_key[0]
    return subscription.model_copy(update={"id": new_id, "version": 1})


def save_subscription(current: Subscription, updated: Subscription, *, session: Optional[Session] = None) -> Subscription:
    """
    Persist `updated` over the row `current` was read from.

    Raises:
        ConcurrentUpdateError: the row's version moved since `current` was read
    """
    if current.id is None:
        raise ValueError("Cannot save a subscription that was never persisted")

    next_version = current.version + 1
    with session_scope(session) as s:
        result = s.execute(
            update(billing_subscriptions)
            .where(
                and_(
                    billing_subscriptions.c.id == current.id,
                    billing_subscriptions.c.version == current.version,
                )
            )
            .values(
                **updated.to_row(),
                version=next_version,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                f"Subscription {current.id} was modified concurrently; retry the operation"
            )
    return updated.model_copy(update={"id": current.id, "version": next_version})


def list_due_for_renewal(now: datetime, *, session: Optional[Session] = None) -> List[Subscription]:
    """Active, non-trial subscriptions whose paid period has ended."""
    with session_scope(session) as s:
        rows = s.execute(
            select(billing_subscriptions)
            .where(billing_subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .where(billing_subscriptions.c.is_trial.is_(False))
            .where(billing_subscriptions.c.billing_period_ends_at.isnot(None))
            .where(billing_subscriptions.c.billing_period_ends_at <= now)
            .order_by(billing_subscriptions.c.id.asc())
        ).fetchall()
        return [_row_to_subscription(r) for r in rows]


def list_past_due(*, session: Optional[Session] = None) -> List[Subscription]:
    with session_scope(session) as s:
        rows = s.execute(
            select(billing_subscriptions)
            .where(billing_subscriptions.c.status == SubscriptionStatus.PAST_DUE.value)
            .order_by(billing_subscriptions.c.id.asc())
        ).fetchall()
        return [_row_to_subscription(r) for r in rows]


def list_expired_trials(now: datetime, *, session: Optional[Session] = None) -> List[Subscription]:
    with session_scope(session) as s:
        rows = s.execute(
            select(billing_subscriptions)
            .where(billing_subscriptions.c.is_trial.is_(True))
            .where(billing_subscriptions.c.trial_ends_at.isnot(None))
            .where(billing_subscriptions.c.trial_ends_at <= now)
            .order_by(billing_subscriptions.c.id.asc())
        ).fetchall()
        return [_row_to_subscription(r) for r in rows]
