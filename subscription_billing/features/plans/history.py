"""Append-only plan change log."""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, insert
from sqlalchemy.orm import Session

from subscription_billing.core.database import session_scope, subscription_plan_history
from subscription_billing.models.subscription import PlanChange


def record_plan_change(
    tenant_id: str,
    *,
    previous_plan: Optional[str],
    new_plan: str,
    previous_user_limit: Optional[int],
    new_user_limit: Optional[int],
    changed_by: str,
    notes: Optional[str] = None,
    changed_at: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> None:
    ts = changed_at or datetime.now(timezone.utc)
    with session_scope(session) as s:
        s.execute(
            insert(subscription_plan_history).values(
                tenant_id=tenant_id,
                previous_plan=previous_plan,
                new_plan=new_plan,
                previous_user_limit=previous_user_limit,
                new_user_limit=new_user_limit,
                changed_at=ts,
                changed_by=changed_by,
                notes=notes,
            )
        )


def list_plan_changes(tenant_id: str, *, session: Optional[Session] = None) -> List[PlanChange]:
    with session_scope(session) as s:
        rows = s.execute(
            select(subscription_plan_history)
            .where(subscription_plan_history.c.tenant_id == tenant_id)
            .order_by(subscription_plan_history.c.id.asc())
        ).fetchall()
        return [PlanChange.model_validate(dict(row._mapping)) for row in rows]
