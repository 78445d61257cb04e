"""Payment failure records kept until a charge recovers or the tenant is canceled."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from subscription_billing.core.database import session_scope, billing_payment_failures
from subscription_billing.models.payment import PaymentFailure, PaymentFailureStatus

OPEN_STATUSES = (PaymentFailureStatus.PENDING.value, PaymentFailureStatus.RETRYING.value)


def record_payment_failure(
    tenant_id: str,
    *,
    reason: Optional[str],
    amount: Optional[Decimal] = None,
    payment_intent_id: Optional[str] = None,
    stripe_invoice_id: Optional[str] = None,
    status: str = PaymentFailureStatus.PENDING.value,
    failed_at: Optional[datetime] = None,
    notes: Optional[str] = None,
    session: Optional[Session] = None,
) -> int:
    with session_scope(session) as s:
        result = s.execute(
            insert(billing_payment_failures).values(
                tenant_id=tenant_id,
                stripe_invoice_id=stripe_invoice_id,
                stripe_payment_intent_id=payment_intent_id,
                reason=reason,
                amount=amount,
                status=PaymentFailureStatus(status).value,
                failed_at=failed_at or datetime.now(timezone.utc),
                notes=notes,
            )
        )
        return result.inserted_primary_key[0]


def list_pending_failures(tenant_id: str, *, session: Optional[Session] = None) -> List[PaymentFailure]:
    with session_scope(session) as s:
        rows = s.execute(
            select(billing_payment_failures)
            .where(billing_payment_failures.c.tenant_id == tenant_id)
            .where(billing_payment_failures.c.status.in_(OPEN_STATUSES))
            .order_by(billing_payment_failures.c.failed_at.desc())
        ).fetchall()
        return [PaymentFailure.model_validate(dict(r._mapping)) for r in rows]


def resolve_pending_failures(
    tenant_id: str,
    resolution_method: str,
    *,
    status: str = PaymentFailureStatus.RESOLVED.value,
    resolved_at: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> int:
    """Close every open failure for the tenant; returns how many were closed."""
    with session_scope(session) as s:
        result = s.execute(
            update(billing_payment_failures)
            .where(billing_payment_failures.c.tenant_id == tenant_id)
            .where(billing_payment_failures.c.status.in_(OPEN_STATUSES))
            .values(
                status=PaymentFailureStatus(status).value,
                resolved_at=resolved_at or datetime.now(timezone.utc),
                resolution_method=resolution_method,
            )
        )
        return result.rowcount or 0
