"""
subscription_billing/features/billing/status_service.py

Subscription status: changes, read model, health and access gating.

update_status is the sanctioned way for gateway events and pause/resume
endpoints to change a subscription's status. The renewal and dunning jobs
set status inside their own single-write transitions.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from subscription_billing.core.config import Settings, settings as default_settings
from subscription_billing.core.database import session_scope, billing_invoices
from subscription_billing.core.errors import ConflictError, ValidationError
from subscription_billing.core.logging import log_event
from subscription_billing.features.billing.failures import (
    list_pending_failures,
    record_payment_failure as _record_failure,
    resolve_pending_failures,
)
from subscription_billing.features.billing.subscriptions import get_subscription, save_subscription
from subscription_billing.models.payment import PaymentFailure
from subscription_billing.models.subscription import Subscription, SubscriptionStatus, ensure_utc
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.status")

FORCE_UPDATE = "force_update"
RECENT_INVOICE_LIMIT = 10

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"
UNKNOWN = "unknown"


def calculate_health(status: Optional[str], failures: Sequence[Any] = ()) -> Dict[str, Any]:
    """Map a status and its open payment failures to a health level."""
    if status == SubscriptionStatus.CANCELED.value:
        level, message = CRITICAL, "Subscription canceled"
    elif status == SubscriptionStatus.UNPAID.value:
        level, message = CRITICAL, "Payment failed - subscription unpaid"
    elif status == SubscriptionStatus.PAUSED.value:
        level, message = WARNING, "Subscription paused"
    elif status == SubscriptionStatus.PAST_DUE.value:
        level, message = WARNING, "Payment past due - retrying"
    elif failures:
        level, message = WARNING, "Recent payment failures detected"
    elif status == SubscriptionStatus.ACTIVE.value:
        level, message = HEALTHY, "Subscription active"
    elif status == SubscriptionStatus.TRIALING.value:
        level, message = HEALTHY, "Trial period active"
    else:
        level, message = UNKNOWN, f"Status: {status}"

    return {
        "level": level,
        "message": message,
        "requires_action": level in (WARNING, CRITICAL),
    }


def access_for_status(status: Optional[str], restrict_when_paused: bool = True) -> Dict[str, Any]:
    if status == SubscriptionStatus.CANCELED.value:
        return {"restricted": True, "reason": "Subscription canceled. Please reactivate to continue."}
    if status == SubscriptionStatus.UNPAID.value:
        return {"restricted": True, "reason": "Payment failed. Please update payment method."}
    if status == SubscriptionStatus.PAUSED.value and restrict_when_paused:
        return {"restricted": True, "reason": "Subscription paused. Resume to restore full access."}
    if status == SubscriptionStatus.PAST_DUE.value:
        return {
            "restricted": False,
            "reason": "Payment issue detected. Service may be interrupted soon.",
            "warning": True,
        }
    return {"restricted": False, "reason": None}


def _failure_summary(failure: PaymentFailure, now: datetime) -> Dict[str, Any]:
    return {
        "id": failure.id,
        "stripe_invoice_id": failure.stripe_invoice_id,
        "amount": float(failure.amount) if failure.amount is not None else None,
        "reason": failure.reason or "Unknown reason",
        "status": failure.status,
        "failed_at": failure.failed_at.isoformat(),
        "days_since_failure": max(0, (now - failure.failed_at).days),
        "reminder_count": failure.reminder_count,
    }


class SubscriptionStatusService:
    def __init__(self, settings_obj: Optional[Settings] = None):
        self.settings = settings_obj or default_settings

    def update_status(
        self,
        tenant: TenantContext,
        new_status: str,
        event: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Subscription:
        """
        Change the subscription status and run the transition's side effects.

        An unchanged status is a no-op unless event is "force_update".

        Raises:
            ValidationError: unknown status
            ConflictError: tenant has no subscription
        """
        try:
            status = SubscriptionStatus(new_status).value
        except ValueError:
            raise ValidationError(f"Invalid subscription status '{new_status}'")
        metadata = metadata or {}
        ts = ensure_utc(now) or datetime.now(timezone.utc)

        with session_scope(session) as s:
            current = get_subscription(tenant.tenant_id, session=s, lock=True)
            if current is None:
                raise ConflictError("No subscription found for tenant.")

            old_status = current.status
            if old_status == status and event != FORCE_UPDATE:
                logger.debug(
                    "[status] Status unchanged",
                    extra={"tenant_id": tenant.tenant_id, "status": status, "event": event},
                )
                return current

            saved = save_subscription(
                current,
                current.evolve(status=status, status_event=event, status_changed_at=ts),
                session=s,
            )

            log_event(
                "info",
                "[status] Status updated",
                tenant_id=tenant.tenant_id,
                subscription_id=saved.id,
                event_type=event,
                extra={
                    "tenant_slug": tenant.slug,
                    "old_status": old_status,
                    "new_status": status,
                    "event_metadata": metadata,
                },
            )

            if status == SubscriptionStatus.ACTIVE.value and old_status in (
                SubscriptionStatus.PAST_DUE.value,
                SubscriptionStatus.UNPAID.value,
            ):
                resolved = resolve_pending_failures(tenant.tenant_id, event, resolved_at=ts, session=s)
                if resolved:
                    logger.info(
                        "[status] Payment failures resolved",
                        extra={"tenant_id": tenant.tenant_id, "count": resolved, "method": event},
                    )

        if status == SubscriptionStatus.PAUSED.value:
            logger.warning(
                "[status] Subscription paused",
                extra={"tenant_id": tenant.tenant_id, "method": metadata.get("pause_method", "unknown")},
            )
        elif status == SubscriptionStatus.CANCELED.value:
            logger.warning(
                "[status] Subscription canceled",
                extra={"tenant_id": tenant.tenant_id, "reason": metadata.get("cancel_reason", "unknown")},
            )
        return saved

    def get_status(self, tenant: TenantContext, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        ts = ensure_utc(now) or datetime.now(timezone.utc)
        sub = get_subscription(tenant.tenant_id)
        failures = list_pending_failures(tenant.tenant_id)
        status = sub.status if sub else None

        return {
            "subscription_id": sub.id if sub else None,
            "status": status,
            "is_paused": status == SubscriptionStatus.PAUSED.value,
            "last_event": sub.status_event if sub else None,
            "last_status_change_at": sub.status_changed_at.isoformat() if sub and sub.status_changed_at else None,
            "renews_at": sub.next_renewal_at.isoformat() if sub and sub.next_renewal_at else None,
            "plan": sub.plan if sub else None,
            "active_addons": list(sub.addons) if sub else [],
            "has_payment_failures": bool(failures),
            "payment_failures": [_failure_summary(f, ts) for f in failures],
            "recent_invoices": self.recent_invoices(tenant.tenant_id),
            "health": calculate_health(status, failures),
        }

    def recent_invoices(self, tenant_id: str, limit: int = RECENT_INVOICE_LIMIT) -> List[Dict[str, Any]]:
        with session_scope() as s:
            rows = s.execute(
                select(billing_invoices)
                .where(billing_invoices.c.tenant_id == tenant_id)
                .order_by(billing_invoices.c.created_at.desc())
                .limit(limit)
            ).fetchall()
        return [
            {
                "stripe_invoice_id": r.stripe_invoice_id,
                "status": r.status,
                "amount_due": float(r.amount_due),
                "amount_paid": float(r.amount_paid),
                "pdf_url": r.pdf_url,
                "created_at": ensure_utc(r.created_at).isoformat(),
            }
            for r in rows
        ]

    def calculate_health(self, status: Optional[str], failures: Sequence[Any] = ()) -> Dict[str, Any]:
        return calculate_health(status, failures)

    def check_access_restrictions(self, tenant: TenantContext) -> Dict[str, Any]:
        sub = get_subscription(tenant.tenant_id)
        return access_for_status(
            sub.status if sub else None,
            restrict_when_paused=self.settings.BILLING_RESTRICT_ACCESS_WHEN_PAUSED,
        )

    def record_payment_failure(
        self,
        tenant: TenantContext,
        reason: Optional[str],
        amount: Optional[Decimal] = None,
        *,
        stripe_invoice_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Record a failure reported by the gateway (e.g. an invoice payment webhook)."""
        failure_id = _record_failure(
            tenant.tenant_id,
            reason=reason,
            amount=amount,
            stripe_invoice_id=stripe_invoice_id,
            payment_intent_id=payment_intent_id,
            failed_at=ensure_utc(now),
        )
        logger.warning(
            "[status] Payment failure recorded",
            extra={"tenant_id": tenant.tenant_id, "failure_id": failure_id, "reason": reason},
        )
        return failure_id
