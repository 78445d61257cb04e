"""
subscription_billing/features/billing/snapshot_service.py

Payment snapshots: what a tenant paid for, frozen at checkout.

The snapshot carries the TARGET plan, limit and addons of the purchase. The
live subscription row may change between checkout and confirmation, so
apply_snapshot copies from the snapshot and never from the row.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from subscription_billing.core.config import Settings, settings as default_settings
from subscription_billing.core.database import session_scope, billing_payments
from subscription_billing.core.errors import ConflictError, NotFoundError, ValidationError
from subscription_billing.features.billing.periods import cycle_bounds
from subscription_billing.features.billing.subscriptions import get_subscription, save_subscription
from subscription_billing.features.plans.feature_flags import FeatureFlagStore, features_for_subscription
from subscription_billing.models.payment import Payment, PaymentStatus
from subscription_billing.models.subscription import (
    Addon,
    PLAN_HIERARCHY,
    Plan,
    STARTER_USER_LIMIT,
    Subscription,
    SubscriptionStatus,
    ensure_utc,
)
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.snapshots")


def _row_to_payment(row) -> Payment:
    data = dict(row._mapping)
    data["metadata"] = data.pop("metadata_json", None) or {}
    data["addons"] = data.get("addons") or []
    return Payment.model_validate(data)


class PaymentSnapshotService:
    def __init__(self, feature_store: Optional[FeatureFlagStore] = None, settings_obj: Optional[Settings] = None):
        self.features = feature_store or FeatureFlagStore()
        self.settings = settings_obj or default_settings

    def create_snapshot(
        self,
        tenant: TenantContext,
        subscription: Optional[Subscription],
        amount,
        payment_intent_id: str,
        target_plan: Optional[str] = None,
        target_user_limit: Optional[int] = None,
        billing_cycle_start: Optional[datetime] = None,
        target_addons: Optional[Iterable[str]] = None,
        *,
        session: Optional[Session] = None,
    ) -> Payment:
        """
        Record a pending payment for a checkout.

        Raises:
            ValidationError: amount <= 0, missing intent id, unknown plan or addon
        """
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Payment amount must be a number")
        if value <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        if not payment_intent_id:
            raise ValidationError("Stripe PaymentIntent ID is required")

        plan = target_plan or (subscription.plan if subscription else None) or Plan.STARTER.value
        if plan not in {p.value for p in Plan}:
            raise ValidationError(f"Invalid plan '{plan}'")

        if plan == Plan.STARTER.value:
            user_limit: Optional[int] = STARTER_USER_LIMIT
            addons: List[str] = []
        else:
            if target_user_limit is not None:
                user_limit = target_user_limit
            elif subscription is not None and subscription.user_limit is not None:
                user_limit = subscription.user_limit
            else:
                user_limit = 1
            source = target_addons if target_addons is not None else (subscription.addons if subscription else [])
            addons = list(source)
            invalid = [a for a in addons if a not in {x.value for x in Addon}]
            if invalid:
                raise ValidationError(f"Invalid addon(s): {', '.join(invalid)}")

        start = (
            ensure_utc(billing_cycle_start)
            or (subscription.billing_period_started_at if subscription else None)
            or datetime.now(timezone.utc)
        )
        cycle_start, cycle_end = cycle_bounds(start)
        ts = datetime.now(timezone.utc)
        metadata = {
            "created_via": "checkout",
            "subscription_id": subscription.id if subscription else None,
        }

        with session_scope(session) as s:
            result = s.execute(
                insert(billing_payments).values(
                    tenant_id=tenant.tenant_id,
                    subscription_id=subscription.id if subscription else None,
                    plan=plan,
                    user_limit=user_limit,
                    addons=sorted(set(addons)),
                    amount=value,
                    currency=self.settings.BILLING_CURRENCY,
                    cycle_start=cycle_start,
                    cycle_end=cycle_end,
                    stripe_payment_intent_id=payment_intent_id,
                    status=PaymentStatus.PENDING.value,
                    metadata_json=metadata,
                    created_at=ts,
                )
            )
            payment_id = result.inserted_primary_key[0]

        logger.info(
            "[snapshot] created",
            extra={
                "tenant_id": tenant.tenant_id,
                "payment_id": payment_id,
                "plan": plan,
                "user_limit": user_limit,
                "amount": str(value),
                "intent_id": payment_intent_id,
            },
        )
        return Payment(
            id=payment_id,
            tenant_id=tenant.tenant_id,
            subscription_id=subscription.id if subscription else None,
            plan=plan,
            user_limit=user_limit,
            addons=addons,
            amount=value,
            currency=self.settings.BILLING_CURRENCY,
            cycle_start=cycle_start,
            cycle_end=cycle_end,
            stripe_payment_intent_id=payment_intent_id,
            status=PaymentStatus.PENDING,
            metadata=metadata,
            created_at=ts,
        )

    def _get(self, s: Session, payment_id: int) -> Payment:
        row = s.execute(select(billing_payments).where(billing_payments.c.id == payment_id)).first()
        if row is None:
            raise NotFoundError(f"Payment snapshot not found: {payment_id}")
        return _row_to_payment(row)

    def mark_paid(self, payment: Payment, paid_at: Optional[datetime] = None, *, session: Optional[Session] = None) -> Payment:
        ts = ensure_utc(paid_at) or datetime.now(timezone.utc)
        with session_scope(session) as s:
            s.execute(
                update(billing_payments)
                .where(billing_payments.c.id == payment.id)
                .values(status=PaymentStatus.PAID.value, paid_at=ts)
            )
            return self._get(s, payment.id)

    def mark_failed(self, payment: Payment, reason: Optional[str] = None, *, session: Optional[Session] = None) -> Payment:
        with session_scope(session) as s:
            current = self._get(s, payment.id)
            if current.is_paid:
                raise ConflictError("Cannot mark a paid payment snapshot as failed")
            metadata = {**current.metadata, "failure_reason": reason}
            s.execute(
                update(billing_payments)
                .where(billing_payments.c.id == payment.id)
                .values(status=PaymentStatus.FAILED.value, metadata_json=metadata)
            )
            updated = self._get(s, payment.id)

        logger.warning(
            "[snapshot] payment failed",
            extra={"tenant_id": payment.tenant_id, "payment_id": payment.id, "reason": reason},
        )
        return updated

    def apply_snapshot(
        self,
        tenant: TenantContext,
        payment: Payment,
        subscription: Optional[Subscription] = None,
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Subscription:
        """
        Copy a paid snapshot onto the tenant's subscription.

        Applying the same snapshot twice returns the subscription unchanged.

        Raises:
            ConflictError: snapshot not paid, or no subscription to apply to
        """
        ts = ensure_utc(now) or datetime.now(timezone.utc)
        with session_scope(session) as s:
            stored = self._get(s, payment.id)
            if not stored.is_paid:
                raise ConflictError("Cannot apply unpaid payment snapshot")

            current = subscription or get_subscription(tenant.tenant_id, session=s, lock=True)
            if current is None:
                raise ConflictError("No subscription found to apply payment to")

            if stored.applied_at is not None:
                logger.info(
                    "[snapshot] already applied",
                    extra={"tenant_id": tenant.tenant_id, "payment_id": stored.id},
                )
                return current

            start_date = current.subscription_start_date
            if start_date is None and stored.plan != Plan.STARTER.value:
                start_date = ts

            pending = {}
            if current.pending_plan and PLAN_HIERARCHY[current.pending_plan] >= PLAN_HIERARCHY[stored.plan]:
                pending = {"pending_plan": None, "pending_user_limit": None, "pending_plan_effective_at": None}

            updated = current.evolve(
                plan=stored.plan,
                user_limit=stored.user_limit,
                addons=list(stored.addons),
                next_renewal_at=stored.cycle_end,
                billing_period_started_at=stored.cycle_start,
                billing_period_ends_at=stored.cycle_end,
                status=SubscriptionStatus.ACTIVE.value,
                is_trial=False,
                trial_ends_at=None,
                subscription_start_date=start_date,
                failed_renewal_attempts=0,
                grace_period_until=None,
                **pending,
            )
            saved = save_subscription(current, updated, session=s)
            self.features.sync(tenant, features_for_subscription(saved), session=s)
            s.execute(
                update(billing_payments)
                .where(billing_payments.c.id == stored.id)
                .values(applied_at=ts, subscription_id=saved.id)
            )

        logger.info(
            "[snapshot] applied",
            extra={
                "tenant_id": tenant.tenant_id,
                "payment_id": stored.id,
                "plan": saved.plan,
                "user_limit": saved.user_limit,
                "addons": list(saved.addons),
            },
        )
        return saved

    def validate_snapshot_matches_subscription(self, payment: Payment, subscription: Subscription) -> bool:
        """True when plan and every addon flag agree."""
        if payment.plan != subscription.plan:
            return False
        return all(payment.has_addon(a.value) == subscription.has_addon(a.value) for a in Addon)

    def get_snapshots_for_period(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        status: Optional[str] = PaymentStatus.PAID.value,
        *,
        session: Optional[Session] = None,
    ) -> List[Payment]:
        """Paid snapshots whose cycle starts inside [start, end]; pass status=None for every row."""
        with session_scope(session) as s:
            stmt = select(billing_payments).where(billing_payments.c.tenant_id == tenant_id)
            if status:
                stmt = stmt.where(billing_payments.c.status == status)
            rows = s.execute(
                stmt
                .where(billing_payments.c.cycle_start >= start)
                .where(billing_payments.c.cycle_start <= end)
                .order_by(billing_payments.c.cycle_start.asc(), billing_payments.c.id.asc())
            ).fetchall()
            return [_row_to_payment(r) for r in rows]

    def get_latest_snapshot(
        self,
        tenant_id: str,
        status: Optional[str] = PaymentStatus.PAID.value,
        *,
        session: Optional[Session] = None,
    ) -> Optional[Payment]:
        with session_scope(session) as s:
            stmt = select(billing_payments).where(billing_payments.c.tenant_id == tenant_id)
            if status:
                stmt = stmt.where(billing_payments.c.status == status)
            row = s.execute(stmt.order_by(billing_payments.c.id.desc()).limit(1)).first()
            return _row_to_payment(row) if row else None

    def find_by_payment_intent(self, payment_intent_id: str, *, session: Optional[Session] = None) -> Optional[Payment]:
        with session_scope(session) as s:
            row = s.execute(
                select(billing_payments).where(billing_payments.c.stripe_payment_intent_id == payment_intent_id)
            ).first()
            return _row_to_payment(row) if row else None

    def to_stripe_metadata(self, payment: Payment) -> Dict[str, str]:
        """Flat string map tying a gateway object back to this snapshot."""
        return {
            "snapshot_id": str(payment.id),
            "tenant_id": payment.tenant_id,
            "plan": payment.plan,
            "user_limit": str(payment.user_limit) if payment.user_limit is not None else "unlimited",
            "addons": ",".join(payment.addons),
            "cycle_start": str(int(payment.cycle_start.timestamp())),
            "cycle_end": str(int(payment.cycle_end.timestamp())),
        }

    def get_snapshot_summary(self, payment: Payment) -> Dict[str, Any]:
        return {
            "id": payment.id,
            "plan": payment.plan,
            "user_limit": payment.user_limit,
            "addons": list(payment.addons),
            "amount": float(payment.amount),
            "currency": payment.currency,
            "cycle_start": payment.cycle_start.isoformat(),
            "cycle_end": payment.cycle_end.isoformat(),
            "status": payment.status,
            "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
            "applied_at": payment.applied_at.isoformat() if payment.applied_at else None,
        }
