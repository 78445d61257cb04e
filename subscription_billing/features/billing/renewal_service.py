"""
subscription_billing/features/billing/renewal_service.py

Scheduled renewal charges.

Run daily. Charges every active, non-trial subscription whose billing period
has ended, applies any due scheduled downgrade first, and moves failures to
past_due for the dunning job to pick up.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from subscription_billing.core.config import Settings, settings as default_settings
from subscription_billing.core.database import get_db_session
from subscription_billing.core.logging import tenant_log_context
from subscription_billing.features.billing.failures import record_payment_failure
from subscription_billing.features.billing.gateway import PaymentGateway, PaymentGatewayError
from subscription_billing.features.billing.job_runs import record_job_run
from subscription_billing.features.billing.metadata import MetadataBuilder
from subscription_billing.features.billing.periods import add_months
from subscription_billing.features.billing.pricing import PriceCalculator
from subscription_billing.features.billing.service import charge, get_gateway
from subscription_billing.features.billing.subscriptions import list_due_for_renewal, save_subscription
from subscription_billing.features.plans.service import PlanManager
from subscription_billing.features.tenants.service import TenantDirectory
from subscription_billing.models.subscription import Subscription, SubscriptionStatus, ensure_utc
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.renewal")

JOB_NAME = "billing.renewal"


def pending_change_due(subscription: Subscription, now: datetime) -> bool:
    """A pending downgrade is due once its effective time (or renewal date) has passed."""
    if not subscription.has_pending_downgrade:
        return False
    effective_at = subscription.pending_plan_effective_at or subscription.next_renewal_at
    return effective_at is None or effective_at <= now


def advance_period(subscription: Subscription, now: datetime, **changes) -> Subscription:
    """Next monthly period starting at the old period end; status back to active."""
    old_end = subscription.billing_period_ends_at or now
    new_end = add_months(old_end, 1)
    return subscription.evolve(
        billing_period_started_at=old_end,
        billing_period_ends_at=new_end,
        next_renewal_at=new_end,
        last_renewal_at=now,
        status=SubscriptionStatus.ACTIVE.value,
        **changes,
    )


class BillingRenewalService:
    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        plan_manager: Optional[PlanManager] = None,
        pricing: Optional[PriceCalculator] = None,
        metadata_builder: Optional[MetadataBuilder] = None,
        tenants: Optional[TenantDirectory] = None,
        settings_obj: Optional[Settings] = None,
    ):
        self.settings = settings_obj or default_settings
        self.gateway = gateway or get_gateway(settings_obj=self.settings)
        self.tenants = tenants or TenantDirectory()
        self.plans = plan_manager or PlanManager(tenants=self.tenants, settings_obj=self.settings)
        self.pricing = pricing or PriceCalculator(self.settings)
        self.metadata = metadata_builder or MetadataBuilder(self.settings)

    def run_for_due_subscriptions(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Renew every due subscription.

        One subscription failing never stops the batch.

        Returns:
            {"total", "succeeded", "failed"}
        """
        ts = ensure_utc(now) or datetime.now(timezone.utc)
        started_at = datetime.now(timezone.utc)
        due = list_due_for_renewal(ts)
        stats = {"total": len(due), "succeeded": 0, "failed": 0}

        logger.info("[renewal] Starting renewal run", extra={"due": len(due)})

        for subscription in due:
            with tenant_log_context(subscription.tenant_id):
                try:
                    if self.renew_subscription(subscription, now=ts):
                        stats["succeeded"] += 1
                    else:
                        stats["failed"] += 1
                except Exception as e:
                    logger.error(
                        "[renewal] Unexpected error renewing subscription",
                        exc_info=True,
                        extra={
                            "tenant_id": subscription.tenant_id,
                            "subscription_id": subscription.id,
                            "error": str(e),
                        },
                    )
                    stats["failed"] += 1

        logger.info("[renewal] Renewal run complete", extra=stats)
        record_job_run(JOB_NAME, started_at, stats)
        return stats

    def renew_subscription(self, subscription: Subscription, *, now: Optional[datetime] = None) -> bool:
        """
        Renew one subscription; True when the new period is paid.

        The due downgrade, the charge outcome and the period advance share
        one transaction, so a crash part way leaves the row as it was.
        """
        ts = ensure_utc(now) or datetime.now(timezone.utc)

        tenant = self.tenants.get_tenant(subscription.tenant_id)
        if tenant is None:
            logger.error(
                "[renewal] Tenant not found for subscription",
                extra={"tenant_id": subscription.tenant_id, "subscription_id": subscription.id},
            )
            return False

        with get_db_session() as session:
            if pending_change_due(subscription, ts):
                applied = self.plans.apply_pending_downgrade(tenant, now=ts, session=session)
                if applied is not None:
                    logger.info(
                        "[renewal] Applied pending plan change",
                        extra={
                            "tenant_id": tenant.tenant_id,
                            "subscription_id": subscription.id,
                            "old_plan": subscription.plan,
                            "new_plan": applied.plan,
                            "new_user_limit": applied.user_limit,
                        },
                    )
                    subscription = applied

            amount = self.pricing.renewal_amount(subscription)
            if amount <= 0:
                save_subscription(
                    subscription,
                    advance_period(subscription, ts, status_event="renewal_free", status_changed_at=ts),
                    session=session,
                )
                logger.info(
                    "[renewal] Free plan period advanced",
                    extra={"tenant_id": tenant.tenant_id, "subscription_id": subscription.id, "plan": subscription.plan},
                )
                return True

            try:
                intent = charge(self.gateway, tenant, amount, self.metadata.for_renewal(tenant, subscription))
            except PaymentGatewayError as e:
                self._mark_past_due(tenant, subscription, amount, str(e), ts, session)
                logger.warning(
                    "[renewal] Subscription renewal failed",
                    extra={
                        "tenant_id": tenant.tenant_id,
                        "subscription_id": subscription.id,
                        "amount": str(amount),
                        "error": str(e),
                    },
                )
                return False
            except Exception as e:
                # Timeouts and other unexpected gateway errors still count as a failed charge
                self._mark_past_due(tenant, subscription, amount, str(e) or type(e).__name__, ts, session)
                logger.error(
                    "[renewal] Unexpected error charging renewal",
                    exc_info=True,
                    extra={
                        "tenant_id": tenant.tenant_id,
                        "subscription_id": subscription.id,
                        "amount": str(amount),
                        "error": str(e),
                    },
                )
                return False

            renewed = save_subscription(
                subscription,
                advance_period(subscription, ts, status_event="renewal_succeeded", status_changed_at=ts),
                session=session,
            )
        logger.info(
            "[renewal] Subscription renewed successfully",
            extra={
                "tenant_id": tenant.tenant_id,
                "subscription_id": subscription.id,
                "amount": str(amount),
                "intent_id": intent.id,
                "period_end": renewed.billing_period_ends_at.isoformat(),
            },
        )
        return True

    def _mark_past_due(
        self,
        tenant: TenantContext,
        subscription: Subscription,
        amount: Decimal,
        reason: str,
        ts: datetime,
        session: Session,
    ) -> Subscription:
        # Dunning counters start on the next dunning run, not here
        updated = subscription.evolve(
            status=SubscriptionStatus.PAST_DUE.value,
            status_event="renewal_failed",
            status_changed_at=ts,
        )
        saved = save_subscription(subscription, updated, session=session)
        record_payment_failure(
            tenant.tenant_id,
            reason=reason,
            amount=amount,
            failed_at=ts,
            notes="renewal",
            session=session,
        )
        return saved
