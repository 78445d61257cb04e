"""
subscription_billing/features/billing/dunning_service.py

Recovery of failed renewal payments.

Lifecycle of a past_due subscription:
    attempt 0 (renewal just failed)
    -> attempts 1..MAX_RETRY_ATTEMPTS (one retry per run)
    -> recovered (active) or grace period expired (canceled, downgraded to starter)

The first failed retry opens a grace period of GRACE_PERIOD_DAYS. Once
attempts reach the maximum the subscription waits for the grace period to
expire without further charges.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional

from subscription_billing.core.config import Settings, settings as default_settings
from subscription_billing.core.database import get_db_session
from subscription_billing.core.logging import tenant_log_context
from subscription_billing.features.billing.failures import record_payment_failure, resolve_pending_failures
from subscription_billing.features.billing.gateway import PaymentGateway, PaymentGatewayError
from subscription_billing.features.billing.job_runs import record_job_run
from subscription_billing.features.billing.metadata import MetadataBuilder
from subscription_billing.features.billing.notifier import LoggingNotifier, Notifier, notify_safely
from subscription_billing.features.billing.pricing import PriceCalculator
from subscription_billing.features.billing.renewal_service import advance_period
from subscription_billing.features.billing.service import charge, get_gateway
from subscription_billing.features.billing.subscriptions import get_subscription, list_past_due, save_subscription
from subscription_billing.features.plans.service import PlanManager
from subscription_billing.features.tenants.service import TenantDirectory
from subscription_billing.models.payment import PaymentFailureStatus
from subscription_billing.models.subscription import Plan, Subscription, SubscriptionStatus, ensure_utc
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.dunning")

JOB_NAME = "billing.dunning"

MAX_RETRY_ATTEMPTS = 3
GRACE_PERIOD_DAYS = 7

RECOVERED = "recovered"
FAILED = "failed"
CANCELED = "canceled"
SKIPPED = "skipped"


class BillingDunningService:
    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        plan_manager: Optional[PlanManager] = None,
        notifier: Optional[Notifier] = None,
        pricing: Optional[PriceCalculator] = None,
        metadata_builder: Optional[MetadataBuilder] = None,
        tenants: Optional[TenantDirectory] = None,
        settings_obj: Optional[Settings] = None,
    ):
        self.settings = settings_obj or default_settings
        self.gateway = gateway or get_gateway(settings_obj=self.settings)
        self.tenants = tenants or TenantDirectory()
        self.plans = plan_manager or PlanManager(tenants=self.tenants, settings_obj=self.settings)
        self.notifier = notifier or LoggingNotifier()
        self.pricing = pricing or PriceCalculator(self.settings)
        self.metadata = metadata_builder or MetadataBuilder(self.settings)
        self.max_retry_attempts = self.settings.BILLING_MAX_RETRY_ATTEMPTS or MAX_RETRY_ATTEMPTS
        self.grace_period_days = self.settings.BILLING_GRACE_PERIOD_DAYS or GRACE_PERIOD_DAYS

    def run_dunning_process(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Process every past_due subscription once.

        Returns:
            {"total_checked", "recovered", "failed", "canceled"}
        """
        ts = ensure_utc(now) or datetime.now(timezone.utc)
        started_at = datetime.now(timezone.utc)
        stats = {"total_checked": 0, RECOVERED: 0, FAILED: 0, CANCELED: 0}

        if not self.settings.BILLING_DUNNING_ENABLED:
            logger.info("[dunning] Dunning disabled, skipping run")
            return stats

        past_due = list_past_due()
        stats["total_checked"] = len(past_due)
        logger.info("[dunning] Starting dunning process", extra={"past_due": len(past_due)})

        for subscription in past_due:
            with tenant_log_context(subscription.tenant_id):
                try:
                    outcome = self.process_subscription(subscription, now=ts)
                except Exception as e:
                    logger.error(
                        "[dunning] Fatal error in dunning loop",
                        exc_info=True,
                        extra={
                            "tenant_id": subscription.tenant_id,
                            "subscription_id": subscription.id,
                            "error": str(e),
                        },
                    )
                    outcome = FAILED
                if outcome in stats:
                    stats[outcome] += 1

        logger.info("[dunning] Dunning process complete", extra=stats)
        record_job_run(JOB_NAME, started_at, stats)
        return stats

    def process_subscription(self, subscription: Subscription, *, now: Optional[datetime] = None) -> str:
        """One dunning step; returns recovered, failed, canceled or skipped."""
        ts = ensure_utc(now) or datetime.now(timezone.utc)

        tenant = self.tenants.get_tenant(subscription.tenant_id)
        if tenant is None:
            logger.error(
                "[dunning] Tenant not found for subscription",
                extra={"tenant_id": subscription.tenant_id, "subscription_id": subscription.id},
            )
            return FAILED

        if subscription.grace_period_until is not None and subscription.grace_period_until < ts:
            self.cancel_subscription(tenant, subscription, now=ts)
            return CANCELED

        if subscription.failed_renewal_attempts >= self.max_retry_attempts:
            logger.info(
                "[dunning] Max attempts reached, waiting for grace period expiry",
                extra={
                    "tenant_id": tenant.tenant_id,
                    "subscription_id": subscription.id,
                    "attempts": subscription.failed_renewal_attempts,
                    "grace_period_until": subscription.grace_period_until.isoformat()
                    if subscription.grace_period_until else None,
                },
            )
            return SKIPPED

        return RECOVERED if self.attempt_recovery(tenant, subscription, now=ts) else FAILED

    def attempt_recovery(self, tenant: TenantContext, subscription: Subscription, *, now: Optional[datetime] = None) -> bool:
        ts = ensure_utc(now) or datetime.now(timezone.utc)
        attempt = subscription.failed_renewal_attempts + 1
        amount = self.pricing.renewal_amount(subscription)

        logger.info(
            "[dunning] Attempting recovery charge",
            extra={
                "tenant_id": tenant.tenant_id,
                "subscription_id": subscription.id,
                "attempt": attempt,
                "amount": str(amount),
            },
        )

        try:
            if amount <= 0:
                intent_id = None
            else:
                intent = charge(
                    self.gateway,
                    tenant,
                    amount,
                    self.metadata.for_dunning_recovery(tenant, subscription, attempt),
                )
                intent_id = intent.id
        except PaymentGatewayError as e:
            self._record_failed_attempt(tenant, subscription, attempt, amount, str(e), ts)
            return False
        except Exception as e:
            # Timeouts and other unexpected gateway errors still use up an attempt
            logger.error(
                "[dunning] Unexpected error during recovery charge",
                exc_info=True,
                extra={"tenant_id": tenant.tenant_id, "subscription_id": subscription.id, "attempt": attempt},
            )
            self._record_failed_attempt(tenant, subscription, attempt, amount, str(e) or type(e).__name__, ts)
            return False

        updated = advance_period(
            subscription,
            ts,
            failed_renewal_attempts=0,
            grace_period_until=None,
            status_event="payment_recovered",
            status_changed_at=ts,
        )
        with get_db_session() as session:
            recovered = save_subscription(subscription, updated, session=session)
            resolve_pending_failures(tenant.tenant_id, "dunning_recovery", resolved_at=ts, session=session)

        logger.info(
            "[dunning] Recovery successful",
            extra={
                "tenant_id": tenant.tenant_id,
                "subscription_id": subscription.id,
                "attempt": attempt,
                "intent_id": intent_id,
            },
        )
        notify_safely(self.notifier, "recovery_succeeded", tenant, recovered, amount)
        return True

    def _record_failed_attempt(
        self,
        tenant: TenantContext,
        subscription: Subscription,
        attempt: int,
        amount: Decimal,
        reason: str,
        ts: datetime,
    ) -> Subscription:
        grace_until = subscription.grace_period_until
        if attempt == 1:
            grace_until = ts + timedelta(days=self.grace_period_days)

        updated = subscription.evolve(failed_renewal_attempts=attempt, grace_period_until=grace_until)
        with get_db_session() as session:
            saved = save_subscription(subscription, updated, session=session)
            record_payment_failure(
                tenant.tenant_id,
                reason=reason,
                amount=amount,
                status=PaymentFailureStatus.RETRYING.value,
                failed_at=ts,
                notes=f"dunning attempt {attempt}",
                session=session,
            )

        logger.error(
            "[dunning] Recovery attempt failed",
            extra={
                "tenant_id": tenant.tenant_id,
                "subscription_id": subscription.id,
                "attempt": attempt,
                "max_attempts": self.max_retry_attempts,
                "grace_period_until": grace_until.isoformat() if grace_until else None,
                "error": reason,
            },
        )

        if attempt < self.max_retry_attempts:
            notify_safely(
                self.notifier, "retry_warning", tenant, saved, attempt, self.max_retry_attempts, grace_until
            )
        else:
            notify_safely(self.notifier, "final_warning", tenant, saved, grace_until)
        return saved

    def cancel_subscription(self, tenant: TenantContext, subscription: Subscription, *, now: Optional[datetime] = None) -> Subscription:
        """
        Cancel after the grace period and drop the tenant to starter.

        The downgrade runs in a savepoint inside the cancel transaction; if it
        fails it is rolled back and logged and the cancel still commits.
        """
        ts = ensure_utc(now) or datetime.now(timezone.utc)

        with get_db_session() as session:
            current = get_subscription(tenant.tenant_id, session=session, lock=True) or subscription
            base = current
            try:
                with session.begin_nested():
                    base = self.plans.apply_plan(
                        tenant,
                        Plan.STARTER.value,
                        [],
                        now=ts,
                        changed_by="system:dunning",
                        session=session,
                    )
            except Exception as e:
                logger.error(
                    "[dunning] Failed to downgrade to Starter",
                    exc_info=True,
                    extra={"tenant_id": tenant.tenant_id, "subscription_id": current.id, "error": str(e)},
                )
                base = current

            canceled = save_subscription(
                base,
                base.evolve(
                    status=SubscriptionStatus.CANCELED.value,
                    failed_renewal_attempts=0,
                    grace_period_until=None,
                    status_event="dunning_grace_expired",
                    status_changed_at=ts,
                ),
                session=session,
            )
            resolve_pending_failures(
                tenant.tenant_id,
                "dunning_canceled",
                status=PaymentFailureStatus.ABANDONED.value,
                resolved_at=ts,
                session=session,
            )

        logger.warning(
            "[dunning] Subscription canceled due to failed payments",
            extra={
                "tenant_id": tenant.tenant_id,
                "subscription_id": canceled.id,
                "failed_attempts": current.failed_renewal_attempts,
                "plan": canceled.plan,
            },
        )
        notify_safely(self.notifier, "subscription_canceled", tenant, canceled)
        return canceled
