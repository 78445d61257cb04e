"""
Billing notifications.

Dunning sends four kinds of tenant notices. Delivery is an external concern;
the default implementation only logs. Failures to notify are logged by
notify_safely and never interrupt billing.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol

from subscription_billing.models.subscription import Subscription
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.notifier")


class Notifier(Protocol):
    def recovery_succeeded(self, tenant: TenantContext, subscription: Subscription, amount: Decimal) -> None:
        ...

    def retry_warning(
        self,
        tenant: TenantContext,
        subscription: Subscription,
        attempt: int,
        max_attempts: int,
        grace_period_until: Optional[datetime],
    ) -> None:
        ...

    def final_warning(self, tenant: TenantContext, subscription: Subscription, grace_period_until: Optional[datetime]) -> None:
        ...

    def subscription_canceled(self, tenant: TenantContext, subscription: Subscription) -> None:
        ...


class LoggingNotifier:
    """Notifier that records each notice in the log instead of sending mail."""

    def recovery_succeeded(self, tenant, subscription, amount):
        logger.info(
            "[notify] payment recovered",
            extra={"tenant_id": tenant.tenant_id, "to": tenant.email, "amount": str(amount)},
        )

    def retry_warning(self, tenant, subscription, attempt, max_attempts, grace_period_until):
        logger.info(
            "[notify] payment retry warning",
            extra={
                "tenant_id": tenant.tenant_id,
                "to": tenant.email,
                "attempt": attempt,
                "max_attempts": max_attempts,
                "grace_period_until": grace_period_until.isoformat() if grace_period_until else None,
            },
        )

    def final_warning(self, tenant, subscription, grace_period_until):
        logger.warning(
            "[notify] final payment warning",
            extra={
                "tenant_id": tenant.tenant_id,
                "to": tenant.email,
                "grace_period_until": grace_period_until.isoformat() if grace_period_until else None,
            },
        )

    def subscription_canceled(self, tenant, subscription):
        logger.warning(
            "[notify] subscription canceled",
            extra={"tenant_id": tenant.tenant_id, "to": tenant.email},
        )


def notify_safely(notifier: Notifier, kind: str, tenant: TenantContext, *args) -> bool:
    """Call notifier.<kind>(tenant, *args); log and return False on failure."""
    try:
        getattr(notifier, kind)(tenant, *args)
        return True
    except Exception as e:
        logger.error(
            "[notify] notification failed",
            extra={"tenant_id": tenant.tenant_id, "kind": kind, "error": str(e)},
        )
        return False
