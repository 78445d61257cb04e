"""Daily renewal job: charge subscriptions whose billing period has ended."""
from datetime import datetime
import logging

from subscription_billing.core.config import settings
from subscription_billing.core.logging import configure_logging
from subscription_billing.features.billing.renewal_service import BillingRenewalService

logger = logging.getLogger("billing.workers.renewals")


def run_renewals(*, now: datetime | None = None, service: BillingRenewalService | None = None) -> dict:
    svc = service or BillingRenewalService()
    result = svc.run_for_due_subscriptions(now=now)
    logger.info("[renewal] job finished", extra=result)
    return result


if __name__ == "__main__":
    configure_logging(settings.ENV)
    result = run_renewals()
    print(result)
