"""Hourly job: drop expired enterprise trials to the starter plan."""
from datetime import datetime, timezone
import logging

from subscription_billing.core.config import settings
from subscription_billing.core.logging import configure_logging
from subscription_billing.features.billing.job_runs import record_job_run
from subscription_billing.features.plans.service import PlanManager

logger = logging.getLogger("billing.workers.trials")

JOB_NAME = "billing.expire_trials"


def expire_trials(*, now: datetime | None = None, manager: PlanManager | None = None) -> dict:
    started_at = datetime.now(timezone.utc)
    result = (manager or PlanManager()).expire_trials(now=now)
    record_job_run(JOB_NAME, started_at, result)
    logger.info("[plans] trial expiry finished", extra=result)
    return result


if __name__ == "__main__":
    configure_logging(settings.ENV)
    result = expire_trials()
    print(result)
