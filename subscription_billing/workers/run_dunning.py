"""Daily dunning job: retry failed renewals and cancel after the grace period."""
from datetime import datetime
import logging

from subscription_billing.core.config import settings
from subscription_billing.core.logging import configure_logging
from subscription_billing.features.billing.dunning_service import BillingDunningService

logger = logging.getLogger("billing.workers.dunning")

SUMMARY_ROWS = (
    ("Total checked", "total_checked"),
    ("Recovered", "recovered"),
    ("Failed", "failed"),
    ("Canceled", "canceled"),
)


def format_summary(result: dict) -> str:
    width = max(len(label) for label, _ in SUMMARY_ROWS)
    lines = [f"{'Metric'.ljust(width)}  Count", f"{'-' * width}  -----"]
    lines += [f"{label.ljust(width)}  {result.get(key, 0)}" for label, key in SUMMARY_ROWS]
    return "\n".join(lines)


def run_dunning(*, now: datetime | None = None, service: BillingDunningService | None = None) -> dict:
    svc = service or BillingDunningService()
    result = svc.run_dunning_process(now=now)
    logger.info("[dunning] job finished", extra=result)
    return result


if __name__ == "__main__":
    configure_logging(settings.ENV)
    print("Starting billing dunning process...")
    result = run_dunning()
    print("Billing dunning process complete.")
    print(format_summary(result))
