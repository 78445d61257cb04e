"""
Gateway metadata builder.

Builds the flat string-to-string maps attached to payment intents and
invoices so a gateway object can be traced back to a tenant, plan and
billing period. The gateway only accepts string values, so every value is
stringified here and parse_metadata converts back.
"""
from __future__ import annotations

import json
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from subscription_billing.core.config import Settings, settings as default_settings
from subscription_billing.models.subscription import Subscription
from subscription_billing.models.tenant import TenantContext

Timestamp = Union[int, datetime, None]


def _unix(value: Timestamp) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(value)


def _format_addons(addons: Iterable[str]) -> str:
    return ",".join(addons or [])


def _parse_addons(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [a for a in raw.split(",") if a]


class MetadataBuilder:
    def __init__(self, settings_obj: Optional[Settings] = None):
        self.settings = settings_obj or default_settings

    def for_tenant_billing(
        self,
        tenant: TenantContext,
        plan: str,
        addons: Iterable[str] = (),
        user_count: int = 0,
        period_start: Timestamp = None,
        period_end: Timestamp = None,
    ) -> Dict[str, str]:
        metadata = {
            "tenant_id": tenant.tenant_id,
            "tenant_slug": tenant.slug,
            "plan": plan,
            "addons": _format_addons(addons),
            "user_count": str(user_count or 0),
            "app": self.settings.BILLING_APP_NAME,
            "environment": self.settings.ENVIRONMENT,
        }
        start = _unix(period_start)
        end = _unix(period_end)
        if start is not None:
            metadata["billing_period_start"] = str(start)
        if end is not None:
            metadata["billing_period_end"] = str(end)
        return metadata

    def for_subscription_billing(
        self,
        tenant: TenantContext,
        subscription_id: Union[int, str],
        plan: str,
        addons: Iterable[str],
        user_count: int,
        period_start: Timestamp,
        period_end: Timestamp,
    ) -> Dict[str, str]:
        metadata = self.for_tenant_billing(tenant, plan, addons, user_count, period_start, period_end)
        metadata["subscription_id"] = str(subscription_id)
        return metadata

    def for_one_time_charge(
        self,
        tenant: TenantContext,
        plan: str,
        addons: Iterable[str],
        user_count: int,
        charge_type: str = "plan_purchase",
    ) -> Dict[str, str]:
        metadata = self.for_tenant_billing(tenant, plan, addons, user_count)
        metadata["charge_type"] = charge_type
        metadata["charge_timestamp"] = str(int(time.time()))
        return metadata

    def for_invoice_item(
        self,
        tenant: TenantContext,
        item_type: str,
        item_name: str,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        metadata = {
            "tenant_id": tenant.tenant_id,
            "tenant_slug": tenant.slug,
            "item_type": item_type,
            "item_name": item_name,
            "app": self.settings.BILLING_APP_NAME,
        }
        for key, value in (additional_data or {}).items():
            metadata[key] = json.dumps(value) if isinstance(value, (list, dict)) else str(value)
        return metadata

    def for_renewal(self, tenant: TenantContext, subscription: Subscription) -> Dict[str, str]:
        """Metadata for a scheduled renewal charge of the current period."""
        metadata = self.for_subscription_billing(
            tenant,
            subscription.id,
            subscription.plan,
            subscription.addons,
            subscription.user_limit or 0,
            subscription.billing_period_started_at,
            subscription.billing_period_ends_at,
        )
        metadata["operation"] = "renewal"
        return metadata

    def for_dunning_recovery(self, tenant: TenantContext, subscription: Subscription, attempt: int) -> Dict[str, str]:
        """Metadata for a dunning retry charge."""
        metadata = self.for_tenant_billing(
            tenant,
            subscription.plan,
            subscription.addons,
            subscription.user_limit or 0,
        )
        metadata["operation"] = "dunning_recovery"
        metadata["subscription_id"] = str(subscription.id)
        metadata["attempt"] = str(attempt)
        return metadata

    def parse_metadata(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Inverse of for_tenant_billing: addons back to a list, counts back to ints."""
        start = metadata.get("billing_period_start")
        end = metadata.get("billing_period_end")
        return {
            "tenant_id": metadata.get("tenant_id"),
            "tenant_slug": metadata.get("tenant_slug"),
            "plan": metadata.get("plan"),
            "addons": _parse_addons(metadata.get("addons")),
            "user_count": int(metadata["user_count"]) if metadata.get("user_count") else 0,
            "billing_period_start": int(start) if start else None,
            "billing_period_end": int(end) if end else None,
        }
