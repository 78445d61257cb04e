"""
Billing API routes.

Tenant-facing surface over the plan manager, pricing and status services.
The tenant is selected by the X-Tenant-ID header.

- GET    /billing/summary: plan, trial, limits, pending downgrade
- GET    /billing/status: status, payment failures, invoices, health
- GET    /billing/access: access restriction for the current status
- GET    /billing/price: price summary for the current subscription
- POST   /billing/plan: immediate plan change
- POST   /billing/addons/{addon}: toggle a team addon
- POST   /billing/downgrade: schedule a downgrade (converts a trial immediately)
- DELETE /billing/downgrade: cancel a scheduled downgrade
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from subscription_billing.core.logging import tenant_log_context
from subscription_billing.features.billing.pricing import PriceCalculator
from subscription_billing.features.billing.status_service import SubscriptionStatusService
from subscription_billing.features.billing.subscriptions import get_subscription
from subscription_billing.features.plans.service import PlanManager
from subscription_billing.features.tenants.service import TenantDirectory
from subscription_billing.models.tenant import TenantContext


router = APIRouter(prefix="/billing", tags=["billing"])


class PlanChangeRequest(BaseModel):
    """Immediate plan change."""
    plan: str
    user_limit: int | None = Field(default=None, ge=1)


class DowngradeRequest(BaseModel):
    """Downgrade scheduled for the next renewal."""
    plan: str
    user_limit: int | None = Field(default=None, ge=1)


def get_tenant(x_tenant_id: str = Header(...)):
    """Resolve the X-Tenant-ID header; unknown tenants are a 404."""
    tenant = TenantDirectory().require_tenant(x_tenant_id)
    with tenant_log_context(tenant.tenant_id):
        yield tenant


def _subscription_payload(subscription) -> Dict[str, Any]:
    return subscription.model_dump(mode="json", exclude={"version"})


@router.get("/summary")
def subscription_summary(tenant: TenantContext = Depends(get_tenant)):
    return PlanManager().get_subscription_summary(tenant)


@router.get("/status")
def subscription_status(tenant: TenantContext = Depends(get_tenant)):
    return SubscriptionStatusService().get_status(tenant)


@router.get("/access")
def access_restrictions(tenant: TenantContext = Depends(get_tenant)):
    return SubscriptionStatusService().check_access_restrictions(tenant)


@router.get("/price")
def price_summary(tenant: TenantContext = Depends(get_tenant)):
    subscription = get_subscription(tenant.tenant_id)
    user_count = TenantDirectory().active_user_count(tenant)
    return PriceCalculator().calculate_for_tenant(subscription, user_count)


@router.post("/plan")
def change_plan(request: PlanChangeRequest, tenant: TenantContext = Depends(get_tenant)):
    subscription = PlanManager().update_plan(tenant, request.plan, request.user_limit, changed_by="user")
    return {"success": True, "subscription": _subscription_payload(subscription)}


@router.post("/addons/{addon}")
def toggle_addon(addon: str, tenant: TenantContext = Depends(get_tenant)):
    result = PlanManager().toggle_addon(tenant, addon)
    subscription = result.pop("subscription")
    return {**result, "subscription": _subscription_payload(subscription)}


@router.post("/downgrade")
def schedule_downgrade(request: DowngradeRequest, tenant: TenantContext = Depends(get_tenant)):
    return PlanManager().schedule_downgrade(tenant, request.plan, request.user_limit, changed_by="user")


@router.delete("/downgrade")
def cancel_downgrade(tenant: TenantContext = Depends(get_tenant)):
    return PlanManager().cancel_scheduled_downgrade(tenant, changed_by="user")
