from datetime import timedelta
from decimal import Decimal

import pytest

from subscription_billing.core.config import Settings
from subscription_billing.core.errors import ConflictError, ValidationError
from subscription_billing.features.billing.failures import list_pending_failures, record_payment_failure
from subscription_billing.features.billing.invoice_sync import InvoiceSyncService
from subscription_billing.features.billing.status_service import (
    SubscriptionStatusService,
    access_for_status,
    calculate_health,
)
from subscription_billing.features.billing.subscriptions import get_subscription


@pytest.fixture
def statuses():
    return SubscriptionStatusService(Settings())


@pytest.mark.parametrize(
    "status,failures,level",
    [
        ("active", [], "healthy"),
        ("trialing", [], "healthy"),
        ("active", ["open failure"], "warning"),
        ("past_due", [], "warning"),
        ("paused", [], "warning"),
        ("unpaid", [], "critical"),
        ("canceled", [], "critical"),
        ("incomplete", [], "unknown"),
    ],
)
def test_calculate_health(status, failures, level):
    health = calculate_health(status, failures)

    assert health["level"] == level
    assert health["requires_action"] is (level in ("warning", "critical"))


def test_access_for_status():
    assert access_for_status("active") == {"restricted": False, "reason": None}
    assert access_for_status("canceled")["restricted"] is True
    assert access_for_status("unpaid")["restricted"] is True
    assert access_for_status("paused")["restricted"] is True
    assert access_for_status("paused", restrict_when_paused=False)["restricted"] is False

    past_due = access_for_status("past_due")
    assert past_due["restricted"] is False
    assert past_due["warning"] is True


def test_update_status_records_event(statuses, make_subscription, tenant, now):
    make_subscription(tenant, plan="team", user_limit=3)

    sub = statuses.update_status(tenant, "paused", "customer.subscription.paused", {"pause_method": "portal"}, now=now)

    assert sub.status == "paused"
    assert sub.status_event == "customer.subscription.paused"
    assert sub.status_changed_at == now
    assert get_subscription(tenant.tenant_id).status == "paused"


def test_update_status_same_status_is_noop(statuses, make_subscription, tenant, now):
    created = make_subscription(tenant, plan="team", user_limit=3)

    sub = statuses.update_status(tenant, "active", "invoice.paid", now=now)

    assert sub.version == created.version
    assert sub.status_event is None


def test_force_update_rewrites_same_status(statuses, make_subscription, tenant, now):
    created = make_subscription(tenant, plan="team", user_limit=3)

    sub = statuses.update_status(tenant, "active", "force_update", now=now)

    assert sub.version == created.version + 1
    assert sub.status_event == "force_update"


def test_reactivation_resolves_open_failures(statuses, make_subscription, tenant, now):
    make_subscription(tenant, plan="team", user_limit=3, status="past_due")
    record_payment_failure(tenant.tenant_id, reason="declined", failed_at=now - timedelta(days=2))

    statuses.update_status(tenant, "active", "invoice.payment_succeeded", now=now)

    assert list_pending_failures(tenant.tenant_id) == []


def test_update_status_rejects_unknown_status(statuses, make_subscription, tenant):
    make_subscription(tenant, plan="team", user_limit=3)

    with pytest.raises(ValidationError):
        statuses.update_status(tenant, "frozen", "manual")


def test_update_status_without_subscription(statuses, tenant):
    with pytest.raises(ConflictError):
        statuses.update_status(tenant, "paused", "manual")


def test_get_status_read_model(statuses, make_subscription, tenant, now):
    make_subscription(
        tenant,
        plan="team",
        user_limit=3,
        addons=["planning"],
        status="past_due",
        next_renewal_at=now + timedelta(days=10),
    )
    statuses.record_payment_failure(tenant, "insufficient_funds", Decimal("132.00"), stripe_invoice_id="in_1", now=now - timedelta(days=3))
    InvoiceSyncService(Settings()).upsert_invoice(
        tenant,
        {"id": "in_1", "status": "open", "amount_due": 13200, "amount_paid": 0, "currency": "eur"},
        now=now,
    )

    result = statuses.get_status(tenant, now=now)

    assert result["status"] == "past_due"
    assert result["is_paused"] is False
    assert result["plan"] == "team"
    assert result["active_addons"] == ["planning"]
    assert result["renews_at"] == (now + timedelta(days=10)).isoformat()
    assert result["has_payment_failures"] is True
    assert result["payment_failures"][0]["amount"] == 132.0
    assert result["payment_failures"][0]["days_since_failure"] == 3
    assert result["recent_invoices"][0]["amount_due"] == 132.0
    assert result["health"]["level"] == "warning"


def test_get_status_without_subscription(statuses, tenant):
    result = statuses.get_status(tenant)

    assert result["status"] is None
    assert result["health"]["level"] == "unknown"
    assert result["recent_invoices"] == []


def test_check_access_restrictions_uses_settings(make_subscription, tenant):
    make_subscription(tenant, plan="team", user_limit=3, status="paused")

    strict = SubscriptionStatusService(Settings())
    lenient = SubscriptionStatusService(Settings(BILLING_RESTRICT_ACCESS_WHEN_PAUSED=False))

    assert strict.check_access_restrictions(tenant)["restricted"] is True
    assert lenient.check_access_restrictions(tenant)["restricted"] is False
