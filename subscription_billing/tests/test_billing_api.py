from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from subscription_billing.features.billing.subscriptions import get_subscription
from subscription_billing.main import create_app


@pytest.fixture
def client():
    return TestClient(create_app())


@pytest.fixture
def headers(tenant):
    return {"X-Tenant-ID": tenant.tenant_id}


def _soon(days):
    return datetime.now(timezone.utc) + timedelta(days=days)


def test_health(client):
    res = client.get("/health")

    assert res.status_code == 200
    assert res.json()["database"] is True
    assert res.headers["x-request-id"]


def test_request_id_is_echoed(client, headers, make_subscription, tenant):
    make_subscription(tenant, plan="team", user_limit=3)

    res = client.get("/billing/summary", headers={**headers, "x-request-id": "req-123"})

    assert res.headers["x-request-id"] == "req-123"


def test_missing_tenant_header_is_rejected(client):
    res = client.get("/billing/summary")

    assert res.status_code == 422


def test_unknown_tenant_is_404(client):
    res = client.get("/billing/summary", headers={"X-Tenant-ID": "nope"})

    assert res.status_code == 404
    assert res.json()["error"]["code"] == "not_found"


def test_summary(client, headers, make_subscription, add_users, tenant):
    make_subscription(tenant, plan="team", user_limit=3, addons=["ai"])
    add_users(tenant, 2)

    body = client.get("/billing/summary", headers=headers).json()

    assert body["plan"] == "team"
    assert body["active_users"] == 2
    assert body["addons"] == ["ai"]
    assert body["features"]["ai"] is True


def test_price(client, headers, make_subscription, tenant):
    make_subscription(tenant, plan="team", user_limit=5, addons=["planning"])

    body = client.get("/billing/price", headers=headers).json()

    assert body["base_subtotal"] == 220.0
    assert body["total"] == 259.6


def test_status_and_access(client, headers, make_subscription, tenant):
    make_subscription(tenant, plan="team", user_limit=5, status="paused")

    status = client.get("/billing/status", headers=headers).json()
    access = client.get("/billing/access", headers=headers).json()

    assert status["is_paused"] is True
    assert access["restricted"] is True


def test_change_plan(client, headers, make_subscription, tenant):
    make_subscription(tenant, plan="team", user_limit=3)

    res = client.post("/billing/plan", json={"plan": "enterprise", "user_limit": 12}, headers=headers)

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["subscription"]["plan"] == "enterprise"
    assert body["subscription"]["user_limit"] == 12


def test_change_plan_rejects_unknown_plan(client, headers, make_subscription, tenant):
    make_subscription(tenant, plan="team", user_limit=3)

    res = client.post("/billing/plan", json={"plan": "platinum"}, headers=headers)

    assert res.status_code == 400
    assert res.json()["error"]["code"] == "validation_error"


def test_toggle_addon(client, headers, make_subscription, tenant):
    make_subscription(tenant, plan="team", user_limit=3)

    res = client.post("/billing/addons/planning", headers=headers)

    assert res.json()["action"] == "enabled"
    assert res.json()["subscription"]["addons"] == ["planning"]


def test_toggle_addon_on_starter_is_400(client, headers, make_subscription, tenant):
    make_subscription(tenant, plan="starter", user_limit=2)

    res = client.post("/billing/addons/ai", headers=headers)

    assert res.status_code == 400


def test_schedule_and_cancel_downgrade(client, headers, make_subscription, tenant):
    make_subscription(tenant, plan="enterprise", user_limit=10, next_renewal_at=_soon(10))

    scheduled = client.post("/billing/downgrade", json={"plan": "team"}, headers=headers)
    assert scheduled.status_code == 200
    assert scheduled.json()["next_plan"] == "team"

    canceled = client.delete("/billing/downgrade", headers=headers)
    assert canceled.status_code == 200
    assert get_subscription(tenant.tenant_id).pending_plan is None


def test_cancel_downgrade_inside_window_is_409(client, headers, make_subscription, tenant):
    make_subscription(tenant, plan="team", user_limit=2, pending_plan="starter", next_renewal_at=_soon(0.5))

    res = client.delete("/billing/downgrade", headers=headers)

    assert res.status_code == 409
    assert "24h minimum required" in res.json()["error"]["message"]
