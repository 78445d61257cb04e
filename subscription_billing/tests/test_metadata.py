"""Gateway metadata is flat and string-only."""

from datetime import datetime, timezone

from subscription_billing.core.config import Settings
from subscription_billing.features.billing.metadata import MetadataBuilder
from subscription_billing.models.subscription import Subscription
from subscription_billing.models.tenant import TenantContext

TENANT = TenantContext(tenant_id="tenant-1", slug="acme", name="Acme")
START = datetime(2026, 3, 1, tzinfo=timezone.utc)
END = datetime(2026, 4, 1, tzinfo=timezone.utc)


def _builder():
    return MetadataBuilder(Settings(ENVIRONMENT="test", BILLING_APP_NAME="TimePerk"))


def test_tenant_billing_values_are_strings():
    meta = _builder().for_tenant_billing(TENANT, "team", ["planning", "ai"], 7, START, END)

    assert all(isinstance(v, str) for v in meta.values())
    assert meta["addons"] == "planning,ai"
    assert meta["user_count"] == "7"
    assert meta["billing_period_start"] == str(int(START.timestamp()))
    assert meta["app"] == "TimePerk"
    assert meta["environment"] == "test"


def test_period_keys_omitted_without_dates():
    meta = _builder().for_tenant_billing(TENANT, "starter")
    assert "billing_period_start" not in meta
    assert meta["addons"] == ""


def test_renewal_metadata():
    sub = Subscription(
        id=42,
        tenant_id="tenant-1",
        plan="team",
        user_limit=5,
        addons=["ai"],
        billing_period_started_at=START,
        billing_period_ends_at=END,
    )
    meta = _builder().for_renewal(TENANT, sub)

    assert meta["operation"] == "renewal"
    assert meta["subscription_id"] == "42"
    assert meta["user_count"] == "5"
    assert meta["billing_period_end"] == str(int(END.timestamp()))


def test_dunning_recovery_metadata():
    sub = Subscription(id=9, tenant_id="tenant-1", plan="enterprise", user_limit=None)
    meta = _builder().for_dunning_recovery(TENANT, sub, attempt=2)

    assert meta["operation"] == "dunning_recovery"
    assert meta["attempt"] == "2"
    assert meta["subscription_id"] == "9"
    assert meta["user_count"] == "0"


def test_invoice_item_serializes_structured_values():
    meta = _builder().for_invoice_item(TENANT, "addon", "AI", {"seats": 3, "tags": ["a", "b"]})
    assert meta["seats"] == "3"
    assert meta["tags"] == '["a", "b"]'


def test_parse_metadata_restores_types():
    builder = _builder()
    parsed = builder.parse_metadata(builder.for_tenant_billing(TENANT, "team", ["ai"], 4, START, END))

    assert parsed["addons"] == ["ai"]
    assert parsed["user_count"] == 4
    assert parsed["billing_period_end"] == int(END.timestamp())
