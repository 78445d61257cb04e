"""Tenant lookup, gateway tenant resolution, ERP invoice sync and invoice dispatch."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from subscription_billing.core.config import Settings
from subscription_billing.core.errors import NotFoundError, ValidationError
from subscription_billing.features.billing.invoice_dispatcher import InvoiceDispatcher
from subscription_billing.features.billing.invoice_sync import InvoiceSyncService
from subscription_billing.features.billing.tenant_resolver import TenantStripeResolver
from subscription_billing.models.payment import Payment


# ---------------------------------------------------------------------------
# tenant directory
# ---------------------------------------------------------------------------

def test_active_user_count_ignores_inactive(directory, add_users, tenant):
    add_users(tenant, 3)
    add_users(tenant, 2, active=False, prefix="old")
    directory.deactivate_user(tenant, "user0@acme.test")

    assert directory.active_user_count(tenant) == 2


def test_require_tenant(directory, tenant):
    assert directory.require_tenant(tenant.tenant_id) == tenant
    with pytest.raises(NotFoundError):
        directory.require_tenant("nope")


# ---------------------------------------------------------------------------
# resolver
# ---------------------------------------------------------------------------

def test_resolve_from_metadata(tenant):
    resolver = TenantStripeResolver()

    resolved = resolver.resolve_from_metadata({"id": "pi_1", "metadata": {"tenant_id": tenant.tenant_id}})

    assert resolved == tenant


def test_resolve_from_stripe_object_attributes(tenant):
    intent = SimpleNamespace(id="pi_1", object="payment_intent", metadata={"tenant_id": tenant.tenant_id})

    assert TenantStripeResolver().resolve(intent).slug == "acme"


def test_resolve_missing_tenant_id():
    with pytest.raises(ValidationError, match="Missing tenant_id"):
        TenantStripeResolver().resolve_from_metadata({"id": "pi_1", "metadata": {}})


def test_resolve_unknown_tenant():
    with pytest.raises(NotFoundError, match="Tenant not found: ghost"):
        TenantStripeResolver().resolve_from_metadata({"id": "pi_1", "metadata": {"tenant_id": "ghost"}})


def test_resolve_falls_back_to_customer(tenant):
    invoice = {"id": "in_1", "customer": "cus_acme", "metadata": {}}

    assert TenantStripeResolver().resolve(invoice) == tenant


def test_resolve_unknown_customer():
    with pytest.raises(NotFoundError):
        TenantStripeResolver().resolve_from_customer("cus_missing")


# ---------------------------------------------------------------------------
# invoice sync
# ---------------------------------------------------------------------------

@pytest.fixture
def invoices():
    return InvoiceSyncService(Settings(BILLING_ERP_NOTIFY_EMAIL="finance@acme.test"))


def _stripe_invoice(invoice_id, status="paid", amount=25960, **extra):
    return {
        "id": invoice_id,
        "status": status,
        "amount_due": amount,
        "amount_paid": amount if status == "paid" else 0,
        "currency": "eur",
        "invoice_pdf": f"https://files.test/{invoice_id}.pdf",
        "period_start": 1772323200,
        "period_end": 1775001600,
        "metadata": {"plan": "team", "addons": "ai,planning"},
        **extra,
    }


def test_upsert_invoice_converts_cents_and_sets_deadline(invoices, tenant, now):
    invoice = invoices.upsert_invoice(tenant, _stripe_invoice("in_1"), now=now)

    assert invoice.amount_due == Decimal("259.60")
    assert invoice.currency == "EUR"
    assert invoice.tenant_slug == "acme"
    assert invoice.erp_deadline_at == now + timedelta(days=15)
    assert invoice.billing_period_start == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert invoice.plan == "team"
    assert invoice.addons == ["ai", "planning"]


def test_upsert_keeps_original_deadline(invoices, tenant, now):
    invoices.upsert_invoice(tenant, _stripe_invoice("in_1", status="open"), now=now)
    updated = invoices.upsert_invoice(tenant, _stripe_invoice("in_1", status="paid"), now=now + timedelta(days=3))

    assert updated.status == "paid"
    assert updated.erp_deadline_at == now + timedelta(days=15)


def test_pending_approaching_and_overdue(invoices, tenant, now):
    invoices.upsert_invoice(tenant, _stripe_invoice("in_old"), now=now - timedelta(days=20))
    invoices.upsert_invoice(tenant, _stripe_invoice("in_soon"), now=now - timedelta(days=10))
    invoices.upsert_invoice(tenant, _stripe_invoice("in_new"), now=now)
    invoices.upsert_invoice(tenant, _stripe_invoice("in_draft", status="draft"), now=now)

    pending = invoices.list_pending(now=now)
    assert [p["stripe_invoice_id"] for p in pending] == ["in_old", "in_soon", "in_new"]
    assert pending[0]["is_overdue"] is True

    approaching = invoices.list_approaching_deadline(7, now=now)
    assert {i["stripe_invoice_id"] for i in approaching} == {"in_old", "in_soon"}

    overdue = invoices.list_overdue(now=now)
    assert [i["stripe_invoice_id"] for i in overdue] == ["in_old"]
    assert overdue[0]["days_overdue"] == 5


def test_mark_processed(invoices, tenant, now):
    invoices.upsert_invoice(tenant, _stripe_invoice("in_1"), now=now)

    result = invoices.mark_processed(["in_1", "in_missing"], notes="entered in ERP", now=now)

    assert result == {"success": 1, "failed": 1}
    assert invoices.list_pending(now=now) == []


def test_summary(invoices, tenant, now):
    invoices.upsert_invoice(tenant, _stripe_invoice("in_old", amount=10000), now=now - timedelta(days=20))
    invoices.upsert_invoice(tenant, _stripe_invoice("in_new", amount=4400), now=now)
    invoices.upsert_invoice(tenant, _stripe_invoice("in_done", amount=5900), now=now)
    invoices.mark_processed("in_done", now=now)

    summary = invoices.get_summary(now=now)

    assert summary["pending_count"] == 2
    assert summary["processed_count"] == 1
    assert summary["overdue_count"] == 1
    assert summary["overdue_amount"] == 100.0
    assert summary["pending_amount"] == pytest.approx(144.0)
    assert summary["legal_deadline_days"] == 15


def test_notifications_need_an_address(tenant, now):
    assert InvoiceSyncService(Settings(BILLING_ERP_NOTIFY_EMAIL=None)).send_notifications(now=now) is False


def test_notifications_with_address(invoices, tenant, now):
    invoices.upsert_invoice(tenant, _stripe_invoice("in_1"), now=now)

    assert invoices.send_notifications(now=now) is True


# ---------------------------------------------------------------------------
# invoice dispatcher
# ---------------------------------------------------------------------------

def _payment(**overrides):
    fields = dict(
        id=11,
        tenant_id="tenant-acme",
        plan="team",
        user_limit=5,
        addons=["ai"],
        amount=Decimal("259.60"),
        currency="EUR",
        cycle_start=datetime(2026, 3, 1, tzinfo=timezone.utc),
        cycle_end=datetime(2026, 3, 31, tzinfo=timezone.utc),
        stripe_payment_intent_id="pi_1",
        status="paid",
        paid_at=datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return Payment(**fields)


def test_dispatcher_refuses_unpaid():
    dispatcher = InvoiceDispatcher()

    assert dispatcher.queue_invoice(_payment(status="pending")) is False
    assert dispatcher.queue_invoice(_payment()) is True


def test_invoice_details(tenant):
    details = InvoiceDispatcher().get_invoice_details(_payment(), tenant)

    assert details["invoice_date"] == "2026-03-01"
    assert details["billing_period"] == {"start": "2026-03-01", "end": "2026-03-31"}
    assert details["tenant"]["name"] == tenant.name
    assert details["line_items"][0]["description"] == "Team Plan"
    assert details["line_items"][0]["unit_price"] == 51.92
    assert details["line_items"][1]["description"] == "AI Add-on"
    assert details["total"] == 259.6


def test_invoice_status_disabled():
    dispatcher = InvoiceDispatcher()

    assert dispatcher.is_enabled() is False
    assert dispatcher.get_invoice_status(_payment()) == "disabled"
