from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import stripe

from subscription_billing.core.config import Settings
from subscription_billing.core.errors import ValidationError
from subscription_billing.features.billing.fake_gateway import FakeCardGateway
from subscription_billing.features.billing.gateway import PaymentDeclinedError, PaymentGatewayError
from subscription_billing.features.billing.service import billing_enabled, charge, get_gateway
from subscription_billing.features.billing.stripe_gateway import StripeGateway
from subscription_billing.models.tenant import TenantContext

TENANT = TenantContext(tenant_id="tenant-acme", slug="acme", name="Acme", stripe_customer_id="cus_acme")


@pytest.mark.parametrize(
    "number,status,reason",
    [
        ("4111 1111 1111 1111", "completed", None),
        ("4000000000000002", "failed", "Card declined"),
        ("4000000000000069", "failed", "Card expired"),
        ("4000000000000119", "failed", "Processing error"),
    ],
)
def test_fake_gateway_test_cards(number, status, reason):
    gateway = FakeCardGateway()
    intent = gateway.create_payment_intent(TENANT, Decimal("44.00"), {"plan": "team"})

    confirmed = gateway.confirm_payment(intent, {"number": number})

    assert confirmed.status == status
    assert confirmed.failure_reason == reason
    assert confirmed.id == intent.id


def test_fake_gateway_approves_saved_method():
    gateway = FakeCardGateway()
    intent = gateway.create_payment_intent(TENANT, Decimal("10"))

    assert gateway.confirm_payment(intent).succeeded is True
    assert intent.id.startswith("fake_")


def test_get_gateway_selects_driver():
    assert isinstance(get_gateway("fake"), FakeCardGateway)
    assert isinstance(get_gateway("fake_card"), FakeCardGateway)
    assert get_gateway(settings_obj=Settings(BILLING_GATEWAY="fake", BILLING_CURRENCY="USD")).currency == "USD"


def test_get_gateway_rejects_unknown_driver():
    with pytest.raises(ValidationError):
        get_gateway("paypal")


def test_stripe_gateway_requires_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

    with pytest.raises(PaymentGatewayError):
        get_gateway("stripe", settings_obj=Settings(STRIPE_SECRET_KEY=None))


def test_billing_enabled():
    assert billing_enabled(Settings(BILLING_GATEWAY="fake")) is False
    assert billing_enabled(Settings(BILLING_GATEWAY="stripe", STRIPE_SECRET_KEY=None)) is False
    assert billing_enabled(Settings(BILLING_GATEWAY="stripe", STRIPE_SECRET_KEY="sk_test_x")) is True


def test_charge_raises_on_decline():
    gateway = FakeCardGateway()

    with pytest.raises(PaymentDeclinedError, match="Card declined"):
        charge(gateway, TENANT, Decimal("44"), {}, {"number": "4000000000000002"})


def test_charge_returns_confirmed_intent():
    confirmed = charge(FakeCardGateway(), TENANT, Decimal("44"), {"operation": "renewal"})

    assert confirmed.succeeded
    assert confirmed.metadata == {"operation": "renewal"}


@pytest.fixture
def stripe_api(monkeypatch):
    """Replace the two PaymentIntent calls the gateway makes."""
    api = SimpleNamespace(
        create=Mock(return_value=SimpleNamespace(id="pi_123")),
        confirm=Mock(return_value=SimpleNamespace(status="succeeded")),
    )
    monkeypatch.setattr(stripe.PaymentIntent, "create", api.create)
    monkeypatch.setattr(stripe.PaymentIntent, "confirm", api.confirm)
    monkeypatch.setattr(stripe, "api_key", None)
    return api


def test_stripe_create_sends_cents_and_tenant(stripe_api):
    gateway = StripeGateway(secret_key="sk_test_x")

    intent = gateway.create_payment_intent(TENANT, Decimal("259.60"), {"operation": "renewal", "plan": "team"})

    kwargs = stripe_api.create.call_args.kwargs
    assert kwargs["amount"] == 25960
    assert kwargs["currency"] == "eur"
    assert kwargs["customer"] == "cus_acme"
    assert kwargs["metadata"]["tenant_id"] == "tenant-acme"
    assert kwargs["description"] == "renewal team"
    assert intent.id == "pi_123"
    assert intent.status == "pending"


def test_stripe_create_requires_customer(stripe_api):
    gateway = StripeGateway(secret_key="sk_test_x")
    tenant = TENANT.model_copy(update={"stripe_customer_id": None})

    with pytest.raises(PaymentGatewayError):
        gateway.create_payment_intent(tenant, Decimal("44"))
    stripe_api.create.assert_not_called()


def test_stripe_create_wraps_stripe_errors(stripe_api):
    stripe_api.create.side_effect = stripe.APIConnectionError("network down")
    gateway = StripeGateway(secret_key="sk_test_x")

    with pytest.raises(PaymentGatewayError, match="creation failed"):
        gateway.create_payment_intent(TENANT, Decimal("44"))


def test_stripe_confirm_off_session_by_default(stripe_api):
    gateway = StripeGateway(secret_key="sk_test_x")
    intent = gateway.create_payment_intent(TENANT, Decimal("44"))

    confirmed = gateway.confirm_payment(intent)

    stripe_api.confirm.assert_called_once_with("pi_123", off_session=True)
    assert confirmed.succeeded


def test_stripe_confirm_with_payment_method(stripe_api):
    gateway = StripeGateway(secret_key="sk_test_x")
    intent = gateway.create_payment_intent(TENANT, Decimal("44"))

    gateway.confirm_payment(intent, {"payment_method": "pm_card_visa"})

    stripe_api.confirm.assert_called_once_with("pi_123", payment_method="pm_card_visa")


def test_stripe_card_error_is_a_failed_intent(stripe_api):
    stripe_api.confirm.side_effect = stripe.CardError("Your card was declined.", None, "card_declined")
    gateway = StripeGateway(secret_key="sk_test_x")
    intent = gateway.create_payment_intent(TENANT, Decimal("44"))

    confirmed = gateway.confirm_payment(intent)

    assert confirmed.status == "failed"
    assert "declined" in confirmed.failure_reason


def test_stripe_requires_action_is_not_success(stripe_api):
    stripe_api.confirm.return_value = SimpleNamespace(status="requires_action")
    gateway = StripeGateway(secret_key="sk_test_x")

    with pytest.raises(PaymentDeclinedError, match="requires_action"):
        charge(gateway, TENANT, Decimal("44"), {})
