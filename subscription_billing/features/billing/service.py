"""
Billing service helpers.

Gateway selection and the create-then-confirm charge sequence shared by the
renewal and dunning jobs. All Stripe-specific code is in stripe_gateway.py.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from subscription_billing.core.config import Settings, settings as default_settings
from subscription_billing.core.errors import ValidationError
from subscription_billing.features.billing.fake_gateway import FakeCardGateway
from subscription_billing.features.billing.gateway import (
    PaymentDeclinedError,
    PaymentGateway,
    PaymentIntent,
)
from subscription_billing.features.billing.stripe_gateway import StripeGateway
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.gateway")


def billing_enabled(settings_obj: Optional[Settings] = None) -> bool:
    """Real charging is on when the Stripe driver is selected and keyed."""
    cfg = settings_obj or default_settings
    return cfg.BILLING_GATEWAY == "stripe" and bool(cfg.STRIPE_SECRET_KEY)


def get_gateway(name: Optional[str] = None, settings_obj: Optional[Settings] = None) -> PaymentGateway:
    """
    Build the configured payment gateway.

    Raises:
        ValidationError: unknown driver name
        PaymentGatewayError: stripe selected without a secret key
    """
    cfg = settings_obj or default_settings
    driver = (name or cfg.BILLING_GATEWAY or "fake").lower()

    if driver in ("fake", "fake_card"):
        return FakeCardGateway(currency=cfg.BILLING_CURRENCY)
    if driver == "stripe":
        return StripeGateway(secret_key=cfg.STRIPE_SECRET_KEY, currency=cfg.BILLING_CURRENCY)
    raise ValidationError(f"Unsupported payment driver: {driver}")


def charge(
    gateway: PaymentGateway,
    tenant: TenantContext,
    amount: Decimal,
    metadata: Dict[str, str],
    card_data: Optional[Dict[str, Any]] = None,
) -> PaymentIntent:
    """
    Create and confirm a payment in one blocking call.

    Returns:
        The confirmed intent

    Raises:
        PaymentDeclinedError: the gateway answered but did not approve
        PaymentGatewayError: network or processor failure
    """
    intent = gateway.create_payment_intent(tenant, amount, metadata)
    confirmed = gateway.confirm_payment(intent, card_data)
    if not confirmed.succeeded:
        logger.warning(
            "[gateway] payment not confirmed",
            extra={
                "tenant_id": tenant.tenant_id,
                "intent_id": confirmed.id,
                "status": confirmed.status,
                "reason": confirmed.failure_reason,
            },
        )
        raise PaymentDeclinedError(
            f"Payment confirmation failed: {confirmed.failure_reason or confirmed.status}"
        )
    return confirmed
