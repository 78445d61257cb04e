"""
Stripe payment gateway.

Implements the PaymentGateway protocol on top of Stripe PaymentIntents.
Renewals and dunning retries charge the customer's saved payment method
off-session.
"""
import os
from decimal import Decimal
from typing import Dict, Any, Optional
import stripe

from subscription_billing.features.billing.gateway import (
    PaymentGatewayError,
    PaymentIntent,
)
from subscription_billing.models.tenant import TenantContext


def _to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class StripeGateway:
    """Stripe implementation of PaymentGateway protocol."""

    name = "stripe"

    def __init__(self, secret_key: Optional[str] = None, currency: str = "EUR"):
        """
        Initialize Stripe gateway.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            currency: ISO currency code for new intents
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.currency = currency

        if not self.secret_key:
            raise PaymentGatewayError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def create_payment_intent(
        self,
        tenant: TenantContext,
        amount: Decimal,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        """Create a Stripe PaymentIntent for the tenant's customer."""
        if not tenant.stripe_customer_id:
            raise PaymentGatewayError(f"Tenant {tenant.tenant_id} has no Stripe customer")

        meta = {"tenant_id": tenant.tenant_id, **(metadata or {})}
        try:
            intent = stripe.PaymentIntent.create(
                amount=_to_cents(amount),
                currency=self.currency.lower(),
                customer=tenant.stripe_customer_id,
                metadata=meta,
                description=f"{meta.get('operation', 'charge')} {meta.get('plan', '')}".strip(),
            )
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Stripe payment intent creation failed: {e}")

        return PaymentIntent(
            id=intent.id,
            tenant_id=tenant.tenant_id,
            amount=Decimal(amount),
            currency=self.currency,
            status="pending",
            gateway=self.name,
            metadata=meta,
        )

    def confirm_payment(
        self,
        intent: PaymentIntent,
        card_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        """Confirm the PaymentIntent; without card data the saved method is used."""
        params: Dict[str, Any] = {}
        if card_data and card_data.get("payment_method"):
            params["payment_method"] = card_data["payment_method"]
        else:
            params["off_session"] = True

        try:
            confirmed = stripe.PaymentIntent.confirm(intent.id, **params)
        except stripe.CardError as e:
            return intent.with_status("failed", failure_reason=str(e))
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Stripe payment confirmation failed: {e}")

        if confirmed.status == "succeeded":
            return intent.with_status("succeeded")
        if confirmed.status == "processing":
            return intent.with_status("processing")
        return intent.with_status("failed", failure_reason=f"Stripe status: {confirmed.status}")
