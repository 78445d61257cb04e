"""
Fake card gateway for development and tests.

Deterministic outcomes keyed on well-known test card numbers; anything else
(including a renewal with no card data) is approved.
"""
import secrets
from decimal import Decimal
from typing import Dict, Any, Optional

from subscription_billing.features.billing.gateway import PaymentIntent
from subscription_billing.models.tenant import TenantContext


TEST_CARDS = {
    "4111111111111111": ("completed", None),
    "4000000000000002": ("failed", "Card declined"),
    "4000000000000069": ("failed", "Card expired"),
    "4000000000000119": ("failed", "Processing error"),
}


class FakeCardGateway:
    """In-process PaymentGateway; never touches the network."""

    name = "fake"

    def __init__(self, currency: str = "EUR"):
        self.currency = currency

    def create_payment_intent(
        self,
        tenant: TenantContext,
        amount: Decimal,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        return PaymentIntent(
            id=f"fake_{secrets.token_hex(8)}",
            tenant_id=tenant.tenant_id,
            amount=Decimal(amount),
            currency=self.currency,
            status="pending",
            gateway=self.name,
            metadata=dict(metadata or {}),
        )

    def confirm_payment(
        self,
        intent: PaymentIntent,
        card_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        number = str((card_data or {}).get("number", "")).replace(" ", "")
        status, reason = TEST_CARDS.get(number, ("completed", None))
        return intent.with_status(status, failure_reason=reason)
