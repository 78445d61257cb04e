"""
Payment gateway protocol.

Defines the charging interface the billing jobs call into. Implementations
(Stripe, fake card processor) are interchangeable and selected by
configuration, so business logic never imports a concrete gateway.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field, replace
from decimal import Decimal

from subscription_billing.models.tenant import TenantContext


SUCCESS_STATUSES = frozenset({"completed", "succeeded"})


@dataclass(frozen=True)
class PaymentIntent:
    """A charge attempt as seen by the gateway."""
    id: str
    tenant_id: str
    amount: Decimal
    currency: str
    status: str  # pending, completed, succeeded, failed, ...
    gateway: str
    metadata: Dict[str, str] = field(default_factory=dict)
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES

    def with_status(self, status: str, failure_reason: Optional[str] = None) -> "PaymentIntent":
        return replace(self, status=status, failure_reason=failure_reason)


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must handle:
    - Creating a payment intent for an amount
    - Confirming it, with a saved payment method or explicit card data
    """

    name: str

    def create_payment_intent(
        self,
        tenant: TenantContext,
        amount: Decimal,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        """
        Create a payment intent for the tenant.

        Args:
            tenant: Tenant being charged
            amount: Amount in major currency units
            metadata: Flat string map attached for reconciliation

        Returns:
            Intent in a pending state

        Raises:
            PaymentGatewayError: If the gateway rejects the request
        """
        ...

    def confirm_payment(
        self,
        intent: PaymentIntent,
        card_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        """
        Confirm a payment intent.

        Args:
            intent: Intent returned by create_payment_intent
            card_data: Card details; None charges the saved payment method

        Returns:
            Intent with its final status; `succeeded` tells whether money moved

        Raises:
            PaymentGatewayError: On network or processor failure
        """
        ...


class PaymentGatewayError(Exception):
    """Base exception for payment gateway errors."""
    pass


class PaymentDeclinedError(PaymentGatewayError):
    """The charge reached the processor and was not approved."""
    pass
