"""Invoice generation hand-off for paid snapshots. Dispatch is log-only until an ERP is wired in."""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from subscription_billing.models.payment import Payment
from subscription_billing.models.subscription import Addon
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.invoices")

ADDON_LABELS = {
    Addon.PLANNING.value: "Planning Add-on",
    Addon.AI.value: "AI Add-on",
}


def _unit_price(payment: Payment) -> Decimal:
    seats = payment.user_limit or 0
    if seats <= 0:
        return Decimal("0.00")
    return (payment.amount / seats).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class InvoiceDispatcher:
    def is_enabled(self) -> bool:
        return False

    def queue_invoice(self, payment: Payment) -> bool:
        """Queue invoice generation; unpaid snapshots are refused."""
        if not payment.is_paid:
            logger.warning(
                "[invoices] Cannot queue invoice for unpaid payment",
                extra={"payment_id": payment.id, "status": payment.status},
            )
            return False

        logger.info(
            "[invoices] Invoice queued",
            extra={
                "payment_id": payment.id,
                "tenant_id": payment.tenant_id,
                "plan": payment.plan,
                "user_limit": payment.user_limit,
                "addons": list(payment.addons),
                "amount": str(payment.amount),
                "currency": payment.currency,
                "cycle_start": payment.cycle_start.date().isoformat(),
                "cycle_end": payment.cycle_end.date().isoformat(),
                "intent_id": payment.stripe_payment_intent_id,
            },
        )
        return True

    def get_invoice_details(self, payment: Payment, tenant: Optional[TenantContext] = None) -> Dict[str, Any]:
        quantity = payment.user_limit or 0
        line_items: List[Dict[str, Any]] = [
            {
                "description": f"{payment.plan.capitalize()} Plan",
                "quantity": quantity,
                "unit_price": float(_unit_price(payment)),
                "total": float(payment.amount),
            }
        ]
        for addon in payment.addons:
            line_items.append(
                {
                    "description": ADDON_LABELS.get(addon, addon),
                    "quantity": quantity,
                    "unit_price": 0.0,
                    "total": 0.0,
                }
            )

        invoice_date = payment.paid_at or payment.created_at or payment.cycle_start
        return {
            "invoice_date": invoice_date.date().isoformat(),
            "billing_period": {
                "start": payment.cycle_start.date().isoformat(),
                "end": payment.cycle_end.date().isoformat(),
            },
            "tenant": {
                "id": payment.tenant_id,
                "name": tenant.name if tenant else "Unknown",
            },
            "line_items": line_items,
            "subtotal": float(payment.amount),
            "tax": 0.0,
            "total": float(payment.amount),
            "currency": payment.currency,
            "payment_method": "Stripe",
            "status": payment.status,
        }

    def get_invoice_status(self, payment: Payment) -> str:
        if not self.is_enabled():
            return "disabled"
        if "invoice_number" in payment.metadata:
            return "generated"
        if "invoice_error" in payment.metadata:
            return "failed"
        return "pending"
