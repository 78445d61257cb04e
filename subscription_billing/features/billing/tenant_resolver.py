"""Resolve the tenant a gateway object belongs to."""
import logging
from collections.abc import Mapping
from typing import Any, Optional

from subscription_billing.core.errors import NotFoundError, ValidationError
from subscription_billing.features.tenants.service import TenantDirectory
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.resolver")


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


class TenantStripeResolver:
    """Maps Stripe objects (intents, invoices, customers) to a TenantContext."""

    def __init__(self, tenants: Optional[TenantDirectory] = None):
        self.tenants = tenants or TenantDirectory()

    def resolve_from_metadata(self, stripe_object: Any) -> TenantContext:
        """
        Resolve via metadata.tenant_id.

        Raises:
            ValidationError: object carries no tenant_id
            NotFoundError: tenant_id does not exist
        """
        tenant_id = _field(_field(stripe_object, "metadata"), "tenant_id")
        object_id = _field(stripe_object, "id") or "unknown"

        if not tenant_id:
            logger.error(
                "[resolver] Missing tenant_id in Stripe metadata",
                extra={"object_type": _field(stripe_object, "object") or "unknown", "object_id": object_id},
            )
            raise ValidationError("Missing tenant_id in Stripe metadata")

        tenant = self.tenants.get_tenant(tenant_id)
        if tenant is None:
            logger.error(
                "[resolver] Tenant not found",
                extra={"tenant_id": tenant_id, "stripe_object_id": object_id},
            )
            raise NotFoundError(f"Tenant not found: {tenant_id}")

        logger.info(
            "[resolver] Tenant resolved",
            extra={"tenant_id": tenant.tenant_id, "tenant_slug": tenant.slug},
        )
        return tenant

    def resolve_from_customer(self, customer_id: str) -> TenantContext:
        tenant = self.tenants.find_by_stripe_customer(customer_id)
        if tenant is None:
            raise NotFoundError(f"No tenant for Stripe customer: {customer_id}")
        return tenant

    def resolve(self, stripe_object: Any) -> TenantContext:
        """metadata first, then the object's customer id."""
        if _field(_field(stripe_object, "metadata"), "tenant_id"):
            return self.resolve_from_metadata(stripe_object)
        customer = _field(stripe_object, "customer")
        if isinstance(customer, str) and customer:
            return self.resolve_from_customer(customer)
        return self.resolve_from_metadata(stripe_object)
