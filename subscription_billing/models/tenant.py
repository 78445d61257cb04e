"""
subscription_billing/models/tenant.py

Explicit tenant context passed to every billing operation.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class TenantContext(BaseModel):
    """
    Identifies the tenant an operation runs for.

    Jobs iterate many tenants in one process, so the tenant is always passed
    in rather than read from ambient request state.
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    slug: str
    name: str
    email: Optional[str] = None
    stripe_customer_id: Optional[str] = None
