"""
subscription_billing/features/tenants/service.py

Tenant directory: resolves tenant ids to TenantContext and reports the
active-user count used for plan capacity checks.
"""

from typing import Optional

from sqlalchemy import select, insert, update, func
from sqlalchemy.orm import Session

from subscription_billing.core.database import session_scope, tenants, tenant_users
from subscription_billing.core.errors import NotFoundError
from subscription_billing.models.tenant import TenantContext


def _to_context(row) -> TenantContext:
    return TenantContext(
        tenant_id=row.id,
        slug=row.slug,
        name=row.name,
        email=row.email,
        stripe_customer_id=row.stripe_customer_id,
    )


class TenantDirectory:
    """Read/write access to the central tenant registry."""

    def get_tenant(self, tenant_id: str, *, session: Optional[Session] = None) -> Optional[TenantContext]:
        with session_scope(session) as s:
            row = s.execute(select(tenants).where(tenants.c.id == tenant_id)).first()
            return _to_context(row) if row else None

    def require_tenant(self, tenant_id: str, *, session: Optional[Session] = None) -> TenantContext:
        tenant = self.get_tenant(tenant_id, session=session)
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {tenant_id}")
        return tenant

    def find_by_stripe_customer(self, customer_id: str, *, session: Optional[Session] = None) -> Optional[TenantContext]:
        with session_scope(session) as s:
            row = s.execute(
                select(tenants).where(tenants.c.stripe_customer_id == customer_id)
            ).first()
            return _to_context(row) if row else None

    def active_user_count(self, tenant: TenantContext, *, session: Optional[Session] = None) -> int:
        """Count users with an active seat. Display and capacity only, never billing."""
        with session_scope(session) as s:
            count = s.execute(
                select(func.count())
                .select_from(tenant_users)
                .where(tenant_users.c.tenant_id == tenant.tenant_id)
                .where(tenant_users.c.is_active.is_(True))
            ).scalar()
            return int(count or 0)

    def create_tenant(
        self,
        tenant_id: str,
        slug: str,
        name: str,
        *,
        email: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> TenantContext:
        with session_scope(session) as s:
            s.execute(
                insert(tenants).values(
                    id=tenant_id,
                    slug=slug,
                    name=name,
                    email=email,
                    stripe_customer_id=stripe_customer_id,
                )
            )
        return TenantContext(
            tenant_id=tenant_id,
            slug=slug,
            name=name,
            email=email,
            stripe_customer_id=stripe_customer_id,
        )

    def add_user(self, tenant: TenantContext, email: str, *, active: bool = True, session: Optional[Session] = None) -> None:
        with session_scope(session) as s:
            s.execute(
                insert(tenant_users).values(
                    tenant_id=tenant.tenant_id,
                    email=email,
                    is_active=active,
                )
            )

    def deactivate_user(self, tenant: TenantContext, email: str, *, session: Optional[Session] = None) -> bool:
        with session_scope(session) as s:
            result = s.execute(
                update(tenant_users)
                .where(tenant_users.c.tenant_id == tenant.tenant_id)
                .where(tenant_users.c.email == email)
                .values(is_active=False)
            )
            return bool(result.rowcount)
