"""
subscription_billing/features/plans/feature_flags.py

Plan -> feature mapping and the tenant feature flag store.

resolve_features is the single source of truth for which features a
subscription unlocks. FeatureFlagStore persists the result; only the plan
manager writes through it.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from sqlalchemy import select, update, insert
from sqlalchemy.orm import Session

from subscription_billing.core.database import session_scope, tenant_features
from subscription_billing.models.subscription import Addon, Feature, FeatureSet, Plan, Subscription
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.features")


def resolve_features(plan: Optional[str], is_trial: bool, addons: Iterable[str] = ()) -> FeatureSet:
    """
    Map (plan, trial, addons) to the feature set.

    - enterprise, or any trial: everything on
    - team: timesheets, expenses, travels; planning and ai follow addons
    - starter (and anything unrecognized): timesheets and expenses only
    """
    if is_trial or plan == Plan.ENTERPRISE.value:
        return FeatureSet(timesheets=True, expenses=True, travels=True, planning=True, ai=True)

    if plan == Plan.TEAM.value:
        active = set(addons or ())
        return FeatureSet(
            timesheets=True,
            expenses=True,
            travels=True,
            planning=Addon.PLANNING.value in active,
            ai=Addon.AI.value in active,
        )

    return FeatureSet(timesheets=True, expenses=True, travels=False, planning=False, ai=False)


def features_for_subscription(subscription: Optional[Subscription]) -> FeatureSet:
    if subscription is None:
        return resolve_features(Plan.STARTER.value, False)
    return resolve_features(subscription.plan, subscription.is_trial, subscription.addons)


class FeatureFlagStore:
    """Per-tenant feature switches in tenant_features."""

    def _write(self, s: Session, tenant_id: str, feature: str, enabled: bool, ts: datetime) -> None:
        result = s.execute(
            update(tenant_features)
            .where(tenant_features.c.tenant_id == tenant_id)
            .where(tenant_features.c.feature == feature)
            .values(enabled=enabled, updated_at=ts)
        )
        if not result.rowcount:
            s.execute(
                insert(tenant_features).values(
                    tenant_id=tenant_id,
                    feature=feature,
                    enabled=enabled,
                    updated_at=ts,
                )
            )

    def activate(self, tenant: TenantContext, feature: str, *, session: Optional[Session] = None) -> None:
        with session_scope(session) as s:
            self._write(s, tenant.tenant_id, Feature(feature).value, True, datetime.now(timezone.utc))

    def deactivate(self, tenant: TenantContext, feature: str, *, session: Optional[Session] = None) -> None:
        with session_scope(session) as s:
            self._write(s, tenant.tenant_id, Feature(feature).value, False, datetime.now(timezone.utc))

    def sync(self, tenant: TenantContext, feature_set: FeatureSet, *, session: Optional[Session] = None) -> None:
        """Write every flag so the store mirrors feature_set exactly."""
        ts = datetime.now(timezone.utc)
        with session_scope(session) as s:
            for feature in Feature:
                self._write(s, tenant.tenant_id, feature.value, getattr(feature_set, feature.value), ts)
        logger.info(
            "[features] synced",
            extra={"tenant_id": tenant.tenant_id, "enabled": feature_set.enabled()},
        )

    def get_flags(self, tenant: TenantContext, *, session: Optional[Session] = None) -> Dict[str, bool]:
        with session_scope(session) as s:
            rows = s.execute(
                select(tenant_features.c.feature, tenant_features.c.enabled)
                .where(tenant_features.c.tenant_id == tenant.tenant_id)
            ).fetchall()
            return {row.feature: bool(row.enabled) for row in rows}
