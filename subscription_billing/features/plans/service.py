"""
subscription_billing/features/plans/service.py

Plan manager: the only writer of subscription plan state.

Handles:
- Trial start / expiry
- Immediate plan changes (apply_plan, update_plan)
- Addon toggling on the team plan
- Scheduled downgrades: schedule, apply at renewal, cancel
- Feature flag sync after every state change that alters features

Each public operation is one transaction: read the subscription (row lock
where supported), derive the new state, write it once, then append history
and sync features in the same session.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from subscription_billing.core.config import Settings, settings as default_settings
from subscription_billing.core.database import session_scope
from subscription_billing.core.errors import ConflictError, ValidationError
from subscription_billing.core.logging import tenant_log_context
from subscription_billing.features.billing.periods import add_months, months_between
from subscription_billing.features.billing.subscriptions import (
    create_subscription,
    get_subscription,
    list_expired_trials,
    save_subscription,
)
from subscription_billing.features.plans.feature_flags import FeatureFlagStore, features_for_subscription
from subscription_billing.features.plans.history import record_plan_change
from subscription_billing.features.tenants.service import TenantDirectory
from subscription_billing.models.subscription import (
    Addon,
    PLAN_HIERARCHY,
    Plan,
    STARTER_USER_LIMIT,
    Subscription,
    SubscriptionStatus,
    ensure_utc,
)
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.plans")

CANCEL_WINDOW_HOURS = 24
UPGRADE_RENEWAL_DAYS = 30
DEFAULT_CONVERSION_USER_LIMIT = 5

# Purchased-license ceilings checked when scheduling a downgrade
PLAN_LICENSE_CEILING = {
    Plan.TEAM.value: 50,
    Plan.ENTERPRISE.value: 150,
}

_CLEARED_PENDING = {
    "pending_plan": None,
    "pending_user_limit": None,
    "pending_plan_effective_at": None,
}


def _normalize_now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) or datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def validate_plan(plan: str) -> str:
    valid = [p.value for p in Plan]
    if plan not in valid:
        raise ValidationError(f"Invalid plan '{plan}'. Must be one of: {', '.join(valid)}")
    return plan


def validate_addon(addon: str) -> str:
    valid = [a.value for a in Addon]
    if addon not in valid:
        raise ValidationError(f"Invalid addon '{addon}'. Must be one of: {', '.join(valid)}")
    return addon


def next_anchored_renewal(start: datetime, now: datetime) -> datetime:
    """First start + n months strictly after now, keeping start's day-of-month."""
    months = months_between(start, now) + 1
    candidate = add_months(start, months)
    while candidate <= now:
        months += 1
        candidate = add_months(start, months)
    return candidate


def can_cancel_downgrade(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """A pending downgrade can be cancelled only while renewal is more than 24h away."""
    if subscription is None or not subscription.has_pending_downgrade:
        return False
    if subscription.next_renewal_at is None:
        return False
    ts = _normalize_now(now)
    return subscription.next_renewal_at - ts > timedelta(hours=CANCEL_WINDOW_HOURS)


class PlanManager:
    def __init__(
        self,
        tenants: Optional[TenantDirectory] = None,
        feature_store: Optional[FeatureFlagStore] = None,
        settings_obj: Optional[Settings] = None,
    ):
        self.tenants = tenants or TenantDirectory()
        self.features = feature_store or FeatureFlagStore()
        self.settings = settings_obj or default_settings

    # ------------------------------------------------------------------
    # persistence helpers
    # ------------------------------------------------------------------

    def _save(
        self,
        s: Session,
        tenant: TenantContext,
        current: Optional[Subscription],
        updated: Subscription,
        *,
        sync_features: bool = True,
    ) -> Subscription:
        if current is None:
            saved = create_subscription(updated, session=s)
        else:
            saved = save_subscription(current, updated, session=s)
        if sync_features:
            self.features.sync(tenant, features_for_subscription(saved), session=s)
        return saved

    def _log_change(
        self,
        s: Session,
        tenant: TenantContext,
        previous_plan: Optional[str],
        new_plan: str,
        previous_user_limit: Optional[int],
        new_user_limit: Optional[int],
        changed_by: str,
        notes: str,
        ts: datetime,
    ) -> None:
        record_plan_change(
            tenant.tenant_id,
            previous_plan=previous_plan,
            new_plan=new_plan,
            previous_user_limit=previous_user_limit,
            new_user_limit=new_user_limit,
            changed_by=changed_by,
            notes=notes,
            changed_at=ts,
            session=s,
        )
        logger.info(
            "[plans] %s",
            notes,
            extra={
                "tenant_id": tenant.tenant_id,
                "previous_plan": previous_plan,
                "new_plan": new_plan,
                "previous_user_limit": previous_user_limit,
                "new_user_limit": new_user_limit,
                "changed_by": changed_by,
            },
        )

    def _applied(
        self,
        s: Session,
        tenant: TenantContext,
        current: Optional[Subscription],
        plan: str,
        addons: Iterable[str],
        ts: datetime,
    ) -> Subscription:
        """State after switching to `plan` immediately (not yet persisted)."""
        base = current or Subscription(tenant_id=tenant.tenant_id, plan=plan)
        previous_plan = current.plan if current else None

        if plan == Plan.STARTER.value:
            user_limit = STARTER_USER_LIMIT
            addons = []
        else:
            user_limit = base.user_limit
            # Starter's fixed 2 seats are not a purchase; seed from active users
            if previous_plan == Plan.STARTER.value:
                user_limit = max(1, self.tenants.active_user_count(tenant, session=s))

        start_date = base.subscription_start_date
        if start_date is None and plan != Plan.STARTER.value:
            start_date = ts

        changes: Dict[str, Any] = {
            "plan": plan,
            "is_trial": False,
            "trial_ends_at": None,
            "addons": list(addons or []),
            "status": SubscriptionStatus.ACTIVE.value,
            "user_limit": user_limit,
            "subscription_start_date": start_date,
        }
        # A pending downgrade must stay strictly below the plan it leaves
        if base.pending_plan and PLAN_HIERARCHY[base.pending_plan] >= PLAN_HIERARCHY[plan]:
            changes.update(_CLEARED_PENDING)
        return base.evolve(**changes)

    # ------------------------------------------------------------------
    # trial
    # ------------------------------------------------------------------

    def start_trial(self, tenant: TenantContext, *, now: Optional[datetime] = None, session: Optional[Session] = None) -> Subscription:
        """Start (or restart) the enterprise trial; calling again resets the clock."""
        ts = _normalize_now(now)
        fields = {
            "plan": validate_plan(self.settings.BILLING_TRIAL_PLAN),
            "status": SubscriptionStatus.ACTIVE.value,
            "is_trial": True,
            "trial_ends_at": ts + timedelta(days=self.settings.BILLING_TRIAL_DAYS),
            "user_limit": None,
            "addons": [],
            "failed_renewal_attempts": 0,
            "grace_period_until": None,
            **_CLEARED_PENDING,
        }
        with session_scope(session) as s:
            current = get_subscription(tenant.tenant_id, session=s, lock=True)
            if current is None:
                updated = Subscription(tenant_id=tenant.tenant_id, **fields)
            else:
                updated = current.evolve(**fields)
            saved = self._save(s, tenant, current, updated)

        logger.info(
            "[plans] trial started",
            extra={"tenant_id": tenant.tenant_id, "trial_ends_at": _iso(saved.trial_ends_at)},
        )
        return saved

    def end_trial(self, tenant: TenantContext, *, now: Optional[datetime] = None, session: Optional[Session] = None) -> Optional[Subscription]:
        """
        Downgrade an expired trial to starter.

        Returns None without a subscription, and the subscription unchanged
        when it is not a trial or the trial has not ended yet.
        """
        ts = _normalize_now(now)
        with session_scope(session) as s:
            current = get_subscription(tenant.tenant_id, session=s, lock=True)
            if current is None:
                return None
            if not current.is_trial:
                return current
            if current.trial_ends_at and current.trial_ends_at > ts:
                return current

            updated = current.evolve(
                plan=Plan.STARTER.value,
                is_trial=False,
                trial_ends_at=None,
                addons=[],
                user_limit=STARTER_USER_LIMIT,
                **_CLEARED_PENDING,
            )
            saved = self._save(s, tenant, current, updated)
            self._log_change(
                s, tenant,
                current.plan, Plan.STARTER.value,
                current.user_limit, STARTER_USER_LIMIT,
                "system", "Trial expired - downgraded to Starter plan", ts,
            )
            return saved

    def expire_trials(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        """End every trial whose end date has passed; one transaction per tenant."""
        ts = _normalize_now(now)
        candidates = list_expired_trials(ts)
        expired = 0
        failed = 0
        for sub in candidates:
            with tenant_log_context(sub.tenant_id):
                try:
                    tenant = self.tenants.get_tenant(sub.tenant_id)
                    if tenant is None:
                        logger.error("[plans] tenant not found for trial", extra={"subscription_id": sub.id})
                        failed += 1
                        continue
                    result = self.end_trial(tenant, now=ts)
                    if result is not None and not result.is_trial:
                        expired += 1
                except Exception as e:
                    logger.error(
                        "[plans] trial expiry failed",
                        exc_info=True,
                        extra={"subscription_id": sub.id, "error": str(e)},
                    )
                    failed += 1
        return {"checked": len(candidates), "expired": expired, "failed": failed}

    # ------------------------------------------------------------------
    # immediate changes
    # ------------------------------------------------------------------

    def apply_plan(
        self,
        tenant: TenantContext,
        plan: str,
        addons: Optional[Iterable[str]] = None,
        *,
        now: Optional[datetime] = None,
        changed_by: str = "system",
        session: Optional[Session] = None,
    ) -> Subscription:
        validate_plan(plan)
        addon_list = [validate_addon(a) for a in (addons or [])]
        ts = _normalize_now(now)

        with session_scope(session) as s:
            current = get_subscription(tenant.tenant_id, session=s, lock=True)
            updated = self._applied(s, tenant, current, plan, addon_list, ts)
            saved = self._save(s, tenant, current, updated)
            if current is not None:
                self._log_change(
                    s, tenant,
                    current.plan, plan,
                    current.user_limit, saved.user_limit,
                    changed_by, "Plan applied via apply_plan", ts,
                )
            return saved

    def sanitize_user_limit(self, requested: Optional[int], tenant_id: Optional[str] = None) -> Optional[int]:
        """Requested limits above the unlimited threshold are stored as unlimited."""
        if requested is None:
            return None
        threshold = self.settings.BILLING_UNLIMITED_USER_THRESHOLD
        if requested > threshold:
            logger.info(
                "[plans] user_limit sanitized to unlimited",
                extra={"tenant_id": tenant_id, "requested_limit": requested, "threshold": threshold},
            )
            return None
        return requested

    def update_plan(
        self,
        tenant: TenantContext,
        plan: str,
        user_limit: Optional[int],
        *,
        now: Optional[datetime] = None,
        changed_by: str = "system",
        session: Optional[Session] = None,
    ) -> Subscription:
        """
        Immediate upgrade path.

        Keeps current addons, stores the purchased user_limit as requested
        (starter is always 2), and restarts the renewal timer at now + 30 days.
        """
        validate_plan(plan)
        ts = _normalize_now(now)

        with session_scope(session) as s:
            current = get_subscription(tenant.tenant_id, session=s, lock=True)
            addons = current.addons if current else []
            updated = self._applied(s, tenant, current, plan, addons, ts)

            if plan == Plan.STARTER.value:
                limit = STARTER_USER_LIMIT
            elif user_limit is None:
                limit = updated.user_limit
            else:
                limit = self.sanitize_user_limit(user_limit, tenant.tenant_id)

            updated = updated.evolve(
                user_limit=limit,
                next_renewal_at=ts + timedelta(days=UPGRADE_RENEWAL_DAYS),
            )
            saved = self._save(s, tenant, current, updated)
            if current is not None:
                self._log_change(
                    s, tenant,
                    current.plan, plan,
                    current.user_limit, saved.user_limit,
                    changed_by, "Plan updated (immediate)", ts,
                )
            return saved

    def toggle_addon(
        self,
        tenant: TenantContext,
        addon: str,
        *,
        session: Optional[Session] = None,
    ) -> Dict[str, Any]:
        validate_addon(addon)

        with session_scope(session) as s:
            current = get_subscription(tenant.tenant_id, session=s, lock=True)
            if current is None or not current.is_active:
                raise ConflictError("No active subscription found. Cannot toggle addons.")

            if current.plan == Plan.STARTER.value:
                raise ValidationError(
                    "Addons are not available on the Starter plan. Upgrade to Team to enable addons."
                )

            if current.plan == Plan.ENTERPRISE.value:
                return {
                    "addon": addon,
                    "action": "no_change",
                    "message": "All features are already included in Enterprise plan.",
                    "subscription": current,
                }

            if current.has_addon(addon):
                addons = [a for a in current.addons if a != addon]
                action = "disabled"
            else:
                addons = [*current.addons, addon]
                action = "enabled"

            saved = self._save(s, tenant, current, current.evolve(addons=addons))

        logger.info(
            "[plans] addon toggled",
            extra={"tenant_id": tenant.tenant_id, "addon": addon, "action": action},
        )
        return {
            "addon": addon,
            "action": action,
            "message": f"Addon '{addon}' {action}.",
            "subscription": saved,
        }

    # ------------------------------------------------------------------
    # scheduled downgrades
    # ------------------------------------------------------------------

    def schedule_downgrade(
        self,
        tenant: TenantContext,
        target_plan: str,
        target_user_limit: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
        changed_by: str = "system",
        session: Optional[Session] = None,
    ) -> Dict[str, Any]:
        """
        Schedule a downgrade for the next renewal.

        A trial subscription is converted to the paid target plan immediately
        instead; nothing is scheduled in that case.
        """
        validate_plan(target_plan)
        ts = _normalize_now(now)

        with session_scope(session) as s:
            current = get_subscription(tenant.tenant_id, session=s, lock=True)
            if current is None:
                raise ConflictError("No active subscription found.")

            if current.is_trial:
                return self._convert_trial(s, tenant, current, target_plan, target_user_limit, ts, changed_by)

            if current.has_pending_downgrade:
                raise ConflictError(
                    f"A downgrade to {current.pending_plan} is already scheduled. "
                    "Cancel it first to schedule a different downgrade."
                )

            if current.plan == Plan.STARTER.value:
                raise ValidationError("Cannot downgrade from Starter plan (already lowest tier).")

            if PLAN_HIERARCHY[target_plan] >= PLAN_HIERARCHY[current.plan]:
                raise ValidationError(
                    f"Cannot schedule downgrade from {current.plan} to {target_plan}. Use upgrade instead."
                )

            if target_plan == Plan.STARTER.value:
                active_users = self.tenants.active_user_count(tenant, session=s)
                if active_users > STARTER_USER_LIMIT:
                    raise ValidationError(
                        f"Cannot convert to Starter plan. You have {active_users} active users, "
                        f"but Starter supports only {STARTER_USER_LIMIT}. "
                        "Please reduce users first or select another plan."
                    )
                pending_limit = STARTER_USER_LIMIT
            else:
                ceiling = PLAN_LICENSE_CEILING[target_plan]
                licenses = current.user_limit or 0
                label = target_plan.capitalize()
                if licenses > ceiling:
                    raise ValidationError(
                        f"Cannot downgrade to {label} plan. You currently have {licenses} licenses, "
                        f"but {label} plan supports up to {ceiling} licenses. "
                        "Please reduce your licenses first or contact support."
                    )
                if target_user_limit is not None and target_user_limit > ceiling:
                    raise ValidationError(
                        f"{label} plan supports up to {ceiling} licenses; requested {target_user_limit}."
                    )
                if target_user_limit is not None:
                    pending_limit = target_user_limit
                elif current.user_limit is not None:
                    pending_limit = min(current.user_limit, ceiling)
                else:
                    pending_limit = None

            effective_at = current.next_renewal_at or current.billing_period_ends_at
            updated = current.evolve(
                pending_plan=target_plan,
                pending_user_limit=pending_limit,
                pending_plan_effective_at=effective_at,
            )
            # Features stay on the current plan until the downgrade applies
            saved = self._save(s, tenant, current, updated, sync_features=False)
            self._log_change(
                s, tenant,
                current.plan, target_plan,
                current.user_limit, pending_limit,
                changed_by, "Downgrade scheduled for next renewal", ts,
            )

        return {
            "success": True,
            "message": "Downgrade scheduled for next billing cycle.",
            "effective_at": _iso(effective_at),
            "current_plan": saved.plan,
            "next_plan": target_plan,
            "pending_user_limit": saved.pending_user_limit,
        }

    def _convert_trial(
        self,
        s: Session,
        tenant: TenantContext,
        current: Subscription,
        target_plan: str,
        target_user_limit: Optional[int],
        ts: datetime,
        changed_by: str,
    ) -> Dict[str, Any]:
        active_users = self.tenants.active_user_count(tenant, session=s)
        if target_plan == Plan.STARTER.value:
            if active_users > STARTER_USER_LIMIT:
                raise ValidationError(
                    f"Cannot convert to Starter plan. You have {active_users} active users, "
                    f"but Starter supports only {STARTER_USER_LIMIT}. "
                    "Please reduce users first or select another plan."
                )
            user_limit = STARTER_USER_LIMIT
        else:
            user_limit = target_user_limit or DEFAULT_CONVERSION_USER_LIMIT
            if active_users > user_limit:
                raise ValidationError(
                    f"Cannot convert to this plan. You have {active_users} active users, "
                    f"but requested limit is {user_limit}. "
                    "Please reduce users first or select another plan."
                )

        start = current.subscription_start_date or ts
        next_renewal = next_anchored_renewal(start, ts)
        updated = current.evolve(
            plan=target_plan,
            is_trial=False,
            trial_ends_at=None,
            user_limit=user_limit,
            addons=[],
            status=SubscriptionStatus.ACTIVE.value,
            subscription_start_date=start,
            next_renewal_at=next_renewal,
            billing_period_started_at=ts,
            billing_period_ends_at=next_renewal,
            **_CLEARED_PENDING,
        )
        saved = self._save(s, tenant, current, updated)
        self._log_change(
            s, tenant,
            current.plan, target_plan,
            current.user_limit, user_limit,
            changed_by, "Trial converted to paid plan (immediate)", ts,
        )
        return {
            "success": True,
            "message": f"Trial converted to {target_plan.capitalize()} plan.",
            "is_immediate": True,
            "plan": saved.plan,
            "user_limit": saved.user_limit,
            "subscription_start_date": _iso(saved.subscription_start_date),
            "next_renewal_at": _iso(saved.next_renewal_at),
            "is_trial": False,
        }

    def apply_pending_downgrade(
        self,
        tenant: TenantContext,
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Optional[Subscription]:
        """Make a scheduled downgrade effective. Returns None when nothing is pending."""
        ts = _normalize_now(now)
        with session_scope(session) as s:
            current = get_subscription(tenant.tenant_id, session=s, lock=True)
            if current is None or not current.has_pending_downgrade:
                return None
            if current.is_trial:
                raise ConflictError(
                    f"Subscription {current.id} is a trial with a pending downgrade; refusing to apply"
                )

            new_plan = current.pending_plan
            if new_plan == Plan.STARTER.value:
                new_limit = STARTER_USER_LIMIT
            elif current.pending_user_limit is not None:
                new_limit = current.pending_user_limit
            else:
                new_limit = current.user_limit

            updated = current.evolve(
                plan=new_plan,
                user_limit=new_limit,
                addons=[],
                **_CLEARED_PENDING,
            )
            saved = self._save(s, tenant, current, updated)
            self._log_change(
                s, tenant,
                current.plan, new_plan,
                current.user_limit, new_limit,
                "system", "Scheduled downgrade applied at renewal", ts,
            )
            return saved

    def cancel_scheduled_downgrade(
        self,
        tenant: TenantContext,
        *,
        now: Optional[datetime] = None,
        changed_by: str = "user",
        session: Optional[Session] = None,
    ) -> Dict[str, Any]:
        ts = _normalize_now(now)
        with session_scope(session) as s:
            current = get_subscription(tenant.tenant_id, session=s, lock=True)
            if current is None:
                raise ConflictError("No active subscription found.")
            if not current.has_pending_downgrade:
                raise ConflictError("No scheduled downgrade to cancel.")

            if not can_cancel_downgrade(current, ts):
                if current.next_renewal_at is None:
                    raise ConflictError("Cannot cancel downgrade. Renewal date is not set.")
                hours = max(0, int((current.next_renewal_at - ts).total_seconds() // 3600))
                raise ConflictError(
                    f"Cannot cancel downgrade. Only {hours} hours until renewal "
                    f"({CANCEL_WINDOW_HOURS}h minimum required)."
                )

            saved = self._save(s, tenant, current, current.evolve(**_CLEARED_PENDING), sync_features=False)
            self._log_change(
                s, tenant,
                current.pending_plan, current.plan,
                current.pending_user_limit, current.user_limit,
                changed_by, "Scheduled downgrade cancelled by user", ts,
            )

        return {
            "success": True,
            "message": f"Scheduled downgrade cancelled. You will stay on the {saved.plan.capitalize()} plan.",
            "current_plan": saved.plan,
        }

    def can_cancel_downgrade(self, subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
        return can_cancel_downgrade(subscription, now)

    # ------------------------------------------------------------------
    # read side
    # ------------------------------------------------------------------

    def calculate_next_renewal(self, subscription: Subscription, now: Optional[datetime] = None) -> datetime:
        """Next renewal anchored to subscription_start_date's day of month."""
        ts = _normalize_now(now)
        if subscription.subscription_start_date is None:
            return subscription.next_renewal_at or add_months(ts, 1)
        return next_anchored_renewal(subscription.subscription_start_date, ts)

    def get_subscription_summary(self, tenant: TenantContext, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Plan state for display; an expired trial is ended first."""
        ts = _normalize_now(now)
        sub = get_subscription(tenant.tenant_id)
        if sub is not None and sub.is_trial and not sub.is_trial_active(ts):
            sub = self.end_trial(tenant, now=ts)

        active_users = self.tenants.active_user_count(tenant)
        if sub is None:
            return {
                "has_subscription": False,
                "plan": Plan.STARTER.value,
                "active_users": active_users,
                "features": features_for_subscription(None).model_dump(),
                "pending_downgrade": None,
                "can_cancel_downgrade": False,
            }

        trial_days_remaining = None
        if sub.is_trial and sub.trial_ends_at:
            trial_days_remaining = max(0, (sub.trial_ends_at - ts).days)

        pending = None
        if sub.has_pending_downgrade:
            pending = {
                "plan": sub.pending_plan,
                "user_limit": sub.pending_user_limit,
                "effective_at": _iso(sub.pending_plan_effective_at or sub.next_renewal_at),
            }

        return {
            "has_subscription": True,
            "plan": sub.plan,
            "display_plan": "trial_enterprise" if sub.is_trial else sub.plan,
            "status": sub.status,
            "is_trial": sub.is_trial,
            "trial_ends_at": _iso(sub.trial_ends_at),
            "trial_days_remaining": trial_days_remaining,
            "user_limit": sub.user_limit,
            "active_users": active_users,
            "addons": list(sub.addons),
            "features": features_for_subscription(sub).model_dump(),
            "subscription_start_date": _iso(sub.subscription_start_date),
            "next_renewal_at": _iso(sub.next_renewal_at),
            "billing_period_started_at": _iso(sub.billing_period_started_at),
            "billing_period_ends_at": _iso(sub.billing_period_ends_at),
            "pending_downgrade": pending,
            "can_cancel_downgrade": can_cancel_downgrade(sub, ts),
        }
