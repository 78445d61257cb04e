"""
Plan pricing.

Pure functions of plan, purchased licenses and addons. Billing always uses
the purchased user_limit; the live active-user count is display only and
never reduces a charge.

Team addons are each a flat percentage of the base subtotal and are not
compounded on top of each other.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from subscription_billing.core.config import Settings, settings as default_settings
from subscription_billing.models.subscription import (
    Addon,
    Plan,
    STARTER_USER_LIMIT,
    Subscription,
    ensure_utc,
)
from subscription_billing.features.plans.feature_flags import resolve_features

logger = logging.getLogger("billing.pricing")

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def _money(value) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


class PriceCalculator:
    def __init__(self, settings_obj: Optional[Settings] = None):
        self.settings = settings_obj or default_settings

    def price_per_user(self, plan: Optional[str]) -> Decimal:
        if plan == Plan.TEAM.value:
            return Decimal(str(self.settings.BILLING_TEAM_PRICE_PER_USER))
        if plan == Plan.ENTERPRISE.value:
            return Decimal(str(self.settings.BILLING_ENTERPRISE_PRICE_PER_USER))
        return ZERO

    def addon_rate(self, plan: Optional[str], addon: str) -> Decimal:
        """Surcharge rate for an addon; only team sells addons."""
        if plan != Plan.TEAM.value or addon not in {a.value for a in Addon}:
            return ZERO
        return Decimal(str(self.settings.BILLING_TEAM_ADDON_PCT))

    def calculate_plan_price(self, plan: str, user_limit: Optional[int] = None) -> Decimal:
        """Monthly base price for a plan (checkout preview)."""
        seats = user_limit if user_limit is not None else 1
        return _money(self.price_per_user(plan) * seats)

    def calculate_amount(self, plan: str, user_limit: Optional[int], addons: Iterable[str] = ()) -> Decimal:
        """price_per_user x seats, plus each addon's percentage of that base."""
        seats = user_limit if user_limit is not None else 1
        base = self.price_per_user(plan) * seats
        surcharge = sum((base * self.addon_rate(plan, a) for a in set(addons or ())), ZERO)
        return _money(base + surcharge)

    def renewal_amount(self, subscription: Subscription) -> Decimal:
        """Amount charged when the subscription renews or is recovered by dunning."""
        return self.calculate_amount(subscription.plan, subscription.user_limit, subscription.addons)

    def calculate_license_increment_price(
        self,
        subscription: Optional[Subscription],
        new_user_limit: int,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """Prorated charge for extra licenses until the next renewal (min one day)."""
        if subscription is None:
            return ZERO

        current = subscription.user_limit or 0
        increment = new_user_limit - current
        if increment <= 0:
            return ZERO

        ts = ensure_utc(now) or datetime.now(timezone.utc)
        next_renewal = subscription.next_renewal_at or ts + timedelta(days=30)
        days_remaining = max(1, (next_renewal - ts).days)
        factor = Decimal(days_remaining) / Decimal(30)

        amount = _money(self.price_per_user(subscription.plan) * increment * factor)
        logger.info(
            "[pricing] license increment",
            extra={
                "tenant_id": subscription.tenant_id,
                "license_increment": increment,
                "days_remaining": days_remaining,
                "amount": str(amount),
            },
        )
        return amount

    def calculate_plan_upgrade_price(
        self,
        subscription: Optional[Subscription],
        new_plan: str,
        new_user_limit: Optional[int] = None,
    ) -> Decimal:
        """New plan price x licenses; no proration and no credit for the old plan."""
        if subscription is None:
            return self.calculate_plan_price(new_plan, new_user_limit or 1)
        seats = new_user_limit or subscription.user_limit or 1
        return self.calculate_plan_price(new_plan, seats)

    def calculate_for_tenant(
        self,
        subscription: Optional[Subscription],
        user_count: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Billing summary shown to the tenant.

        user_count is the live active-user count and only drives display and
        the requires_upgrade hint.
        """
        ts = ensure_utc(now) or datetime.now(timezone.utc)

        if subscription is None or (subscription.plan == Plan.STARTER.value and not subscription.is_trial):
            return self._starter_summary(user_count)

        if subscription.is_trial_active(ts):
            nominal = _money(self.price_per_user(Plan.ENTERPRISE.value) * user_count)
            return {
                "plan": "trial_enterprise",
                "is_trial": True,
                "user_count": user_count,
                "base_subtotal": float(nominal),
                "addons": {Addon.PLANNING.value: 0.0, Addon.AI.value: 0.0},
                "total": 0.0,
                "requires_upgrade": False,
                "features": resolve_features(Plan.ENTERPRISE.value, True).model_dump(),
                "trial": {"ends_at": subscription.trial_ends_at.isoformat() if subscription.trial_ends_at else None},
            }

        if subscription.plan not in (Plan.TEAM.value, Plan.ENTERPRISE.value):
            return self._starter_summary(user_count)

        seats = subscription.user_limit if subscription.user_limit is not None else 1
        base = _money(self.price_per_user(subscription.plan) * seats)
        addon_amounts = {
            a.value: float(_money(base * self.addon_rate(subscription.plan, a.value)))
            if subscription.has_addon(a.value) else 0.0
            for a in Addon
        }
        return {
            "plan": subscription.plan,
            "is_trial": False,
            "user_count": user_count,
            "user_limit": subscription.user_limit,
            "base_subtotal": float(base),
            "addons": addon_amounts,
            "total": float(self.renewal_amount(subscription)),
            "requires_upgrade": subscription.user_limit is not None and user_count > subscription.user_limit,
            "features": resolve_features(subscription.plan, False, subscription.addons).model_dump(),
        }

    def _starter_summary(self, user_count: int) -> Dict[str, Any]:
        return {
            "plan": Plan.STARTER.value,
            "is_trial": False,
            "user_count": user_count,
            "user_limit": STARTER_USER_LIMIT,
            "base_subtotal": 0.0,
            "addons": {Addon.PLANNING.value: 0.0, Addon.AI.value: 0.0},
            "total": 0.0,
            "requires_upgrade": user_count > STARTER_USER_LIMIT,
            "features": resolve_features(Plan.STARTER.value, False).model_dump(),
        }
