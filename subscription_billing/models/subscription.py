"""
subscription_billing/models/subscription.py

Subscription state, plan tiers and feature flags.

One Subscription exists per tenant. Rows are read into these frozen models,
transitions produce validated copies via Subscription.evolve, and the copy
is written back in a single statement.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Plan(str, Enum):
    STARTER = "starter"
    TEAM = "team"
    ENTERPRISE = "enterprise"


# Downgrades must move strictly down this ladder
PLAN_HIERARCHY = {
    Plan.STARTER.value: 1,
    Plan.TEAM.value: 2,
    Plan.ENTERPRISE.value: 3,
}

STARTER_USER_LIMIT = 2


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"
    # Reported by the gateway, never set by the jobs
    UNPAID = "unpaid"
    TRIALING = "trialing"


class Addon(str, Enum):
    PLANNING = "planning"
    AI = "ai"


class Feature(str, Enum):
    TIMESHEETS = "timesheets"
    EXPENSES = "expenses"
    TRAVELS = "travels"
    PLANNING = "planning"
    AI = "ai"


class FeatureSet(BaseModel):
    """Resolved on/off state for every tenant feature."""
    model_config = ConfigDict(frozen=True)

    timesheets: bool
    expenses: bool
    travels: bool
    planning: bool
    ai: bool

    def enabled(self) -> List[str]:
        return [f.value for f in Feature if getattr(self, f.value)]


class Subscription(BaseModel):
    """
    A tenant's billing subscription.

    Constraints:
    - starter => user_limit == 2 and no addons
    - is_trial => user_limit is None and no addons
    - pending_plan, when set, ranks strictly below plan
    - subscription_start_date is written once
    """
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: Optional[int] = None
    tenant_id: str
    plan: Plan
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    status_event: Optional[str] = None
    status_changed_at: Optional[datetime] = None
    is_trial: bool = False
    trial_ends_at: Optional[datetime] = None
    user_limit: Optional[int] = None
    addons: List[Addon] = []
    billing_period_started_at: Optional[datetime] = None
    billing_period_ends_at: Optional[datetime] = None
    next_renewal_at: Optional[datetime] = None
    subscription_start_date: Optional[datetime] = None
    pending_plan: Optional[Plan] = None
    pending_user_limit: Optional[int] = None
    pending_plan_effective_at: Optional[datetime] = None
    failed_renewal_attempts: int = 0
    grace_period_until: Optional[datetime] = None
    last_renewal_at: Optional[datetime] = None
    billing_gateway: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    version: int = 1

    @field_validator(
        "status_changed_at",
        "trial_ends_at",
        "billing_period_started_at",
        "billing_period_ends_at",
        "next_renewal_at",
        "subscription_start_date",
        "pending_plan_effective_at",
        "grace_period_until",
        "last_renewal_at",
    )
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @field_validator("addons", mode="before")
    @classmethod
    def _normalize_addons(cls, value):
        if not value:
            return []
        return sorted(set(value))

    @property
    def has_pending_downgrade(self) -> bool:
        return self.pending_plan is not None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    def is_trial_active(self, now: Optional[datetime] = None) -> bool:
        ts = ensure_utc(now) or utc_now()
        return bool(self.is_trial and self.trial_ends_at and self.trial_ends_at > ts)

    def has_addon(self, addon: str) -> bool:
        return addon in self.addons

    def evolve(self, **changes) -> "Subscription":
        """Validated copy with changes applied (model_copy skips validation)."""
        return type(self).model_validate({**self.model_dump(), **changes})

    def to_row(self) -> dict:
        """Column values for billing_subscriptions (identity and version excluded)."""
        return self.model_dump(exclude={"id", "version"})


class PlanChange(BaseModel):
    """One entry of the append-only plan history."""
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    tenant_id: str
    previous_plan: Optional[str] = None
    new_plan: str
    previous_user_limit: Optional[int] = None
    new_user_limit: Optional[int] = None
    changed_at: datetime
    changed_by: str
    notes: Optional[str] = None

    @field_validator("changed_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)
