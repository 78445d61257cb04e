"""Optimistic versioning on subscription writes."""

from datetime import timedelta

import pytest

from subscription_billing.core.database import get_db_session
from subscription_billing.core.errors import ConcurrentUpdateError
from subscription_billing.features.billing.subscriptions import get_subscription, save_subscription
from subscription_billing.features.plans.service import PlanManager


def test_save_bumps_version(make_subscription, tenant):
    created = make_subscription(tenant, plan="team", user_limit=3)

    saved = save_subscription(created, created.evolve(user_limit=4))

    assert saved.version == 2
    assert get_subscription(tenant.tenant_id).version == 2


def test_stale_write_is_rejected(make_subscription, tenant):
    created = make_subscription(tenant, plan="team", user_limit=3)
    save_subscription(created, created.evolve(user_limit=4))

    with pytest.raises(ConcurrentUpdateError):
        save_subscription(created, created.evolve(addons=["ai"]))

    current = get_subscription(tenant.tenant_id)
    assert current.user_limit == 4
    assert current.addons == []


def test_unsaved_subscription_cannot_be_saved(make_subscription, tenant):
    created = make_subscription(tenant, plan="team", user_limit=3)

    with pytest.raises(ValueError):
        save_subscription(created.model_copy(update={"id": None}), created)


def test_operations_share_a_caller_transaction(make_subscription, tenant, now):
    make_subscription(tenant, plan="enterprise", user_limit=10, next_renewal_at=now + timedelta(days=5))
    manager = PlanManager()

    with pytest.raises(RuntimeError):
        with get_db_session() as session:
            manager.schedule_downgrade(tenant, "team", now=now, session=session)
            raise RuntimeError("abort")

    assert get_subscription(tenant.tenant_id).pending_plan is None
