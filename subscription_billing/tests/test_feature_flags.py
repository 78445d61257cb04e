"""Plan -> feature mapping and the feature flag store."""

import itertools

import pytest

from subscription_billing.features.plans.feature_flags import (
    FeatureFlagStore,
    features_for_subscription,
    resolve_features,
)
from subscription_billing.models.subscription import FeatureSet, Subscription


ALL_ON = dict(timesheets=True, expenses=True, travels=True, planning=True, ai=True)
STARTER = dict(timesheets=True, expenses=True, travels=False, planning=False, ai=False)
ADDON_SETS = [(), ("planning",), ("ai",), ("planning", "ai")]


def _expected(plan, is_trial, addons):
    if is_trial or plan == "enterprise":
        return ALL_ON
    if plan == "team":
        return dict(
            timesheets=True,
            expenses=True,
            travels=True,
            planning="planning" in addons,
            ai="ai" in addons,
        )
    return STARTER


@pytest.mark.parametrize(
    "plan,is_trial,addons",
    list(itertools.product(["starter", "team", "enterprise", None, "legacy"], [False, True], ADDON_SETS)),
)
def test_feature_table(plan, is_trial, addons):
    assert resolve_features(plan, is_trial, addons).model_dump() == _expected(plan, is_trial, addons)


def test_team_addons_drive_planning_and_ai_only():
    features = resolve_features("team", False, ["ai"])
    assert features.enabled() == ["timesheets", "expenses", "travels", "ai"]


def test_missing_subscription_gets_starter_features():
    assert features_for_subscription(None).model_dump() == STARTER


def test_trial_subscription_gets_everything():
    sub = Subscription(tenant_id="t", plan="enterprise", is_trial=True)
    assert features_for_subscription(sub).model_dump() == ALL_ON


def test_sync_writes_all_five_flags(tenant):
    store = FeatureFlagStore()
    store.sync(tenant, FeatureSet(**ALL_ON))
    store.sync(tenant, FeatureSet(**STARTER))

    assert store.get_flags(tenant) == STARTER


def test_activate_and_deactivate_single_feature(tenant):
    store = FeatureFlagStore()
    store.activate(tenant, "planning")
    assert store.get_flags(tenant) == {"planning": True}

    store.deactivate(tenant, "planning")
    assert store.get_flags(tenant) == {"planning": False}


def test_unknown_feature_rejected(tenant):
    with pytest.raises(ValueError):
        FeatureFlagStore().activate(tenant, "reports")
