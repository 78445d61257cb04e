"""Pricing: purchased seats, non-compounded addon surcharges, proration."""

from datetime import timedelta
from decimal import Decimal

import pytest

from subscription_billing.core.config import Settings
from subscription_billing.features.billing.pricing import PriceCalculator
from subscription_billing.models.subscription import Subscription


@pytest.fixture
def calc():
    return PriceCalculator(Settings())


@pytest.mark.parametrize(
    "plan,user_limit,addons,expected",
    [
        ("team", 10, [], "440.00"),
        ("team", 10, ["planning"], "519.20"),
        ("team", 10, ["planning", "ai"], "598.40"),
        ("team", None, [], "44.00"),
        ("enterprise", 10, [], "590.00"),
        ("enterprise", 10, ["planning", "ai"], "590.00"),
        ("starter", 2, [], "0.00"),
    ],
)
def test_calculate_amount(calc, plan, user_limit, addons, expected):
    assert calc.calculate_amount(plan, user_limit, addons) == Decimal(expected)


def test_addons_are_not_compounded(calc):
    base = calc.calculate_amount("team", 7)
    both = calc.calculate_amount("team", 7, ["planning", "ai"])
    one = calc.calculate_amount("team", 7, ["ai"])
    assert both - base == 2 * (one - base)


def test_renewal_bills_purchased_limit(calc):
    sub = Subscription(tenant_id="t", plan="team", user_limit=12, addons=["ai"])
    assert calc.renewal_amount(sub) == Decimal("623.04")


def test_settings_override_prices():
    calc = PriceCalculator(Settings(BILLING_TEAM_PRICE_PER_USER=10.0, BILLING_TEAM_ADDON_PCT=0.5))
    assert calc.calculate_amount("team", 3, ["planning"]) == Decimal("45.00")


def test_license_increment_is_prorated(calc, now):
    sub = Subscription(tenant_id="t", plan="team", user_limit=5, next_renewal_at=now + timedelta(days=15))
    assert calc.calculate_license_increment_price(sub, 8, now=now) == Decimal("66.00")


def test_license_increment_charges_at_least_one_day(calc, now):
    sub = Subscription(tenant_id="t", plan="team", user_limit=5, next_renewal_at=now + timedelta(hours=3))
    assert calc.calculate_license_increment_price(sub, 6, now=now) == Decimal("1.47")


def test_license_decrease_is_free(calc, now):
    sub = Subscription(tenant_id="t", plan="team", user_limit=5)
    assert calc.calculate_license_increment_price(sub, 3, now=now) == Decimal("0.00")


def test_plan_upgrade_price_uses_new_plan(calc):
    sub = Subscription(tenant_id="t", plan="team", user_limit=4)
    assert calc.calculate_plan_upgrade_price(sub, "enterprise") == Decimal("236.00")
    assert calc.calculate_plan_upgrade_price(None, "team", 3) == Decimal("132.00")


def test_summary_for_active_trial_is_free(calc, now):
    sub = Subscription(tenant_id="t", plan="enterprise", is_trial=True, trial_ends_at=now + timedelta(days=3))
    summary = calc.calculate_for_tenant(sub, 4, now=now)

    assert summary["plan"] == "trial_enterprise"
    assert summary["total"] == 0.0
    assert summary["base_subtotal"] == 236.0
    assert summary["features"]["ai"] is True


def test_summary_for_starter_flags_upgrade(calc, now):
    sub = Subscription(tenant_id="t", plan="starter", user_limit=2)
    summary = calc.calculate_for_tenant(sub, 3, now=now)

    assert summary["total"] == 0.0
    assert summary["requires_upgrade"] is True
    assert summary["features"]["travels"] is False


def test_summary_for_team_lists_addon_amounts(calc, now):
    sub = Subscription(tenant_id="t", plan="team", user_limit=10, addons=["planning"])
    summary = calc.calculate_for_tenant(sub, 6, now=now)

    assert summary["base_subtotal"] == 440.0
    assert summary["addons"] == {"planning": 79.2, "ai": 0.0}
    assert summary["total"] == 519.2
    assert summary["requires_upgrade"] is False
