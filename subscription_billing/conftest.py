# subscription_billing/conftest.py
import os
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from subscription_billing.core.database import create_all_tables, dispose_engine, reset_database
from subscription_billing.features.billing.gateway import PaymentGatewayError, PaymentIntent
from subscription_billing.features.billing.subscriptions import create_subscription
from subscription_billing.features.tenants.service import TenantDirectory
from subscription_billing.models.subscription import Subscription

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def _test_database(tmp_path_factory):
    """
    Point the engine at a throwaway SQLite file for the whole session.

    TEST_DATABASE_URL wins over DATABASE_URL, so a developer's .env is never
    touched by the suite.
    """
    path = tmp_path_factory.mktemp("db") / "billing.sqlite3"
    previous = os.environ.get("TEST_DATABASE_URL")
    os.environ["TEST_DATABASE_URL"] = f"sqlite:///{path}"
    dispose_engine()
    create_all_tables()
    yield
    dispose_engine()
    if previous is None:
        os.environ.pop("TEST_DATABASE_URL", None)
    else:
        os.environ["TEST_DATABASE_URL"] = previous


@pytest.fixture(autouse=True)
def _reset_db():
    """Reset database before each test."""
    reset_database()
    yield


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def directory():
    return TenantDirectory()


@pytest.fixture
def tenant(directory):
    return directory.create_tenant(
        "tenant-acme",
        "acme",
        "Acme Field Services",
        email="billing@acme.test",
        stripe_customer_id="cus_acme",
    )


@pytest.fixture
def add_users(directory):
    def _add(tenant, count, *, active=True, prefix="user"):
        for i in range(count):
            directory.add_user(tenant, f"{prefix}{i}@{tenant.slug}.test", active=active)
    return _add


@pytest.fixture
def make_subscription():
    """Persist a subscription with the given fields and return it."""
    def _make(tenant, **fields):
        fields.setdefault("plan", "team")
        return create_subscription(Subscription(tenant_id=tenant.tenant_id, **fields))
    return _make


class ScriptedGateway:
    """
    PaymentGateway double.

    outcomes is consumed one per charge: "completed", "failed" or an exception
    instance to raise from confirm_payment. The last outcome repeats.
    """

    name = "scripted"

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or ["completed"]
        self.charges = []

    def create_payment_intent(self, tenant, amount, metadata=None):
        intent = PaymentIntent(
            id=f"pi_test_{len(self.charges) + 1}",
            tenant_id=tenant.tenant_id,
            amount=Decimal(amount),
            currency="EUR",
            status="pending",
            gateway=self.name,
            metadata=dict(metadata or {}),
        )
        self.charges.append(intent)
        return intent

    def confirm_payment(self, intent, card_data=None):
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == "failed":
            return intent.with_status("failed", failure_reason="Card declined")
        return intent.with_status(outcome)


@pytest.fixture
def approving_gateway():
    return ScriptedGateway("completed")


@pytest.fixture
def declining_gateway():
    return ScriptedGateway("failed")


@pytest.fixture
def unreachable_gateway():
    return ScriptedGateway(PaymentGatewayError("connection reset"))


@pytest.fixture
def scripted_gateway():
    """Factory: scripted_gateway("failed", "completed")."""
    return ScriptedGateway
