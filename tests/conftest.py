"""
Shared fixtures for entitlement tests.

Every test gets its own in-memory SQLite database. Background population
runs on an inline executor so cache side effects are visible as soon as the
triggering call returns.
"""

import itertools
from concurrent.futures import Executor, Future
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tenant_entitlements.background import BackgroundPopulator
from tenant_entitlements.cache import InProcessEntitlementCache
from tenant_entitlements.db import Base
from tenant_entitlements.facade import CapabilityFacade
from tenant_entitlements.refresher import MaterializedCacheRefresher
from tenant_entitlements.subscriptions import SubscriptionService
from tenant_entitlements.tables import (
    CustomerRow,
    CustomerSubscriptionModuleRow,
    CustomerSubscriptionRow,
    PlanModuleRow,
    SubscriptionPlanRow,
)


class FakeClock:
    """Monotonic clock the test can advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InlineExecutor(Executor):
    """Runs submitted work immediately in the caller's thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            result = fn(*args, **kwargs)
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return future


# =============================================================================
# Test Database Fixtures
# =============================================================================

@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


# =============================================================================
# Engine Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InProcessEntitlementCache(ttl_seconds=300, clock=clock)


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def populator(inline_executor):
    populator = BackgroundPopulator(executor=inline_executor)
    yield populator
    populator.shutdown()


@pytest.fixture
def refresher(session_factory, cache):
    """One refresher shared by the facade and the subscription service."""
    return MaterializedCacheRefresher(session_factory, cache)


@pytest.fixture
def facade(session_factory, cache, refresher, populator, clock):
    facade = CapabilityFacade(
        session_factory, cache=cache, refresher=refresher, populator=populator, clock=clock
    )
    yield facade
    facade.close()


@pytest.fixture
def audit_events():
    return []


@pytest.fixture
def subscription_service(session_factory, cache, refresher, audit_events):
    return SubscriptionService(
        session_factory,
        cache,
        refresher=refresher,
        audit_sink=lambda event, payload: audit_events.append((event, payload)),
    )


# =============================================================================
# Data Fixtures
# =============================================================================

@pytest.fixture
def today():
    return date.today()


@pytest.fixture
def create_customer(session_factory):
    """Factory to insert a tenant; returns its id."""
    counter = itertools.count(1)

    def _create(admin_username=None, contact_email=None, school_name="Test School"):
        n = next(counter)
        db = session_factory()
        try:
            row = CustomerRow(
                customer_code=f"CUST-{n:04d}",
                school_name=school_name,
                admin_username=admin_username,
                contact_email=contact_email,
            )
            db.add(row)
            db.commit()
            return row.customer_id
        finally:
            db.close()

    return _create


@pytest.fixture
def create_plan(session_factory):
    """Factory to insert a plan with its module list; returns the plan id."""

    def _create(plan_code, module_ids):
        db = session_factory()
        try:
            plan = SubscriptionPlanRow(plan_code=plan_code, plan_name=plan_code.title())
            db.add(plan)
            db.flush()
            for module_id in module_ids:
                db.add(PlanModuleRow(plan_id=plan.plan_id, module_package_id=module_id))
            db.commit()
            return plan.plan_id
        finally:
            db.close()

    return _create


@pytest.fixture
def insert_subscription(session_factory, today):
    """
    Factory that writes subscription rows directly, bypassing the service
    (no materialized rebuild, no invalidation).
    """

    def _insert(
        tenant_id,
        *,
        subscription_type="predefined",
        plan_id=None,
        status="Active",
        start_date=None,
        end_date=None,
        modules=(),
        revoked_modules=(),
    ):
        db = session_factory()
        try:
            row = CustomerSubscriptionRow(
                customer_id=tenant_id,
                plan_id=plan_id,
                subscription_type=subscription_type,
                status=status,
                start_date=start_date or today - timedelta(days=30),
                end_date=end_date,
            )
            db.add(row)
            db.flush()
            for module_id in modules:
                db.add(CustomerSubscriptionModuleRow(subscription_id=row.subscription_id, module_package_id=module_id))
            for module_id in revoked_modules:
                db.add(
                    CustomerSubscriptionModuleRow(
                        subscription_id=row.subscription_id,
                        module_package_id=module_id,
                        revoked_date=datetime.now(timezone.utc),
                        revoked_by="tester",
                    )
                )
            db.commit()
            return row.subscription_id
        finally:
            db.close()

    return _insert
