"""
Tests for cold resolution from subscriptions and the materialized rebuild.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from tenant_entitlements import repository as repo
from tenant_entitlements.catalog import ModuleId
from tenant_entitlements.refresher import MaterializedCacheRefresher
from tenant_entitlements.resolver import CORE_ONLY, EntitlementResolver


@pytest.fixture
def resolver():
    return EntitlementResolver()


def _resolve(session_factory, resolver, tenant_id):
    db = session_factory()
    try:
        return resolver.resolve_strict(db, tenant_id)
    finally:
        db.close()


def _rows(session_factory, tenant_id):
    db = session_factory()
    try:
        return [
            (row.module_id, row.subscription_id, row.is_active)
            for row in repo.list_tenant_modules(db, tenant_id)
        ]
    finally:
        db.close()


# =============================================================================
# Resolver
# =============================================================================

def test_tenant_without_subscription_resolves_to_core(session_factory, resolver, create_customer):
    tenant_id = create_customer()

    assert _resolve(session_factory, resolver, tenant_id) == CORE_ONLY


def test_predefined_subscription_expands_plan(session_factory, resolver, create_customer, create_plan, insert_subscription):
    tenant_id = create_customer()
    plan_id = create_plan("standard", ["enrollment", "finance", "hr_payroll"])
    insert_subscription(tenant_id, plan_id=plan_id)

    assert _resolve(session_factory, resolver, tenant_id) == {
        ModuleId.CORE,
        ModuleId.ENROLLMENT,
        ModuleId.FINANCE,
        ModuleId.HR_PAYROLL,
    }


def test_custom_subscription_uses_only_unrevoked_grants(session_factory, resolver, create_customer, insert_subscription):
    tenant_id = create_customer()
    insert_subscription(
        tenant_id,
        subscription_type="custom",
        modules=["inventory"],
        revoked_modules=["finance"],
    )

    assert _resolve(session_factory, resolver, tenant_id) == {ModuleId.CORE, ModuleId.INVENTORY}


def test_duplicate_active_subscriptions_use_latest_start(
    session_factory, resolver, create_customer, create_plan, insert_subscription, today
):
    tenant_id = create_customer()
    old_plan = create_plan("basic", ["enrollment"])
    new_plan = create_plan("finance-only", ["finance"])
    insert_subscription(tenant_id, plan_id=old_plan, start_date=today - timedelta(days=90))
    insert_subscription(tenant_id, plan_id=new_plan, start_date=today - timedelta(days=3))

    assert _resolve(session_factory, resolver, tenant_id) == {ModuleId.CORE, ModuleId.FINANCE}


def test_unknown_subscription_type_fails_closed(session_factory, resolver, create_customer, insert_subscription):
    tenant_id = create_customer()
    insert_subscription(tenant_id, subscription_type="trial", modules=["finance"])

    assert _resolve(session_factory, resolver, tenant_id) == CORE_ONLY


def test_cancelled_and_expired_subscriptions_grant_nothing(
    session_factory, resolver, create_customer, create_plan, insert_subscription, today
):
    plan_id = create_plan("standard", ["finance"])
    cancelled_tenant = create_customer()
    expired_tenant = create_customer()
    insert_subscription(cancelled_tenant, plan_id=plan_id, status="Cancelled")
    insert_subscription(expired_tenant, plan_id=plan_id, end_date=today - timedelta(days=1))

    assert _resolve(session_factory, resolver, cancelled_tenant) == CORE_ONLY
    assert _resolve(session_factory, resolver, expired_tenant) == CORE_ONLY


def test_subscription_ending_today_is_still_active(
    session_factory, resolver, create_customer, create_plan, insert_subscription, today
):
    tenant_id = create_customer()
    insert_subscription(tenant_id, plan_id=create_plan("standard", ["finance"]), end_date=today)

    assert ModuleId.FINANCE in _resolve(session_factory, resolver, tenant_id)


def test_unknown_stored_module_ids_are_ignored(session_factory, resolver, create_customer, insert_subscription):
    tenant_id = create_customer()
    insert_subscription(tenant_id, subscription_type="custom", modules=["library", "FINANCE"])

    assert _resolve(session_factory, resolver, tenant_id) == {ModuleId.CORE, ModuleId.FINANCE}


def test_resolve_fails_closed_on_store_error(resolver):
    db = MagicMock()
    db.query.side_effect = RuntimeError("connection reset")

    assert resolver.resolve(db, 1) == CORE_ONLY
    with pytest.raises(RuntimeError, match="connection reset"):
        resolver.resolve_strict(db, 1)


# =============================================================================
# Materialized rebuild
# =============================================================================

def test_refresh_materializes_plan_and_custom_rows(
    session_factory, refresher, create_customer, create_plan, insert_subscription
):
    plan_tenant = create_customer()
    custom_tenant = create_customer()
    plan_sub = insert_subscription(plan_tenant, plan_id=create_plan("standard", ["enrollment", "finance"]))
    custom_sub = insert_subscription(
        custom_tenant, subscription_type="custom", modules=["core", "Inventory"], revoked_modules=["finance"]
    )

    refresher.refresh()

    assert sorted(_rows(session_factory, plan_tenant)) == [
        ("enrollment", plan_sub, True),
        ("finance", plan_sub, True),
    ]
    assert sorted(_rows(session_factory, custom_tenant)) == [
        ("core", custom_sub, True),
        ("inventory", custom_sub, True),
    ]


def test_refresh_is_idempotent(session_factory, refresher, create_customer, create_plan, insert_subscription):
    tenant_id = create_customer()
    insert_subscription(tenant_id, plan_id=create_plan("standard", ["enrollment", "finance"]))

    refresher.refresh(tenant_id)
    first = _rows(session_factory, tenant_id)
    refresher.refresh(tenant_id)

    assert sorted(_rows(session_factory, tenant_id)) == sorted(first)


def test_inactive_subscriptions_materialize_as_inactive(
    session_factory, refresher, create_customer, create_plan, insert_subscription, today
):
    tenant_id = create_customer()
    plan_id = create_plan("standard", ["finance"])
    insert_subscription(tenant_id, plan_id=plan_id, status="Cancelled", start_date=today - timedelta(days=400))
    insert_subscription(tenant_id, plan_id=plan_id, end_date=today - timedelta(days=1))

    refresher.refresh(tenant_id)

    assert [active for _, _, active in _rows(session_factory, tenant_id)] == [False, False]
    db = session_factory()
    try:
        assert repo.list_active_tenant_module_ids(db, tenant_id) == []
    finally:
        db.close()


def test_refresh_one_tenant_leaves_others_untouched(
    session_factory, refresher, create_customer, create_plan, insert_subscription
):
    plan_id = create_plan("standard", ["finance"])
    tenant_a = create_customer()
    tenant_b = create_customer()
    insert_subscription(tenant_a, plan_id=plan_id)
    insert_subscription(tenant_b, plan_id=plan_id)
    refresher.refresh()

    db = session_factory()
    try:
        sub = repo.list_active_subscriptions(db, tenant_a)[0]
        sub.status = "Cancelled"
        db.commit()
    finally:
        db.close()
    refresher.refresh(tenant_a)

    assert [active for _, _, active in _rows(session_factory, tenant_a)] == [False]
    assert [active for _, _, active in _rows(session_factory, tenant_b)] == [True]


def test_refresh_invalidates_cache_after_commit(refresher, cache, create_customer):
    tenant_id = create_customer()
    other = create_customer()
    cache.put(tenant_id, ["finance"])
    cache.put(other, ["finance"])

    refresher.refresh(tenant_id)

    assert cache.try_get(tenant_id) is None
    assert cache.try_get(other) is not None


def test_global_refresh_clears_whole_cache(refresher, cache):
    cache.put(1, ["finance"])
    cache.put(2, ["inventory"])

    refresher.refresh()

    assert len(cache) == 0


def test_refresh_can_skip_invalidation(refresher, cache):
    cache.put(1, ["finance"])

    refresher.refresh(1, invalidate_cache=False)

    assert cache.try_get(1) is not None


def test_failed_refresh_rolls_back_and_keeps_cache(session_factory, cache, create_customer, create_plan, insert_subscription):
    tenant_id = create_customer()
    insert_subscription(tenant_id, plan_id=create_plan("standard", ["finance"]))
    refresher = MaterializedCacheRefresher(session_factory, cache)
    refresher.refresh(tenant_id)
    before = _rows(session_factory, tenant_id)
    cache.put(tenant_id, ["finance"])

    with patch(
        "tenant_entitlements.repository.insert_tenant_modules",
        side_effect=RuntimeError("disk full"),
    ):
        with pytest.raises(RuntimeError, match="disk full"):
            refresher.refresh(tenant_id)

    assert _rows(session_factory, tenant_id) == before
    assert cache.try_get(tenant_id) is not None


def test_refresh_superseded_by_newer_change_writes_nothing(
    refresher, session_factory, cache, create_customer, create_plan, insert_subscription
):
    tenant_id = create_customer()
    insert_subscription(tenant_id, plan_id=create_plan("standard", ["finance"]))
    stamp = cache.generation(tenant_id)
    cache.invalidate(tenant_id)

    assert refresher.refresh(tenant_id, invalidate_cache=False, expected_generation=stamp) == 0
    assert _rows(session_factory, tenant_id) == []

    current = cache.generation(tenant_id)
    assert refresher.refresh(tenant_id, invalidate_cache=False, expected_generation=current) == 1
    assert len(_rows(session_factory, tenant_id)) == 1
