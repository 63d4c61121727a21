from unittest.mock import MagicMock

from tenant_entitlements.config import EntitlementSettings
from tenant_entitlements.refresher import MaterializedCacheRefresher
from workers.entitlement_cache_job import run_entitlement_cache_cycle, run_forever


def test_cycle_sweeps_expired_entries(cache, clock):
    cache.put(1, [])
    clock.advance(301)
    cache.put(2, [])

    stats = run_entitlement_cache_cycle(cache)

    assert stats.expired_entries_swept == 1
    assert stats.full_refresh is False
    assert stats.errors == 0
    assert stats.completed_at is not None
    assert cache.cached_tenant_ids() == {2}


def test_full_refresh_rebuilds_and_clears_cache(
    session_factory, cache, create_customer, create_plan, insert_subscription
):
    tenant_id = create_customer()
    insert_subscription(tenant_id, plan_id=create_plan("standard", ["enrollment", "finance"]))
    cache.put(tenant_id, [])

    stats = run_entitlement_cache_cycle(
        cache, MaterializedCacheRefresher(session_factory, cache), full_refresh=True
    )

    assert stats.full_refresh is True
    assert stats.materialized_rows_rebuilt == 2
    assert len(cache) == 0


def test_refresh_errors_are_counted_not_raised(cache):
    refresher = MagicMock()
    refresher.refresh.side_effect = RuntimeError("db down")

    stats = run_entitlement_cache_cycle(cache, refresher, full_refresh=True)

    assert stats.errors == 1
    assert stats.completed_at is not None


def test_run_forever_does_full_refresh_on_schedule(cache):
    refresher = MagicMock()
    refresher.refresh.return_value = 0
    sleep = MagicMock()
    settings = EntitlementSettings(sweep_interval_seconds=30, full_refresh_every=2)

    cycles = run_forever(cache, refresher, settings, max_cycles=4, sleep=sleep)

    assert cycles == 4
    assert refresher.refresh.call_count == 2
    sleep.assert_called_with(30)
    assert sleep.call_count == 4
