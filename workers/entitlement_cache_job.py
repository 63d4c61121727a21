"""Periodic maintenance of the in-process entitlement cache and its materialized rows."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from tenant_entitlements.cache import InProcessEntitlementCache
from tenant_entitlements.config import EntitlementSettings
from tenant_entitlements.refresher import MaterializedCacheRefresher

logger = logging.getLogger(__name__)


@dataclass
class CacheMaintenanceStats:
    started_at: str
    completed_at: Optional[str] = None
    expired_entries_swept: int = 0
    materialized_rows_rebuilt: int = 0
    full_refresh: bool = False
    errors: int = 0


def run_entitlement_cache_cycle(
    cache: InProcessEntitlementCache,
    refresher: Optional[MaterializedCacheRefresher] = None,
    *,
    full_refresh: bool = False,
) -> CacheMaintenanceStats:
    """Periodic entitlement cache maintenance.

    Responsibilities:
    - sweep expired in-process entries (memory bound only)
    - optionally rebuild the materialized table for every tenant, which
      also picks up subscriptions whose end date has passed and clears
      the in-process cache
    """
    stats = CacheMaintenanceStats(started_at=datetime.now(timezone.utc).isoformat())

    try:
        stats.expired_entries_swept = cache.sweep_expired()
    except Exception as exc:
        stats.errors += 1
        logger.error("Entitlement cache sweep failed", extra={"error": str(exc)})

    if full_refresh and refresher is not None:
        stats.full_refresh = True
        try:
            stats.materialized_rows_rebuilt = refresher.refresh(None)
        except Exception as exc:
            stats.errors += 1
            logger.error("Full materialized refresh failed", extra={"error": str(exc)})

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info(
        "Entitlement cache maintenance cycle complete",
        extra={
            "swept": stats.expired_entries_swept,
            "rebuilt": stats.materialized_rows_rebuilt,
            "errors": stats.errors,
        },
    )
    return stats


def run_forever(
    cache: InProcessEntitlementCache,
    refresher: Optional[MaterializedCacheRefresher] = None,
    settings: Optional[EntitlementSettings] = None,
    *,
    max_cycles: Optional[int] = None,
    sleep=time.sleep,
) -> int:
    settings = settings or EntitlementSettings.from_env()
    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        full = settings.full_refresh_every > 0 and cycles % settings.full_refresh_every == 0
        run_entitlement_cache_cycle(cache, refresher, full_refresh=full)
        sleep(settings.sweep_interval_seconds)
    return cycles


def start_maintenance_thread(
    cache: InProcessEntitlementCache,
    refresher: Optional[MaterializedCacheRefresher] = None,
    settings: Optional[EntitlementSettings] = None,
) -> threading.Thread:
    """Run maintenance in a daemon thread inside the process that owns the cache."""
    thread = threading.Thread(
        target=run_forever,
        args=(cache, refresher, settings),
        name="entitlement-cache-maintenance",
        daemon=True,
    )
    thread.start()
    return thread


def main() -> None:
    """Standalone process: only the materialized rebuild is meaningful here."""
    from tenant_entitlements.db import build_engine, build_session_factory, create_schema

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    settings = EntitlementSettings.from_env()
    if settings.full_refresh_every == 0:
        settings = replace(settings, full_refresh_every=1)
    engine = build_engine(settings.database_url)
    create_schema(engine)
    cache = InProcessEntitlementCache(settings.cache_ttl_seconds)
    refresher = MaterializedCacheRefresher(build_session_factory(engine), cache)
    logger.info(
        "Starting entitlement cache worker",
        extra={
            "interval_seconds": settings.sweep_interval_seconds,
            "full_refresh_every": settings.full_refresh_every,
        },
    )
    run_forever(cache, refresher, settings)


if __name__ == "__main__":
    main()
