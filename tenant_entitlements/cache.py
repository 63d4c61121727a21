"""
In-process entitlement cache.

One instance is created at process start and shared by the facade, the
subscription service, the refresher and the maintenance worker. A single
lock guards the map; it is held only for dictionary operations.

Each tenant also has a generation stamp. invalidate() bumps the tenant's
generation and invalidate_all() bumps a global epoch. Writers that read the
store take a stamp first and pass it to put(); a write whose stamp is no
longer current is dropped, so a population task that started before an
invalidation cannot resurrect stale data.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from tenant_entitlements.catalog import ModuleRef, permissions_for, with_core
from tenant_entitlements.config import CACHE_TTL_SECONDS
from tenant_entitlements.models import CachedEntitlement

logger = logging.getLogger(__name__)

Generation = Tuple[int, int]


def require_tenant_id(tenant_id) -> int:
    """Normalize a tenant id to a positive int; ValueError otherwise."""
    if isinstance(tenant_id, bool) or tenant_id is None:
        raise ValueError("tenant_id is required")
    try:
        normalized = int(str(tenant_id).strip())
    except ValueError:
        raise ValueError(f"tenant_id must be an integer, got {tenant_id!r}")
    if normalized <= 0:
        raise ValueError("tenant_id must be positive")
    return normalized


class InProcessEntitlementCache:
    """TTL cache of resolved module sets keyed by tenant id."""

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._entries: Dict[int, CachedEntitlement] = {}
        self._generations: Dict[int, int] = {}
        self._epoch = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def try_get(self, tenant_id: int) -> Optional[CachedEntitlement]:
        """Entry for the tenant, or None if absent or expired."""
        normalized = require_tenant_id(tenant_id)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(normalized)
        if entry is None or entry.is_expired(now):
            return None
        logger.debug("Entitlement cache hit", extra={"tenant_id": normalized})
        return entry

    def generation(self, tenant_id: int) -> Generation:
        normalized = require_tenant_id(tenant_id)
        with self._lock:
            return self._epoch, self._generations.get(normalized, 0)

    def put(
        self,
        tenant_id: int,
        module_ids: Iterable[ModuleRef],
        *,
        generation: Optional[Generation] = None,
    ) -> Optional[CachedEntitlement]:
        """
        Store a resolved module set (core added) with its derived permissions.

        Returns the stored entry, or None when the write carried a stale
        generation and was discarded.
        """
        normalized = require_tenant_id(tenant_id)
        modules = with_core(module_ids)
        permissions = permissions_for(modules)
        now = self._clock()
        entry = CachedEntitlement(
            tenant_id=normalized,
            module_ids=modules,
            permissions=permissions,
            cached_at=now,
            expires_at=now + self._ttl_seconds,
        )
        with self._lock:
            current = (self._epoch, self._generations.get(normalized, 0))
            if generation is not None and generation != current:
                stale = True
            else:
                stale = False
                self._entries[normalized] = entry
        if stale:
            logger.debug(
                "Discarded stale entitlement cache write",
                extra={"tenant_id": normalized, "generation": generation, "current": current},
            )
            return None
        logger.debug("Entitlement cache write", extra={"tenant_id": normalized})
        return entry

    def invalidate(self, tenant_id: int) -> None:
        normalized = require_tenant_id(tenant_id)
        with self._lock:
            self._entries.pop(normalized, None)
            self._generations[normalized] = self._generations.get(normalized, 0) + 1
        logger.info("Entitlement cache invalidated", extra={"tenant_id": normalized})

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generations.clear()
            self._epoch += 1
        logger.info("Entitlement cache cleared")

    def sweep_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [tenant_id for tenant_id, entry in self._entries.items() if entry.is_expired(now)]
            for tenant_id in expired:
                del self._entries[tenant_id]
        if expired:
            logger.debug("Swept expired entitlement cache entries", extra={"count": len(expired)})
        return len(expired)

    def cached_tenant_ids(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
