"""
Capability facade: the public query surface of the entitlement engine.

Async, authoritative path (resolve_modules / resolve_permissions /
get_capabilities):
    in-process cache -> materialized table -> cold resolution from
    subscriptions (plus a best-effort background rebuild of the
    materialized rows). Every store call runs off the event loop under a
    deadline; any failure or timeout returns core only.

Sync, best-effort path (has_module / has_permission):
    core is always granted without a lookup. Otherwise the cache, then one
    indexed read of the materialized table on a small read pool, waited on
    for at most the store deadline. If that finds nothing, fails or times
    out, the answer is False; a miss also schedules a background population
    the caller never waits for.

Tenants are addressed by id or by identity (email). Neither path raises
for store problems.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from tenant_entitlements import repository as repo
from tenant_entitlements.alerts import DegradationMonitor
from tenant_entitlements.background import BackgroundPopulator
from tenant_entitlements.cache import Generation, InProcessEntitlementCache, require_tenant_id
from tenant_entitlements.catalog import (
    ALL_PERMISSIONS,
    CORE_PERMISSIONS,
    ModuleId,
    ModuleRef,
    permissions_for,
    try_parse_module_id,
)
from tenant_entitlements.config import EntitlementSettings
from tenant_entitlements.errors import EntitlementStoreError
from tenant_entitlements.models import TenantCapabilities
from tenant_entitlements.refresher import MaterializedCacheRefresher
from tenant_entitlements.resolver import CORE_ONLY, EntitlementResolver, to_module_ids

logger = logging.getLogger(__name__)


def _normalize_email(email: Optional[str]) -> str:
    return str(email or "").strip().lower()


class CapabilityFacade:
    """
    Answers "does tenant X have module/permission Y".

    Construct once per process and share; call close() at shutdown to stop
    the background pool.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        cache: Optional[InProcessEntitlementCache] = None,
        resolver: Optional[EntitlementResolver] = None,
        refresher: Optional[MaterializedCacheRefresher] = None,
        populator: Optional[BackgroundPopulator] = None,
        monitor: Optional[DegradationMonitor] = None,
        settings: Optional[EntitlementSettings] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        settings = settings or EntitlementSettings()
        self._session_factory = session_factory
        self.cache = cache or InProcessEntitlementCache(settings.cache_ttl_seconds)
        self.resolver = resolver or EntitlementResolver()
        self.refresher = refresher or MaterializedCacheRefresher(session_factory, self.cache)
        self.populator = populator or BackgroundPopulator(settings.population_workers)
        self.monitor = monitor or DegradationMonitor()
        self._timeout = settings.store_timeout_seconds
        self._sync_reads = ThreadPoolExecutor(
            max_workers=settings.population_workers, thread_name_prefix="entitlement-sync-read"
        )
        self._identity_ttl = settings.cache_ttl_seconds
        self._clock = clock or time.monotonic
        self._identity_lock = threading.Lock()
        self._identities: Dict[str, Tuple[int, float]] = {}

    # -- store access ---------------------------------------------------------

    def _with_session(self, fn, *args):
        db = self._session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()

    async def _call_store(self, operation: str, fn, *args, timeout: Optional[float] = None):
        """Run a blocking store call in a worker thread under a deadline."""
        deadline = timeout if timeout is not None else self._timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._with_session, fn, *args), timeout=deadline
            )
        except asyncio.TimeoutError as exc:
            raise EntitlementStoreError(operation, f"timed out after {deadline}s", exc) from exc
        except Exception as exc:
            raise EntitlementStoreError(operation, str(exc), exc) from exc

    def _read_sync(self, operation: str, fn, *args):
        """Blocking store read for the sync path, abandoned after the store deadline."""
        try:
            future = self._sync_reads.submit(self._with_session, fn, *args)
            return future.result(timeout=self._timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise EntitlementStoreError(operation, f"timed out after {self._timeout}s", exc) from exc
        except Exception as exc:
            raise EntitlementStoreError(operation, str(exc), exc) from exc

    def _degrade(self, tenant_ref, exc: Exception, operation: str) -> None:
        self.monitor.emit_resolution_failure(tenant_ref, operation, str(exc))

    # -- identity -------------------------------------------------------------

    @staticmethod
    def _check_target(tenant_id, email) -> None:
        if tenant_id is None and email is None:
            raise ValueError("tenant_id or email is required")
        if tenant_id is not None and email is not None:
            raise ValueError("pass either tenant_id or email, not both")

    def _cached_identity(self, email: str) -> Optional[int]:
        now = self._clock()
        with self._identity_lock:
            hit = self._identities.get(email)
            if hit is None:
                return None
            tenant_id, expires_at = hit
            if now > expires_at:
                del self._identities[email]
                return None
            return tenant_id

    def _remember_identity(self, email: str, tenant_id: int) -> None:
        with self._identity_lock:
            self._identities[email] = (tenant_id, self._clock() + self._identity_ttl)

    async def find_tenant_id(self, email: str, *, timeout: Optional[float] = None) -> Optional[int]:
        """Tenant id for an identity, or None if unknown or the lookup fails."""
        normalized = _normalize_email(email)
        if not normalized:
            return None
        try:
            return await self._lookup_identity(normalized, timeout)
        except EntitlementStoreError as exc:
            self._degrade("identity", exc, "identity_lookup")
            return None

    async def _lookup_identity(self, normalized: str, timeout: Optional[float]) -> Optional[int]:
        cached = self._cached_identity(normalized)
        if cached is not None:
            return cached
        tenant_id = await self._call_store(
            "identity_lookup", repo.find_customer_id_by_email, normalized, timeout=timeout
        )
        if tenant_id is None:
            logger.info("No tenant matches identity")
            return None
        self._remember_identity(normalized, tenant_id)
        return tenant_id

    def _lookup_identity_sync(self, normalized: str) -> Optional[int]:
        cached = self._cached_identity(normalized)
        if cached is not None:
            return cached
        tenant_id = self._read_sync("identity_lookup", repo.find_customer_id_by_email, normalized)
        if tenant_id is not None:
            self._remember_identity(normalized, tenant_id)
        return tenant_id

    # -- async, authoritative ---------------------------------------------------

    async def _resolve(
        self, tenant_id, email, timeout: Optional[float]
    ) -> Tuple[Optional[int], FrozenSet[ModuleId]]:
        self._check_target(tenant_id, email)
        if tenant_id is not None:
            resolved_tenant: Optional[int] = require_tenant_id(tenant_id)
        else:
            normalized = _normalize_email(email)
            if not normalized:
                return None, CORE_ONLY
            try:
                resolved_tenant = await self._lookup_identity(normalized, timeout)
            except EntitlementStoreError as exc:
                self._degrade("identity", exc, "identity_lookup")
                return None, CORE_ONLY
            if resolved_tenant is None:
                return None, CORE_ONLY

        cached = self.cache.try_get(resolved_tenant)
        if cached is not None:
            return resolved_tenant, cached.module_ids

        generation = self.cache.generation(resolved_tenant)
        try:
            raw_ids = await self._call_store(
                "read_materialized",
                repo.list_active_tenant_module_ids,
                resolved_tenant,
                timeout=timeout,
            )
            if raw_ids:
                modules = to_module_ids(raw_ids, tenant_id=resolved_tenant)
            else:
                modules = await self._call_store(
                    "resolve_subscription",
                    self.resolver.resolve_strict,
                    resolved_tenant,
                    timeout=timeout,
                )
                self.request_refresh(resolved_tenant, generation)
        except EntitlementStoreError as exc:
            self._degrade(resolved_tenant, exc, exc.operation)
            return resolved_tenant, CORE_ONLY

        self.cache.put(resolved_tenant, modules, generation=generation)
        return resolved_tenant, modules

    async def resolve_modules(
        self,
        tenant_id: Optional[int] = None,
        *,
        email: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> FrozenSet[ModuleId]:
        """
        Authoritative module set for a tenant. Always contains core.

        Args:
            tenant_id: Tenant to resolve
            email: Identity to resolve instead of tenant_id
            timeout: Per-store-call deadline override (seconds)

        Raises:
            ValueError: if neither or both of tenant_id and email are given,
                or tenant_id is malformed
        """
        _, modules = await self._resolve(tenant_id, email, timeout)
        return modules

    async def resolve_permissions(
        self,
        tenant_id: Optional[int] = None,
        *,
        email: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> FrozenSet[str]:
        _, modules = await self._resolve(tenant_id, email, timeout)
        return permissions_for(modules)

    async def get_capabilities(
        self,
        tenant_id: Optional[int] = None,
        *,
        email: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> TenantCapabilities:
        resolved_tenant, modules = await self._resolve(tenant_id, email, timeout)
        return TenantCapabilities.from_modules(resolved_tenant, modules)

    # -- sync, best-effort -------------------------------------------------------

    def _modules_sync(self, tenant_id, email) -> FrozenSet[ModuleId]:
        self._check_target(tenant_id, email)
        if tenant_id is not None:
            resolved_tenant: Optional[int] = require_tenant_id(tenant_id)
        else:
            normalized = _normalize_email(email)
            if not normalized:
                return CORE_ONLY
            try:
                resolved_tenant = self._lookup_identity_sync(normalized)
            except EntitlementStoreError as exc:
                self._degrade("identity", exc, "identity_lookup")
                return CORE_ONLY
            if resolved_tenant is None:
                return CORE_ONLY

        cached = self.cache.try_get(resolved_tenant)
        if cached is not None:
            return cached.module_ids

        generation = self.cache.generation(resolved_tenant)
        try:
            raw_ids = self._read_sync("read_materialized", repo.list_active_tenant_module_ids, resolved_tenant)
        except EntitlementStoreError as exc:
            self._degrade(resolved_tenant, exc, exc.operation)
            return CORE_ONLY

        if raw_ids:
            modules = to_module_ids(raw_ids, tenant_id=resolved_tenant)
            self.cache.put(resolved_tenant, modules, generation=generation)
            return modules

        self.schedule_population(resolved_tenant)
        return CORE_ONLY

    def has_module(
        self,
        module_id: ModuleRef,
        tenant_id: Optional[int] = None,
        *,
        email: Optional[str] = None,
    ) -> bool:
        """Best-effort synchronous module check. Never blocks on the slow path."""
        module = try_parse_module_id(module_id)
        if module is None:
            logger.warning("Capability check for unknown module", extra={"module_id": str(module_id)})
            return False
        if module is ModuleId.CORE:
            return True
        return module in self._modules_sync(tenant_id, email)

    def has_permission(
        self,
        permission: str,
        tenant_id: Optional[int] = None,
        *,
        email: Optional[str] = None,
    ) -> bool:
        """Best-effort synchronous permission check. Core permissions are always granted."""
        normalized = str(permission or "").strip().lower()
        if normalized in CORE_PERMISSIONS:
            return True
        if normalized not in ALL_PERMISSIONS:
            return False
        return normalized in permissions_for(self._modules_sync(tenant_id, email))

    # -- background work -------------------------------------------------------

    def schedule_population(self, tenant_id: int) -> Optional[Future]:
        """Fire-and-forget cache population for a tenant."""
        normalized = require_tenant_id(tenant_id)
        return self.populator.submit(("populate", normalized), lambda: self._populate(normalized))

    def _populate(self, tenant_id: int) -> None:
        generation = self.cache.generation(tenant_id)
        raw_ids = self._with_session(repo.list_active_tenant_module_ids, tenant_id)
        if raw_ids:
            modules = to_module_ids(raw_ids, tenant_id=tenant_id)
        else:
            modules = self._with_session(self.resolver.resolve_strict, tenant_id)
            self._refresh_best_effort(tenant_id, generation)
        self.cache.put(tenant_id, modules, generation=generation)

    def request_refresh(self, tenant_id: int, generation: Optional[Generation] = None) -> Optional[Future]:
        """
        Best-effort background rebuild of the tenant's materialized rows.

        generation is the cache stamp the caller resolved under; the rebuild
        is skipped if the tenant has been invalidated since.
        """
        normalized = require_tenant_id(tenant_id)
        if generation is None:
            generation = self.cache.generation(normalized)
        return self.populator.submit(
            ("refresh", normalized), lambda: self._refresh_best_effort(normalized, generation)
        )

    def _refresh_best_effort(self, tenant_id: int, generation: Optional[Generation] = None) -> None:
        try:
            self.refresher.refresh(tenant_id, invalidate_cache=False, expected_generation=generation)
        except Exception as exc:
            logger.warning(
                "Best-effort materialized refresh failed",
                extra={"tenant_id": tenant_id, "error": str(exc)},
            )

    # -- invalidation ------------------------------------------------------------

    def invalidate(self, tenant_id: int) -> None:
        self.cache.invalidate(tenant_id)

    def invalidate_all(self) -> None:
        self.cache.invalidate_all()
        with self._identity_lock:
            self._identities.clear()

    def close(self, wait: bool = True) -> None:
        self.populator.shutdown(wait=wait)
        self._sync_reads.shutdown(wait=wait)
