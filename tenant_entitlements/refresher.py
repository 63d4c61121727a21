"""
Materialized tenant-module table rebuild.

The table is a disposable projection of subscriptions, plans and grants.
It is always deleted and rebuilt (per tenant or globally), never patched.

rebuild() runs inside the caller's transaction so a subscription mutation
and its projection commit together. refresh() owns its transaction and
invalidates the in-process cache only after commit.

Writers hold rebuild_lock from rebuild through commit and invalidation, so a
best-effort rebuild can never land on top of a newer mutation's rows. Share
one refresher between the capability facade and the subscription service.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from tenant_entitlements import repository as repo
from tenant_entitlements.cache import Generation, InProcessEntitlementCache
from tenant_entitlements.models import (
    MaterializedTenantModule,
    SubscriptionType,
    is_subscription_live,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MaterializedCacheRefresher:
    def __init__(
        self,
        session_factory: sessionmaker,
        cache: InProcessEntitlementCache,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._session_factory = session_factory
        self.cache = cache
        self._clock = clock or _utcnow
        self.rebuild_lock = threading.RLock()

    def build_rows(
        self, db: Session, tenant_id: Optional[int] = None, *, today: Optional[date] = None
    ) -> List[MaterializedTenantModule]:
        """Compute the projection rows for one tenant, or every tenant."""
        today = today or self._clock().date()
        subscriptions = repo.list_subscriptions(db, tenant_id)

        plan_modules = repo.list_plan_module_ids_by_plan(
            db,
            (
                sub.plan_id
                for sub in subscriptions
                if SubscriptionType.parse(sub.subscription_type) is SubscriptionType.PREDEFINED
            ),
        )
        grants = repo.list_current_grants_by_subscription(
            db,
            (
                sub.subscription_id
                for sub in subscriptions
                if SubscriptionType.parse(sub.subscription_type) is SubscriptionType.CUSTOM
            ),
        )

        rows: List[MaterializedTenantModule] = []
        for sub in subscriptions:
            is_active = is_subscription_live(sub.status, sub.end_date, today)
            subscription_type = SubscriptionType.parse(sub.subscription_type)
            if subscription_type is SubscriptionType.PREDEFINED:
                granted_at = sub.created_at or self._clock()
                for module_id in plan_modules.get(sub.plan_id, []):
                    rows.append(
                        MaterializedTenantModule(
                            tenant_id=sub.customer_id,
                            module_id=module_id.lower(),
                            subscription_id=sub.subscription_id,
                            granted_at=granted_at,
                            is_active=is_active,
                        )
                    )
            elif subscription_type is SubscriptionType.CUSTOM:
                for grant in grants.get(sub.subscription_id, []):
                    rows.append(
                        MaterializedTenantModule(
                            tenant_id=sub.customer_id,
                            module_id=grant.module_package_id.lower(),
                            subscription_id=sub.subscription_id,
                            granted_at=grant.granted_date,
                            is_active=is_active,
                        )
                    )
            else:
                logger.warning(
                    "Skipping subscription with unknown type during rebuild",
                    extra={
                        "tenant_id": sub.customer_id,
                        "subscription_id": sub.subscription_id,
                        "subscription_type": sub.subscription_type,
                    },
                )
        return rows

    def rebuild(self, db: Session, tenant_id: Optional[int] = None, *, today: Optional[date] = None) -> int:
        """Delete and reinsert projection rows in the caller's transaction."""
        rows = self.build_rows(db, tenant_id, today=today)
        deleted = repo.delete_tenant_modules(db, tenant_id)
        inserted = repo.insert_tenant_modules(db, rows, updated_at=self._clock())
        logger.info(
            "Materialized tenant modules rebuilt",
            extra={"tenant_id": tenant_id, "deleted": deleted, "inserted": inserted},
        )
        return inserted

    def invalidate_cache(self, tenant_id: Optional[int] = None) -> None:
        if tenant_id is None:
            self.cache.invalidate_all()
        else:
            self.cache.invalidate(tenant_id)

    def refresh(
        self,
        tenant_id: Optional[int] = None,
        *,
        invalidate_cache: bool = True,
        expected_generation: Optional[Generation] = None,
    ) -> int:
        """
        Rebuild in a dedicated transaction, commit, then invalidate.

        Args:
            tenant_id: Tenant to rebuild, or None for every tenant
            invalidate_cache: False when the caller already holds a fresh
                answer for the same state (best-effort rebuild after a cold read)
            expected_generation: Cache generation the caller read under. If the
                tenant has been invalidated since, a mutation already rebuilt
                its rows and this refresh is skipped.

        Returns:
            Number of projection rows written (0 when skipped)

        Raises:
            Any store error, after rollback
        """
        with self.rebuild_lock:
            if expected_generation is not None and self.cache.generation(tenant_id) != expected_generation:
                logger.info(
                    "Skipping materialized refresh superseded by a newer change",
                    extra={"tenant_id": tenant_id},
                )
                return 0

            db = self._session_factory()
            try:
                inserted = self.rebuild(db, tenant_id)
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

            if invalidate_cache:
                self.invalidate_cache(tenant_id)
        return inserted
