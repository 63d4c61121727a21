"""
Administrative subscription mutations.

Every mutation runs in one transaction together with the materialized
tenant-module rebuild, commits, and only then invalidates the tenant's
in-process cache entry. Failures roll back and propagate: an administrator
must know when a change did not take effect.

Audit events are emitted after commit through an injected sink; a failing
sink is logged and never undoes the mutation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, FrozenSet, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from tenant_entitlements import repository as repo
from tenant_entitlements.cache import InProcessEntitlementCache, require_tenant_id
from tenant_entitlements.catalog import ModuleId, ModuleRef, parse_module_id
from tenant_entitlements.errors import SubscriptionMutationError, SubscriptionNotFoundError
from tenant_entitlements.models import (
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionType,
)
from tenant_entitlements.refresher import MaterializedCacheRefresher
from tenant_entitlements.resolver import to_module_ids
from tenant_entitlements.schemas import CreateSubscriptionRequest, UpdateSubscriptionRequest
from tenant_entitlements.tables import CustomerSubscriptionModuleRow, CustomerSubscriptionRow

logger = logging.getLogger(__name__)

AuditSink = Callable[[str, dict], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot(db: Session, row: CustomerSubscriptionRow) -> SubscriptionRecord:
    grants = repo.list_grants(db, row.subscription_id)
    return SubscriptionRecord(
        subscription_id=row.subscription_id,
        tenant_id=row.customer_id,
        subscription_type=row.subscription_type,
        status=row.status,
        start_date=row.start_date,
        end_date=row.end_date,
        plan_id=row.plan_id,
        monthly_fee=row.monthly_fee,
        auto_renewal=bool(row.auto_renewal),
        granted_modules=tuple(grant.module_package_id for grant in grants),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SubscriptionService:
    """Create, update, grant and revoke, keeping projection and cache in step."""

    def __init__(
        self,
        session_factory: sessionmaker,
        cache: InProcessEntitlementCache,
        *,
        refresher: Optional[MaterializedCacheRefresher] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._session_factory = session_factory
        self.cache = cache
        self._clock = clock or _utcnow
        self.refresher = refresher or MaterializedCacheRefresher(session_factory, cache, clock=self._clock)
        self._audit_sink = audit_sink or (lambda event, payload: None)

    # -- transaction plumbing -------------------------------------------------

    def _run_mutation(self, operation: str, work):
        """
        Run work(db) -> (result, tenant_id, changed) plus the rebuild in one
        transaction, then invalidate after commit. The rebuild, commit and
        invalidation hold the refresher's rebuild_lock.
        """
        db = self._session_factory()
        try:
            result, tenant_id, changed = work(db)
            if changed:
                with self.refresher.rebuild_lock:
                    db.flush()
                    self.refresher.rebuild(db, tenant_id)
                    db.commit()
                    self.refresher.invalidate_cache(tenant_id)
            else:
                db.commit()
        except Exception as exc:
            db.rollback()
            logger.error(
                "Subscription mutation failed",
                extra={"operation": operation, "error": str(exc)},
            )
            raise
        finally:
            db.close()

        if changed:
            logger.info(
                "Subscription mutation applied",
                extra={"operation": operation, "tenant_id": tenant_id},
            )
        return result, tenant_id, changed

    def _emit_audit(self, event: str, payload: dict) -> None:
        try:
            self._audit_sink(event, payload)
        except Exception as exc:
            logger.error(
                "Audit emit failed for subscription mutation",
                extra={"audit_event": event, "error": str(exc)},
            )

    def _cancel_other_active(self, db: Session, tenant_id: int, keep_id: Optional[int], actor_id, now) -> List[int]:
        cancelled = []
        for sub in repo.list_active_subscriptions(db, tenant_id):
            if sub.subscription_id == keep_id:
                continue
            sub.status = SubscriptionStatus.CANCELLED.value
            sub.updated_at = now
            sub.updated_by = actor_id
            cancelled.append(sub.subscription_id)
        return cancelled

    def _require_plan(self, db: Session, operation: str, plan_id: int) -> None:
        if repo.get_plan(db, plan_id) is None:
            raise SubscriptionMutationError(operation, f"plan {plan_id} does not exist")

    def _grant(self, db: Session, subscription_id: int, module_id: str, actor_id, now) -> bool:
        """Grant or re-grant a module. False if it was already current."""
        if repo.find_grant(db, subscription_id, module_id, current_only=True) is not None:
            return False
        revoked = repo.find_grant(db, subscription_id, module_id, current_only=False)
        if revoked is not None:
            revoked.revoked_date = None
            revoked.revoked_by = None
            revoked.granted_date = now
            revoked.granted_by = actor_id
        else:
            repo.add_grant(db, subscription_id, module_id, granted_at=now, granted_by=actor_id)
        return True

    @staticmethod
    def _revoke(grant: CustomerSubscriptionModuleRow, actor_id, now) -> None:
        grant.revoked_date = now
        grant.revoked_by = actor_id

    def _load_subscription(self, db: Session, subscription_id: int) -> CustomerSubscriptionRow:
        row = repo.get_subscription(db, subscription_id)
        if row is None:
            raise SubscriptionNotFoundError(subscription_id)
        return row

    # -- mutations ------------------------------------------------------------

    def create_subscription(
        self, request: CreateSubscriptionRequest, *, actor_id: Optional[str] = None
    ) -> SubscriptionRecord:
        """
        Create a subscription and make it the tenant's only Active one.

        Raises:
            SubscriptionMutationError: tenant or plan does not exist
        """
        operation = "create_subscription"

        def work(db: Session):
            now = self._clock()
            if not repo.customer_exists(db, request.tenant_id):
                raise SubscriptionMutationError(operation, f"tenant {request.tenant_id} does not exist")
            if request.plan_id is not None:
                self._require_plan(db, operation, request.plan_id)
                subscription_type = SubscriptionType.PREDEFINED
            else:
                subscription_type = SubscriptionType.CUSTOM

            cancelled = self._cancel_other_active(db, request.tenant_id, None, actor_id, now)
            row = repo.add_subscription(
                db,
                CustomerSubscriptionRow(
                    customer_id=request.tenant_id,
                    plan_id=request.plan_id,
                    subscription_type=subscription_type.value,
                    status=SubscriptionStatus.ACTIVE.value,
                    start_date=request.start_date,
                    end_date=request.end_date,
                    monthly_fee=request.monthly_fee,
                    auto_renewal=request.auto_renewal,
                    created_at=now,
                    created_by=actor_id,
                ),
            )
            if subscription_type is SubscriptionType.CUSTOM:
                for module_id in request.module_ids_with_core():
                    repo.add_grant(db, row.subscription_id, module_id, granted_at=now, granted_by=actor_id)
                db.flush()
            return (_snapshot(db, row), cancelled), request.tenant_id, True

        (record, cancelled), tenant_id, _ = self._run_mutation(operation, work)
        self._emit_audit(
            "subscription.created",
            {
                "tenant_id": tenant_id,
                "subscription_id": record.subscription_id,
                "subscription_type": record.subscription_type,
                "plan_id": record.plan_id,
                "modules": list(record.granted_modules),
                "cancelled_subscription_ids": cancelled,
                "actor_id": actor_id,
            },
        )
        return record

    def update_subscription(
        self,
        subscription_id: int,
        request: UpdateSubscriptionRequest,
        *,
        actor_id: Optional[str] = None,
    ) -> SubscriptionRecord:
        """
        Apply a partial update.

        Switching to a plan soft-revokes every custom grant. A module list
        switches to custom: new modules are granted, unlisted ones revoked,
        core is kept.

        Raises:
            SubscriptionNotFoundError: no such subscription
            SubscriptionMutationError: plan missing or end_date before start_date
        """
        operation = "update_subscription"

        def work(db: Session):
            now = self._clock()
            row = self._load_subscription(db, subscription_id)
            changes: dict = {}

            if request.plan_id is not None:
                self._require_plan(db, operation, request.plan_id)
                row.subscription_type = SubscriptionType.PREDEFINED.value
                row.plan_id = request.plan_id
                revoked = []
                for grant in repo.list_grants(db, row.subscription_id):
                    self._revoke(grant, actor_id, now)
                    revoked.append(grant.module_package_id)
                changes["plan_id"] = request.plan_id
                changes["revoked_modules"] = revoked
            elif request.custom_modules is not None:
                desired = [m.value for m in sorted(to_module_ids(request.custom_modules))]
                row.subscription_type = SubscriptionType.CUSTOM.value
                row.plan_id = None
                current = {g.module_package_id.lower(): g for g in repo.list_grants(db, row.subscription_id)}
                added = [m for m in desired if m not in current]
                removed = [m for m in current if m not in desired and m != ModuleId.CORE.value]
                for module_id in added:
                    self._grant(db, row.subscription_id, module_id, actor_id, now)
                for module_id in removed:
                    self._revoke(current[module_id], actor_id, now)
                changes["added_modules"] = added
                changes["revoked_modules"] = removed

            if request.end_date is not None:
                if request.end_date < row.start_date:
                    raise SubscriptionMutationError(operation, "end_date is before start_date")
                row.end_date = request.end_date
                changes["end_date"] = request.end_date.isoformat()
            if request.monthly_fee is not None:
                row.monthly_fee = request.monthly_fee
                changes["monthly_fee"] = str(request.monthly_fee)
            if request.auto_renewal is not None:
                row.auto_renewal = request.auto_renewal
                changes["auto_renewal"] = request.auto_renewal
            if request.status is not None:
                if request.status is SubscriptionStatus.ACTIVE:
                    changes["cancelled_subscription_ids"] = self._cancel_other_active(
                        db, row.customer_id, row.subscription_id, actor_id, now
                    )
                row.status = request.status.value
                changes["status"] = request.status.value

            row.updated_at = now
            row.updated_by = actor_id
            db.flush()
            return (_snapshot(db, row), changes), row.customer_id, True

        (record, changes), tenant_id, _ = self._run_mutation(operation, work)
        self._emit_audit(
            "subscription.updated",
            {
                "tenant_id": tenant_id,
                "subscription_id": subscription_id,
                "changes": changes,
                "actor_id": actor_id,
            },
        )
        return record

    def grant_module(
        self, subscription_id: int, module_id: ModuleRef, *, actor_id: Optional[str] = None
    ) -> bool:
        """
        Grant a module on a custom subscription. Re-granting a revoked module
        clears the revocation. Returns True once the module is granted.

        Raises:
            UnknownModuleError: module_id is outside the catalog
            SubscriptionNotFoundError: no such subscription
            SubscriptionMutationError: subscription is not custom
        """
        module = parse_module_id(module_id)
        operation = "grant_module"

        def work(db: Session):
            row = self._load_subscription(db, subscription_id)
            if SubscriptionType.parse(row.subscription_type) is not SubscriptionType.CUSTOM:
                raise SubscriptionMutationError(
                    operation, f"subscription {subscription_id} is not a custom subscription"
                )
            changed = self._grant(db, row.subscription_id, module.value, actor_id, self._clock())
            return True, row.customer_id, changed

        _, tenant_id, changed = self._run_mutation(operation, work)
        if changed:
            self._emit_audit(
                "subscription.module_granted",
                {
                    "tenant_id": tenant_id,
                    "subscription_id": subscription_id,
                    "module_id": module.value,
                    "actor_id": actor_id,
                },
            )
        return True

    def revoke_module(
        self, subscription_id: int, module_id: ModuleRef, *, actor_id: Optional[str] = None
    ) -> bool:
        """
        Soft-revoke a module grant.

        Returns False (and changes nothing) for core or when the module is
        not currently granted.

        Raises:
            UnknownModuleError: module_id is outside the catalog
            SubscriptionNotFoundError: no such subscription
        """
        module = parse_module_id(module_id)
        if module is ModuleId.CORE:
            logger.warning(
                "Refusing to revoke core module",
                extra={"subscription_id": subscription_id, "actor_id": actor_id},
            )
            return False

        def work(db: Session):
            row = self._load_subscription(db, subscription_id)
            grant = repo.find_grant(db, row.subscription_id, module.value, current_only=True)
            if grant is None:
                return False, row.customer_id, False
            self._revoke(grant, actor_id, self._clock())
            return True, row.customer_id, True

        revoked, tenant_id, _ = self._run_mutation("revoke_module", work)
        if revoked:
            self._emit_audit(
                "subscription.module_revoked",
                {
                    "tenant_id": tenant_id,
                    "subscription_id": subscription_id,
                    "module_id": module.value,
                    "actor_id": actor_id,
                },
            )
        return revoked

    # -- reads ------------------------------------------------------------------

    def get_active_subscription(self, tenant_id: int) -> Optional[SubscriptionRecord]:
        normalized = require_tenant_id(tenant_id)
        db = self._session_factory()
        try:
            rows = repo.list_active_subscriptions(db, normalized)
            return _snapshot(db, rows[0]) if rows else None
        finally:
            db.close()

    def list_subscriptions(self, tenant_id: int) -> List[SubscriptionRecord]:
        normalized = require_tenant_id(tenant_id)
        db = self._session_factory()
        try:
            return [_snapshot(db, row) for row in repo.list_subscriptions(db, normalized)]
        finally:
            db.close()

    def get_customer_modules(self, tenant_id: int) -> FrozenSet[ModuleId]:
        """Active modules from the materialized table, core included."""
        normalized = require_tenant_id(tenant_id)
        db = self._session_factory()
        try:
            return to_module_ids(repo.list_active_tenant_module_ids(db, normalized), tenant_id=normalized)
        finally:
            db.close()
