"""
Authoritative entitlement resolution from subscription state (the slow path).

Resolution order:
1. Latest-started Active, non-expired subscription for the tenant
2. Predefined -> the plan's modules; Custom -> current (non-revoked) grants
3. Anything else (no subscription, unknown type) -> nothing
4. Core is always added

resolve_strict() raises on store failure; resolve() fails closed to core.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable, FrozenSet, Iterable, Optional

from sqlalchemy.orm import Session

from tenant_entitlements import repository as repo
from tenant_entitlements.catalog import ModuleId, try_parse_module_id
from tenant_entitlements.models import SubscriptionType, is_subscription_live

logger = logging.getLogger(__name__)

CORE_ONLY: FrozenSet[ModuleId] = frozenset({ModuleId.CORE})


def _today_utc() -> date:
    return datetime.now(timezone.utc).date()


def to_module_ids(raw_ids: Iterable[str], *, tenant_id: Optional[int] = None) -> FrozenSet[ModuleId]:
    """Parse stored module ids, drop ones this build does not know, add core."""
    modules = {ModuleId.CORE}
    for raw in raw_ids:
        module_id = try_parse_module_id(raw)
        if module_id is None:
            logger.warning(
                "Ignoring unknown module id from store",
                extra={"tenant_id": tenant_id, "module_id": raw},
            )
            continue
        modules.add(module_id)
    return frozenset(modules)


class EntitlementResolver:
    """Computes a tenant's module set directly from subscriptions."""

    def __init__(self, *, today: Optional[Callable[[], date]] = None) -> None:
        self._today = today or _today_utc

    def resolve_strict(self, db: Session, tenant_id: int) -> FrozenSet[ModuleId]:
        """
        Resolve a tenant's modules, letting store errors propagate.

        Data inconsistencies (unknown subscription type, missing plan) are not
        errors here: they resolve to core only.
        """
        today = self._today()
        candidates = [
            sub
            for sub in repo.list_active_subscriptions(db, tenant_id)
            if is_subscription_live(sub.status, sub.end_date, today)
        ]
        if not candidates:
            logger.debug("No active subscription", extra={"tenant_id": tenant_id})
            return CORE_ONLY

        if len(candidates) > 1:
            logger.warning(
                "Multiple active subscriptions; using latest start date",
                extra={
                    "tenant_id": tenant_id,
                    "subscription_ids": [sub.subscription_id for sub in candidates],
                },
            )
        subscription = candidates[0]

        subscription_type = SubscriptionType.parse(subscription.subscription_type)
        if subscription_type is SubscriptionType.PREDEFINED:
            if subscription.plan_id is None:
                logger.warning(
                    "Predefined subscription without plan; failing closed",
                    extra={"tenant_id": tenant_id, "subscription_id": subscription.subscription_id},
                )
                return CORE_ONLY
            raw_ids = repo.list_plan_module_ids(db, subscription.plan_id)
        elif subscription_type is SubscriptionType.CUSTOM:
            raw_ids = [grant.module_package_id for grant in repo.list_grants(db, subscription.subscription_id)]
        else:
            logger.warning(
                "Unknown subscription type; failing closed",
                extra={
                    "tenant_id": tenant_id,
                    "subscription_id": subscription.subscription_id,
                    "subscription_type": subscription.subscription_type,
                },
            )
            return CORE_ONLY

        return to_module_ids(raw_ids, tenant_id=tenant_id)

    def resolve(self, db: Session, tenant_id: int) -> FrozenSet[ModuleId]:
        """Like resolve_strict(), but any failure yields core only."""
        try:
            return self.resolve_strict(db, tenant_id)
        except Exception as exc:
            logger.warning(
                "Entitlement resolution failed; failing closed",
                extra={"tenant_id": tenant_id, "error": str(exc)},
            )
            return CORE_ONLY
