"""
Domain records for the entitlement engine.

Subscription type and status are stored as plain strings at the persistence
boundary; SubscriptionType.parse()/SubscriptionStatus.parse() convert them
and return None for anything unrecognised so the resolver can fail closed.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Tuple

from tenant_entitlements.catalog import (
    CORE_PERMISSIONS,
    ModuleId,
    all_packages,
    permissions_for,
)


class SubscriptionType(str, enum.Enum):
    PREDEFINED = "predefined"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["SubscriptionType"]:
        if value is None:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class SubscriptionStatus(str, enum.Enum):
    """Only ACTIVE subscriptions grant anything."""
    ACTIVE = "Active"
    SUSPENDED = "Suspended"
    EXPIRED = "Expired"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["SubscriptionStatus"]:
        if value is None:
            return None
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return None


def is_subscription_live(status: Optional[str], end_date: Optional[date], today: date) -> bool:
    """True iff status is Active and the end date (if any) has not passed."""
    if SubscriptionStatus.parse(status) is not SubscriptionStatus.ACTIVE:
        return False
    return end_date is None or end_date >= today


@dataclass(frozen=True)
class SubscriptionRecord:
    """Detached snapshot of a subscription and its current grants."""

    subscription_id: int
    tenant_id: int
    subscription_type: str
    status: str
    start_date: date
    end_date: Optional[date]
    plan_id: Optional[int] = None
    monthly_fee: Decimal = Decimal("0")
    auto_renewal: bool = False
    granted_modules: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class MaterializedTenantModule:
    tenant_id: int
    module_id: str
    subscription_id: int
    granted_at: datetime
    is_active: bool


@dataclass(frozen=True)
class CachedEntitlement:
    """In-process cache entry; expires_at = cached_at + TTL."""

    tenant_id: int
    module_ids: FrozenSet[ModuleId]
    permissions: FrozenSet[str]
    cached_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class TenantCapabilities:
    """Everything a UI needs to gate a tenant's surfaces in one object."""

    tenant_id: Optional[int]
    module_ids: FrozenSet[ModuleId]
    permissions: FrozenSet[str]
    module_capabilities: Mapping[ModuleId, bool] = field(default_factory=dict)
    permission_capabilities: Mapping[str, bool] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "module_capabilities", MappingProxyType(dict(self.module_capabilities))
        )
        object.__setattr__(
            self, "permission_capabilities", MappingProxyType(dict(self.permission_capabilities))
        )

    @classmethod
    def from_modules(
        cls, tenant_id: Optional[int], module_ids: FrozenSet[ModuleId]
    ) -> "TenantCapabilities":
        modules = frozenset(module_ids) | {ModuleId.CORE}
        permissions = permissions_for(modules)
        return cls(
            tenant_id=tenant_id,
            module_ids=modules,
            permissions=permissions,
            module_capabilities={
                package.module_id: package.module_id in modules for package in all_packages()
            },
            permission_capabilities={permission: True for permission in permissions},
        )

    @classmethod
    def core_only(cls, tenant_id: Optional[int] = None) -> "TenantCapabilities":
        return cls.from_modules(tenant_id, frozenset({ModuleId.CORE}))

    def has_module(self, module_id: ModuleId) -> bool:
        return bool(self.module_capabilities.get(module_id))

    def has_permission(self, permission: str) -> bool:
        normalized = str(permission).strip().lower()
        return normalized in CORE_PERMISSIONS or normalized in self.permissions
