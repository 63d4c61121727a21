"""
Tenant entitlement resolution and caching.

This package provides:
- ModuleId / catalog: closed set of module packages and their permissions
- EntitlementResolver: authoritative module set from subscription state
- MaterializedCacheRefresher: rebuilds the per-tenant materialized table
- InProcessEntitlementCache: TTL cache with per-tenant generation stamps
- CapabilityFacade: async authoritative and sync best-effort capability checks
- SubscriptionService: administrative create/update/grant/revoke
- require_module / require_permission: FastAPI route gating

Read paths fail closed to the core module; write paths raise.
"""

from tenant_entitlements.catalog import (
    ALL_PERMISSIONS,
    CORE_PERMISSIONS,
    ModuleId,
    ModulePackage,
    all_packages,
    get_package,
    is_core_permission,
    parse_module_id,
    permissions_for,
    try_parse_module_id,
)
from tenant_entitlements.config import EntitlementSettings
from tenant_entitlements.errors import (
    EntitlementError,
    EntitlementStoreError,
    SubscriptionMutationError,
    SubscriptionNotFoundError,
    UnknownModuleError,
)
from tenant_entitlements.models import (
    CachedEntitlement,
    MaterializedTenantModule,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionType,
    TenantCapabilities,
)
from tenant_entitlements.cache import InProcessEntitlementCache
from tenant_entitlements.resolver import CORE_ONLY, EntitlementResolver
from tenant_entitlements.refresher import MaterializedCacheRefresher
from tenant_entitlements.background import BackgroundPopulator
from tenant_entitlements.facade import CapabilityFacade
from tenant_entitlements.schemas import CreateSubscriptionRequest, UpdateSubscriptionRequest
from tenant_entitlements.subscriptions import SubscriptionService

__all__ = [
    # Catalog
    "ALL_PERMISSIONS",
    "CORE_PERMISSIONS",
    "ModuleId",
    "ModulePackage",
    "all_packages",
    "get_package",
    "is_core_permission",
    "parse_module_id",
    "permissions_for",
    "try_parse_module_id",
    # Config
    "EntitlementSettings",
    # Errors
    "EntitlementError",
    "EntitlementStoreError",
    "SubscriptionMutationError",
    "SubscriptionNotFoundError",
    "UnknownModuleError",
    # Models
    "CachedEntitlement",
    "MaterializedTenantModule",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "SubscriptionType",
    "TenantCapabilities",
    # Engine
    "CORE_ONLY",
    "BackgroundPopulator",
    "CapabilityFacade",
    "EntitlementResolver",
    "InProcessEntitlementCache",
    "MaterializedCacheRefresher",
    # Administration
    "CreateSubscriptionRequest",
    "SubscriptionService",
    "UpdateSubscriptionRequest",
]
