"""
Entitlement check dependencies.

FastAPI dependencies that block a route when the tenant's subscription does
not include a module or permission. They use the async authoritative path,
so a store outage degrades to core-only and therefore to 402 for anything
beyond core, never to a 5xx.

The facade is read from app.state.capability_facade and the tenant id from
request.state.tenant_id (set by the application's auth layer).
"""

import logging
from typing import Callable

from fastapi import Depends, HTTPException, Request, status

from tenant_entitlements.cache import require_tenant_id
from tenant_entitlements.catalog import ALL_PERMISSIONS, ModuleRef, get_package, modules_granting
from tenant_entitlements.facade import CapabilityFacade

logger = logging.getLogger(__name__)


def get_capability_facade(request: Request) -> CapabilityFacade:
    facade = getattr(request.app.state, "capability_facade", None)
    if facade is None:
        logger.error("Capability facade not configured on application state")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "ENTITLEMENTS_UNAVAILABLE", "message": "Entitlements are not configured"},
        )
    return facade


def get_request_tenant_id(request: Request) -> int:
    raw = getattr(request.state, "tenant_id", None)
    try:
        return require_tenant_id(raw)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "TENANT_CONTEXT_MISSING", "message": "Tenant context is required"},
        ) from e


def require_module(module_id: ModuleRef) -> Callable:
    """
    Dependency that requires a module package.

    Use on a route: Depends(require_module(ModuleId.FINANCE))
    The module id is checked against the catalog when the dependency is built.
    Returns the tenant id; raises 402 if the module is not entitled.
    """
    package = get_package(module_id)

    async def _check(
        request: Request,
        facade: CapabilityFacade = Depends(get_capability_facade),
    ) -> int:
        tenant_id = get_request_tenant_id(request)
        modules = await facade.resolve_modules(tenant_id)
        if package.module_id in modules:
            return tenant_id
        logger.warning(
            "%s access denied - not entitled",
            package.name,
            extra={"tenant_id": tenant_id, "module_id": package.module_id.value},
        )
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "FEATURE_DENIED",
                "message": f"{package.name} is not included in your subscription",
                "module_id": package.module_id.value,
            },
        )

    return _check


def require_permission(*permissions: str) -> Callable:
    """
    Dependency that requires at least one of the given permissions.

    Use on a route: Depends(require_permission("process_payment"))
    Raises ValueError at build time for a permission no module grants.
    A 402 lists the module packages that would grant access.
    """
    normalized = tuple(str(p).strip().lower() for p in permissions)
    unknown = [p for p in normalized if p not in ALL_PERMISSIONS]
    if unknown:
        raise ValueError(f"Unknown permission(s): {', '.join(unknown)}")
    granting_modules = sorted({m.value for p in normalized for m in modules_granting(p)})

    async def _check(
        request: Request,
        facade: CapabilityFacade = Depends(get_capability_facade),
    ) -> int:
        tenant_id = get_request_tenant_id(request)
        if not normalized:
            return tenant_id
        granted = await facade.resolve_permissions(tenant_id)
        if any(p in granted for p in normalized):
            return tenant_id
        logger.warning(
            "Entitlement denied: none of [%s] granted",
            ",".join(normalized),
            extra={"tenant_id": tenant_id, "module_ids": granting_modules},
        )
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "FEATURE_DENIED",
                "message": "This feature is not included in your subscription",
                "permissions": list(normalized),
                "module_ids": granting_modules,
            },
        )

    return _check
