"""
Entitlement store queries.

Module-level functions over a caller-supplied Session. Nothing here commits;
the caller owns the transaction.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from tenant_entitlements.models import MaterializedTenantModule, SubscriptionStatus
from tenant_entitlements.tables import (
    CustomerRow,
    CustomerSubscriptionModuleRow,
    CustomerSubscriptionRow,
    PlanModuleRow,
    SubscriptionPlanRow,
    TenantModuleRow,
)


# -- identity -----------------------------------------------------------------

def find_customer_id_by_email(db: Session, email: str) -> Optional[int]:
    """Match trimmed, lower-cased email against admin username or contact email."""
    normalized = str(email or "").strip().lower()
    if not normalized:
        return None
    row = (
        db.query(CustomerRow.customer_id)
        .filter(
            or_(
                func.lower(func.trim(CustomerRow.admin_username)) == normalized,
                func.lower(func.trim(CustomerRow.contact_email)) == normalized,
            )
        )
        .order_by(CustomerRow.customer_id)
        .first()
    )
    return row[0] if row else None


def customer_exists(db: Session, tenant_id: int) -> bool:
    return db.query(CustomerRow.customer_id).filter(CustomerRow.customer_id == tenant_id).first() is not None


# -- subscriptions ------------------------------------------------------------

def get_subscription(db: Session, subscription_id: int) -> Optional[CustomerSubscriptionRow]:
    return (
        db.query(CustomerSubscriptionRow)
        .filter(CustomerSubscriptionRow.subscription_id == subscription_id)
        .first()
    )


def list_active_subscriptions(db: Session, tenant_id: int) -> List[CustomerSubscriptionRow]:
    """Active subscriptions, most recently started first."""
    return (
        db.query(CustomerSubscriptionRow)
        .filter(
            CustomerSubscriptionRow.customer_id == tenant_id,
            CustomerSubscriptionRow.status == SubscriptionStatus.ACTIVE.value,
        )
        .order_by(
            CustomerSubscriptionRow.start_date.desc(),
            CustomerSubscriptionRow.subscription_id.desc(),
        )
        .all()
    )


def list_subscriptions(db: Session, tenant_id: Optional[int] = None) -> List[CustomerSubscriptionRow]:
    query = db.query(CustomerSubscriptionRow)
    if tenant_id is not None:
        query = query.filter(CustomerSubscriptionRow.customer_id == tenant_id)
    return query.order_by(
        CustomerSubscriptionRow.customer_id,
        CustomerSubscriptionRow.start_date.desc(),
        CustomerSubscriptionRow.subscription_id.desc(),
    ).all()


def add_subscription(db: Session, row: CustomerSubscriptionRow) -> CustomerSubscriptionRow:
    db.add(row)
    db.flush()
    return row


# -- plans --------------------------------------------------------------------

def get_plan(db: Session, plan_id: int) -> Optional[SubscriptionPlanRow]:
    return db.query(SubscriptionPlanRow).filter(SubscriptionPlanRow.plan_id == plan_id).first()


def list_plan_module_ids(db: Session, plan_id: int) -> List[str]:
    rows = (
        db.query(PlanModuleRow.module_package_id)
        .filter(PlanModuleRow.plan_id == plan_id)
        .order_by(PlanModuleRow.id)
        .all()
    )
    return [row[0] for row in rows]


def list_plan_module_ids_by_plan(db: Session, plan_ids: Iterable[int]) -> Dict[int, List[str]]:
    ids = {plan_id for plan_id in plan_ids if plan_id is not None}
    result: Dict[int, List[str]] = {plan_id: [] for plan_id in ids}
    if not ids:
        return result
    rows = (
        db.query(PlanModuleRow.plan_id, PlanModuleRow.module_package_id)
        .filter(PlanModuleRow.plan_id.in_(ids))
        .order_by(PlanModuleRow.id)
        .all()
    )
    for plan_id, module_id in rows:
        result[plan_id].append(module_id)
    return result


# -- custom grants ------------------------------------------------------------

def list_grants(
    db: Session, subscription_id: int, *, include_revoked: bool = False
) -> List[CustomerSubscriptionModuleRow]:
    query = db.query(CustomerSubscriptionModuleRow).filter(
        CustomerSubscriptionModuleRow.subscription_id == subscription_id
    )
    if not include_revoked:
        query = query.filter(CustomerSubscriptionModuleRow.revoked_date.is_(None))
    return query.order_by(CustomerSubscriptionModuleRow.id).all()


def list_current_grants_by_subscription(
    db: Session, subscription_ids: Iterable[int]
) -> Dict[int, List[CustomerSubscriptionModuleRow]]:
    ids = set(subscription_ids)
    result: Dict[int, List[CustomerSubscriptionModuleRow]] = {sid: [] for sid in ids}
    if not ids:
        return result
    rows = (
        db.query(CustomerSubscriptionModuleRow)
        .filter(
            CustomerSubscriptionModuleRow.subscription_id.in_(ids),
            CustomerSubscriptionModuleRow.revoked_date.is_(None),
        )
        .order_by(CustomerSubscriptionModuleRow.id)
        .all()
    )
    for row in rows:
        result[row.subscription_id].append(row)
    return result


def find_grant(
    db: Session, subscription_id: int, module_id: str, *, current_only: bool
) -> Optional[CustomerSubscriptionModuleRow]:
    """Latest grant row for a module, matched case-insensitively."""
    query = db.query(CustomerSubscriptionModuleRow).filter(
        CustomerSubscriptionModuleRow.subscription_id == subscription_id,
        func.lower(CustomerSubscriptionModuleRow.module_package_id) == module_id.lower(),
    )
    if current_only:
        query = query.filter(CustomerSubscriptionModuleRow.revoked_date.is_(None))
    return query.order_by(CustomerSubscriptionModuleRow.id.desc()).first()


def add_grant(
    db: Session,
    subscription_id: int,
    module_id: str,
    *,
    granted_at: datetime,
    granted_by: Optional[str],
) -> CustomerSubscriptionModuleRow:
    row = CustomerSubscriptionModuleRow(
        subscription_id=subscription_id,
        module_package_id=module_id.lower(),
        granted_date=granted_at,
        granted_by=granted_by,
    )
    db.add(row)
    return row


# -- materialized tenant modules ---------------------------------------------

def delete_tenant_modules(db: Session, tenant_id: Optional[int] = None) -> int:
    query = db.query(TenantModuleRow)
    if tenant_id is not None:
        query = query.filter(TenantModuleRow.customer_id == tenant_id)
    return query.delete(synchronize_session=False)


def insert_tenant_modules(
    db: Session, rows: Iterable[MaterializedTenantModule], *, updated_at: datetime
) -> int:
    count = 0
    for item in rows:
        db.add(
            TenantModuleRow(
                customer_id=item.tenant_id,
                module_package_id=item.module_id,
                subscription_id=item.subscription_id,
                granted_date=item.granted_at,
                is_active=item.is_active,
                last_updated=updated_at,
            )
        )
        count += 1
    db.flush()
    return count


def list_active_tenant_module_ids(db: Session, tenant_id: int) -> List[str]:
    rows = (
        db.query(TenantModuleRow.module_package_id)
        .filter(TenantModuleRow.customer_id == tenant_id, TenantModuleRow.is_active.is_(True))
        .distinct()
        .all()
    )
    return [row[0] for row in rows]


def list_tenant_modules(db: Session, tenant_id: int) -> List[MaterializedTenantModule]:
    rows = (
        db.query(TenantModuleRow)
        .filter(TenantModuleRow.customer_id == tenant_id)
        .order_by(TenantModuleRow.subscription_id, TenantModuleRow.module_package_id)
        .all()
    )
    return [
        MaterializedTenantModule(
            tenant_id=row.customer_id,
            module_id=row.module_package_id,
            subscription_id=row.subscription_id,
            granted_at=row.granted_date,
            is_active=bool(row.is_active),
        )
        for row in rows
    ]
