"""
ORM tables backing the entitlement store.

Module ids, subscription types and statuses are stored as strings so rows
written by newer code (new modules, new statuses) remain readable.

TenantModuleRow is the materialized projection: derived entirely from the
other tables and rebuilt by the refresher, never edited in place.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from tenant_entitlements.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomerRow(Base):
    """A tenant (school)."""

    __tablename__ = "customers"

    customer_id = Column(Integer, primary_key=True, autoincrement=True)
    customer_code = Column(String(50), nullable=False, unique=True, comment="Human-facing tenant code")
    school_name = Column(String(255), nullable=False)
    admin_username = Column(String(255), nullable=True, comment="Admin login, usually an email")
    contact_email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SubscriptionPlanRow(Base):
    __tablename__ = "subscription_plans"

    plan_id = Column(Integer, primary_key=True, autoincrement=True)
    plan_code = Column(String(50), nullable=False, unique=True)
    plan_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class PlanModuleRow(Base):
    __tablename__ = "plan_modules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.plan_id"), nullable=False)
    module_package_id = Column(String(50), nullable=False)
    granted_date = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("plan_id", "module_package_id", name="uq_plan_modules_plan_module"),
    )


class CustomerSubscriptionRow(Base):
    """
    Subscription of a tenant to either a plan (predefined) or an explicit
    module list (custom). At most one row per tenant is Active.
    """

    __tablename__ = "customer_subscriptions"

    subscription_id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.customer_id"), nullable=False)
    plan_id = Column(
        Integer,
        ForeignKey("subscription_plans.plan_id"),
        nullable=True,
        comment="Set for predefined subscriptions only",
    )
    subscription_type = Column(String(20), nullable=False, comment="predefined | custom")
    status = Column(String(20), nullable=False, comment="Active | Suspended | Expired | Cancelled")
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    monthly_fee = Column(Numeric(12, 2), nullable=False, default=0, comment="Stored only, never interpreted here")
    auto_renewal = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_by = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    updated_by = Column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_customer_subscriptions_customer_status", "customer_id", "status"),
    )


class CustomerSubscriptionModuleRow(Base):
    """Custom module grant. Soft-revoked via revoked_date, never deleted."""

    __tablename__ = "customer_subscription_modules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(
        Integer, ForeignKey("customer_subscriptions.subscription_id"), nullable=False
    )
    module_package_id = Column(String(50), nullable=False)
    granted_date = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    granted_by = Column(String(255), nullable=True)
    revoked_date = Column(DateTime(timezone=True), nullable=True)
    revoked_by = Column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_subscription_modules_subscription", "subscription_id", "module_package_id"),
    )


class TenantModuleRow(Base):
    """Materialized per-tenant module row."""

    __tablename__ = "tenant_modules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, nullable=False)
    module_package_id = Column(String(50), nullable=False)
    subscription_id = Column(Integer, nullable=False)
    granted_date = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_tenant_modules_customer_active", "customer_id", "is_active"),
    )
