"""
Pydantic commands for administrative subscription mutations.

Module ids are validated against the catalog here, before any write.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenant_entitlements.catalog import ModuleId, parse_module_id
from tenant_entitlements.errors import UnknownModuleError
from tenant_entitlements.models import SubscriptionStatus


def _normalize_modules(values: Optional[List[str]]) -> Optional[List[str]]:
    """Lower-case, catalog-checked, de-duplicated, order preserved."""
    if values is None:
        return None
    seen: List[str] = []
    for value in values:
        try:
            module_id = parse_module_id(value)
        except UnknownModuleError as exc:
            raise ValueError(exc.message) from exc
        if module_id.value not in seen:
            seen.append(module_id.value)
    return seen


class CreateSubscriptionRequest(BaseModel):
    """Create a subscription; exactly one of plan_id or custom_modules."""

    model_config = ConfigDict(frozen=True)

    tenant_id: int = Field(..., gt=0, description="Tenant (customer) id")
    plan_id: Optional[int] = Field(None, gt=0, description="Plan for a predefined subscription")
    custom_modules: Optional[List[str]] = Field(
        None,
        description="Module ids for a custom subscription; core is added automatically",
        examples=[["enrollment", "finance"]],
    )
    start_date: date = Field(..., description="First day of the subscription")
    end_date: Optional[date] = Field(None, description="Last day of the subscription, inclusive")
    monthly_fee: Decimal = Field(Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    auto_renewal: bool = False

    @field_validator("custom_modules")
    @classmethod
    def validate_custom_modules(cls, value):
        return _normalize_modules(value)

    @model_validator(mode="after")
    def validate_shape(self):
        if (self.plan_id is None) == (self.custom_modules is None):
            raise ValueError("exactly one of plan_id or custom_modules is required")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError(
                f"end_date ({self.end_date}) must be on or after start_date ({self.start_date})"
            )
        return self

    def module_ids_with_core(self) -> List[str]:
        modules = list(self.custom_modules or [])
        if ModuleId.CORE.value not in modules:
            modules.insert(0, ModuleId.CORE.value)
        return modules


class UpdateSubscriptionRequest(BaseModel):
    """
    Partial update. plan_id switches to predefined; custom_modules switches
    to custom and replaces the module list. Unset fields are left alone.
    """

    model_config = ConfigDict(frozen=True)

    plan_id: Optional[int] = Field(None, gt=0)
    custom_modules: Optional[List[str]] = None
    status: Optional[SubscriptionStatus] = None
    end_date: Optional[date] = None
    monthly_fee: Optional[Decimal] = Field(None, ge=0, max_digits=12, decimal_places=2)
    auto_renewal: Optional[bool] = None

    @field_validator("custom_modules")
    @classmethod
    def validate_custom_modules(cls, value):
        return _normalize_modules(value)

    @model_validator(mode="after")
    def validate_shape(self):
        if self.plan_id is not None and self.custom_modules is not None:
            raise ValueError("plan_id and custom_modules are mutually exclusive")
        return self
