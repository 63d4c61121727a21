"""
Module package catalog.

Static, in-code definition of every purchasable module package and the
permissions it grants. Module identifiers form a closed enumeration; string
identifiers are accepted only through parse_module_id()/try_parse_module_id(),
which compare case-insensitively and reject anything outside the catalog.

"core" is mandatory: permissions_for() always includes it.
"""

import enum
from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple, Union

from tenant_entitlements.errors import UnknownModuleError


class ModuleId(str, enum.Enum):
    """Module package identifiers."""
    CORE = "core"
    ENROLLMENT = "enrollment"
    HR_PAYROLL = "hr_payroll"
    FINANCE = "finance"
    INVENTORY = "inventory"


ModuleRef = Union[ModuleId, str]


@dataclass(frozen=True)
class ModulePackage:
    module_id: ModuleId
    name: str
    description: str
    permissions: Tuple[str, ...]
    is_required: bool = False

    def grants(self, permission: str) -> bool:
        return permission in self.permissions


_REPORTING = ("view_reports", "generate_reports", "export_reports")

_PACKAGES: Tuple[ModulePackage, ...] = (
    ModulePackage(
        module_id=ModuleId.CORE,
        name="Core Features",
        description="Dashboard, settings, profile, archive and audit features included with every subscription",
        permissions=(
            "view_dashboard",
            "view_settings",
            "edit_settings",
            "manage_system_settings",
            "view_profile",
            "edit_profile",
            "view_archive",
            "archive_student",
            "archive_employee",
            "restore_archived",
            "view_audit_log",
            "view_cloud_management",
            "sync_data",
            "manage_cloud_settings",
        ),
        is_required=True,
    ),
    ModulePackage(
        module_id=ModuleId.ENROLLMENT,
        name="Enrollment & Academic Management",
        description="Student enrollment, records, curriculum, grading and student billing",
        permissions=(
            "view_enrollment",
            "create_enrollment",
            "edit_enrollment",
            "delete_enrollment",
            "process_re_enrollment",
            "view_student_record",
            "create_student_record",
            "edit_student_record",
            "delete_student_record",
            "view_academic_record",
            "create_student_registration",
            "view_curriculum",
            "create_curriculum",
            "edit_curriculum",
            "delete_curriculum",
            "manage_sections",
            "manage_subjects",
            "manage_classrooms",
            "assign_teachers",
            "view_gradebook",
            "enter_grades",
            "edit_grades",
            "compute_grades",
            "generate_report_card",
            "view_finance",
            "process_payment",
            "view_payment_records",
            "view_reports",
            "generate_reports",
            "view_analytics",
            "export_reports",
        ),
    ),
    ModulePackage(
        module_id=ModuleId.HR_PAYROLL,
        name="HR & Payroll Management",
        description="Employee records, payroll, roles and attendance",
        permissions=(
            "view_hr",
            "create_employee",
            "edit_employee",
            "delete_employee",
            "view_employee_profile",
            "manage_employee_data",
            "view_payroll",
            "create_payroll",
            "edit_payroll",
            "delete_payroll",
            "generate_payslip",
            "manage_roles",
            "view_attendance",
            "record_attendance",
            "edit_attendance",
            "view_attendance_reports",
        ) + _REPORTING,
    ),
    ModulePackage(
        module_id=ModuleId.FINANCE,
        name="Finance Management",
        description="Fees, payments, expenses and financial reporting",
        permissions=(
            "view_finance",
            "create_fee",
            "edit_fee",
            "delete_fee",
            "process_payment",
            "view_payment_records",
            "manage_expenses",
            "view_financial_reports",
        ) + _REPORTING,
    ),
    ModulePackage(
        module_id=ModuleId.INVENTORY,
        name="Inventory & Asset Management",
        description="Inventory items and school assets",
        permissions=(
            "view_inventory",
            "create_inventory",
            "edit_inventory",
            "delete_inventory",
            "manage_assets",
            "view_reports",
            "generate_reports",
        ),
    ),
)

PACKAGES: Mapping[ModuleId, ModulePackage] = MappingProxyType(
    {package.module_id: package for package in _PACKAGES}
)

CORE_PERMISSIONS: FrozenSet[str] = frozenset(PACKAGES[ModuleId.CORE].permissions)

ALL_PERMISSIONS: FrozenSet[str] = frozenset(
    permission for package in _PACKAGES for permission in package.permissions
)


def all_packages() -> Tuple[ModulePackage, ...]:
    """Every catalog package, core first."""
    return _PACKAGES


def try_parse_module_id(value: ModuleRef) -> Optional[ModuleId]:
    """Case-insensitive lookup; None for anything outside the catalog."""
    if isinstance(value, ModuleId):
        return value
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if not normalized:
        return None
    try:
        return ModuleId(normalized)
    except ValueError:
        return None


def parse_module_id(value: ModuleRef) -> ModuleId:
    module_id = try_parse_module_id(value)
    if module_id is None:
        raise UnknownModuleError(value)
    return module_id


def get_package(module_id: ModuleRef) -> ModulePackage:
    return PACKAGES[parse_module_id(module_id)]


def with_core(module_ids: Iterable[ModuleRef]) -> FrozenSet[ModuleId]:
    """Parse module ids and add core. Raises UnknownModuleError on bad input."""
    parsed = {parse_module_id(module_id) for module_id in module_ids}
    parsed.add(ModuleId.CORE)
    return frozenset(parsed)


def permissions_for(module_ids: Iterable[ModuleRef]) -> FrozenSet[str]:
    """
    Union of the permissions granted by the named packages.

    Core permissions are always part of the result, whether or not core was
    named.

    Raises:
        UnknownModuleError: if any id is outside the catalog
    """
    permissions = set(CORE_PERMISSIONS)
    for module_id in with_core(module_ids):
        permissions.update(PACKAGES[module_id].permissions)
    return frozenset(permissions)


def is_core_permission(permission: str) -> bool:
    return str(permission).strip().lower() in CORE_PERMISSIONS


def modules_granting(permission: str) -> FrozenSet[ModuleId]:
    """Packages whose permission list contains the given permission."""
    normalized = str(permission).strip().lower()
    return frozenset(p.module_id for p in _PACKAGES if p.grants(normalized))
