"""
Role Permission Registry — Closed roles mapped to immutable capability sets.

Two disjoint universes of roles exist:

- Finance roles are scoped to a single project (vendor, project manager,
  finance reviewer, treasurer, DAO multisig, auditor, beneficiary).
- System roles are platform-wide and independent of any project.

Each role maps to a PermissionSet: a frozen struct with one boolean field per
Capability. The Capability enum and the struct fields share names, so a
misspelled capability fails at load time instead of silently denying.

The registry is built once at startup and never mutated afterwards. Reads
need no locking. Capability checks are pure role lookups: amounts, projects
and actors are the evaluator's concern, not the registry's.
"""

from __future__ import annotations

import enum
import logging
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from treasury_policy.errors import ConfigurationError, UnknownRole

logger = logging.getLogger(__name__)


class FinanceRole(str, enum.Enum):
    """Project-scoped finance roles."""

    VENDOR = "VENDOR"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    FINANCE_REVIEWER = "FINANCE_REVIEWER"
    TREASURER = "TREASURER"
    DAO_MULTISIG = "DAO_MULTISIG"
    AUDITOR = "AUDITOR"  # read-only
    BENEFICIARY = "BENEFICIARY"  # read-only


class SystemRole(str, enum.Enum):
    """Platform-scoped system roles."""

    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    SYSTEM_AUDITOR = "SYSTEM_AUDITOR"
    TREASURY_MANAGER = "TREASURY_MANAGER"


class Capability(str, enum.Enum):
    """Every named capability a role may hold."""

    # Vendor
    CAN_VIEW_OWN_INVOICES = "can_view_own_invoices"
    CAN_CREATE_INVOICES = "can_create_invoices"
    CAN_UPLOAD_DOCUMENTS = "can_upload_documents"
    CAN_VIEW_OWN_PAYMENTS = "can_view_own_payments"
    CAN_VIEW_PROJECT_BASIC_INFO = "can_view_project_basic_info"

    # Project management
    CAN_CREATE_BUDGETS = "can_create_budgets"
    CAN_CREATE_CONTRACTS = "can_create_contracts"
    CAN_VERIFY_WORK_RECEIPT = "can_verify_work_receipt"
    CAN_APPROVE_WITHIN_LIMIT = "can_approve_within_limit"
    CAN_VIEW_PROJECT_FINANCE = "can_view_project_finance"
    CAN_ASSIGN_VENDOR_ROLES = "can_assign_vendor_roles"
    CAN_VIEW_ALL_PROJECT_INVOICES = "can_view_all_project_invoices"

    # Finance review
    CAN_REVIEW_COMPLIANCE = "can_review_compliance"
    CAN_VALIDATE_DOCUMENTS = "can_validate_documents"
    CAN_CHECK_KYC = "can_check_kyc"
    CAN_SET_GL_CODING = "can_set_gl_coding"
    CAN_VIEW_ALL_PROJECT_FINANCE = "can_view_all_project_finance"
    CAN_MANAGE_VENDORS = "can_manage_vendors"

    # Treasury
    CAN_RELEASE_PAYMENTS = "can_release_payments"
    CAN_MANAGE_PAYMENT_RUNS = "can_manage_payment_runs"
    CAN_CONFIGURE_TREASURY_RAILS = "can_configure_treasury_rails"
    CAN_APPROVE_HIGH_VALUE = "can_approve_high_value"
    CAN_VIEW_TREASURY_DASHBOARD = "can_view_treasury_dashboard"
    CAN_RECONCILE_PAYMENTS = "can_reconcile_payments"
    CAN_VIEW_ALL_PROJECTS = "can_view_all_projects"

    # DAO multisig
    CAN_APPROVE_HIGHEST_VALUE = "can_approve_highest_value"
    CAN_CONFIGURE_APPROVAL_MATRIX = "can_configure_approval_matrix"
    CAN_ASSIGN_TREASURER_ROLES = "can_assign_treasurer_roles"
    CAN_VIEW_AUDIT_TRAIL = "can_view_audit_trail"
    CAN_OVERRIDE_APPROVALS = "can_override_approvals"

    # Audit
    CAN_VIEW_ALL_PROJECTS_READ_ONLY = "can_view_all_projects_read_only"
    CAN_VIEW_FULL_AUDIT_TRAIL = "can_view_full_audit_trail"
    CAN_EXPORT_REPORTS = "can_export_reports"
    CAN_VIEW_ALL_PAYMENTS = "can_view_all_payments"
    CAN_VIEW_ALL_DOCUMENTS = "can_view_all_documents"

    # Beneficiary
    CAN_VIEW_PROJECT_INFO = "can_view_project_info"
    CAN_VIEW_PROJECT_PROGRESS = "can_view_project_progress"
    CAN_VIEW_VERIFICATION_STATUS = "can_view_verification_status"

    # Platform
    CAN_MANAGE_ALL_PROJECTS = "can_manage_all_projects"
    CAN_ASSIGN_SYSTEM_ROLES = "can_assign_system_roles"
    CAN_ASSIGN_PROJECT_ROLES = "can_assign_project_roles"
    CAN_CONFIGURE_GLOBAL_SETTINGS = "can_configure_global_settings"
    CAN_VIEW_SYSTEM_METRICS = "can_view_system_metrics"
    CAN_VIEW_SYSTEM_AUDIT_TRAIL = "can_view_system_audit_trail"
    CAN_EXPORT_SYSTEM_REPORTS = "can_export_system_reports"
    CAN_CONFIGURE_GLOBAL_TREASURY = "can_configure_global_treasury"
    CAN_MANAGE_PAYMENT_PROVIDERS = "can_manage_payment_providers"
    CAN_VIEW_TREASURY_METRICS = "can_view_treasury_metrics"
    CAN_CONFIGURE_PAYMENT_RAILS = "can_configure_payment_rails"

    @property
    def is_read_only(self) -> bool:
        """True for capabilities that only observe (view/export)."""
        return self.value.startswith(("can_view_", "can_export_"))


# Approval tiers, lowest first.
APPROVAL_CAPABILITIES: tuple[Capability, ...] = (
    Capability.CAN_APPROVE_WITHIN_LIMIT,
    Capability.CAN_APPROVE_HIGH_VALUE,
    Capability.CAN_APPROVE_HIGHEST_VALUE,
)

# Capabilities that allow raising a financial proposal.
PROPOSAL_CAPABILITIES: frozenset[Capability] = frozenset({
    Capability.CAN_CREATE_INVOICES,
    Capability.CAN_CREATE_BUDGETS,
    Capability.CAN_CREATE_CONTRACTS,
    Capability.CAN_RELEASE_PAYMENTS,
    Capability.CAN_MANAGE_PAYMENT_RUNS,
    Capability.CAN_CONFIGURE_APPROVAL_MATRIX,
})


class PermissionSet(BaseModel):
    """
    Immutable capability struct for one role.

    Fields default to False; unknown field names are rejected so a
    configuration typo cannot produce a silently weaker role.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    can_view_own_invoices: bool = False
    can_create_invoices: bool = False
    can_upload_documents: bool = False
    can_view_own_payments: bool = False
    can_view_project_basic_info: bool = False
    can_create_budgets: bool = False
    can_create_contracts: bool = False
    can_verify_work_receipt: bool = False
    can_approve_within_limit: bool = False
    can_view_project_finance: bool = False
    can_assign_vendor_roles: bool = False
    can_view_all_project_invoices: bool = False
    can_review_compliance: bool = False
    can_validate_documents: bool = False
    can_check_kyc: bool = False
    can_set_gl_coding: bool = False
    can_view_all_project_finance: bool = False
    can_manage_vendors: bool = False
    can_release_payments: bool = False
    can_manage_payment_runs: bool = False
    can_configure_treasury_rails: bool = False
    can_approve_high_value: bool = False
    can_view_treasury_dashboard: bool = False
    can_reconcile_payments: bool = False
    can_view_all_projects: bool = False
    can_approve_highest_value: bool = False
    can_configure_approval_matrix: bool = False
    can_assign_treasurer_roles: bool = False
    can_view_audit_trail: bool = False
    can_override_approvals: bool = False
    can_view_all_projects_read_only: bool = False
    can_view_full_audit_trail: bool = False
    can_export_reports: bool = False
    can_view_all_payments: bool = False
    can_view_all_documents: bool = False
    can_view_project_info: bool = False
    can_view_project_progress: bool = False
    can_view_verification_status: bool = False
    can_manage_all_projects: bool = False
    can_assign_system_roles: bool = False
    can_assign_project_roles: bool = False
    can_configure_global_settings: bool = False
    can_view_system_metrics: bool = False
    can_view_system_audit_trail: bool = False
    can_export_system_reports: bool = False
    can_configure_global_treasury: bool = False
    can_manage_payment_providers: bool = False
    can_view_treasury_metrics: bool = False
    can_configure_payment_rails: bool = False

    @classmethod
    def of(cls, *capabilities: Capability) -> PermissionSet:
        return cls(**{c.value: True for c in capabilities})

    def has(self, capability: Capability) -> bool:
        return bool(getattr(self, Capability(capability).value))

    @property
    def granted(self) -> frozenset[Capability]:
        return frozenset(c for c in Capability if getattr(self, c.value))

    def issuperset(self, other: PermissionSet) -> bool:
        return self.granted >= other.granted


# ════════════════════════════════════════════════════════════════
# Default role configuration
# ════════════════════════════════════════════════════════════════

C = Capability

DEFAULT_FINANCE_PERMISSIONS: dict[FinanceRole, PermissionSet] = {
    FinanceRole.VENDOR: PermissionSet.of(
        C.CAN_VIEW_OWN_INVOICES,
        C.CAN_CREATE_INVOICES,
        C.CAN_UPLOAD_DOCUMENTS,
        C.CAN_VIEW_OWN_PAYMENTS,
        C.CAN_VIEW_PROJECT_BASIC_INFO,
    ),
    FinanceRole.PROJECT_MANAGER: PermissionSet.of(
        C.CAN_CREATE_BUDGETS,
        C.CAN_CREATE_CONTRACTS,
        C.CAN_VERIFY_WORK_RECEIPT,
        C.CAN_APPROVE_WITHIN_LIMIT,
        C.CAN_VIEW_PROJECT_FINANCE,
        C.CAN_ASSIGN_VENDOR_ROLES,
        C.CAN_VIEW_ALL_PROJECT_INVOICES,
    ),
    FinanceRole.FINANCE_REVIEWER: PermissionSet.of(
        C.CAN_REVIEW_COMPLIANCE,
        C.CAN_VALIDATE_DOCUMENTS,
        C.CAN_CHECK_KYC,
        C.CAN_SET_GL_CODING,
        C.CAN_APPROVE_WITHIN_LIMIT,
        C.CAN_VIEW_ALL_PROJECT_FINANCE,
        C.CAN_MANAGE_VENDORS,
    ),
    FinanceRole.TREASURER: PermissionSet.of(
        C.CAN_RELEASE_PAYMENTS,
        C.CAN_MANAGE_PAYMENT_RUNS,
        C.CAN_CONFIGURE_TREASURY_RAILS,
        C.CAN_APPROVE_HIGH_VALUE,
        C.CAN_VIEW_TREASURY_DASHBOARD,
        C.CAN_RECONCILE_PAYMENTS,
        C.CAN_VIEW_ALL_PROJECTS,
    ),
    FinanceRole.DAO_MULTISIG: PermissionSet.of(
        C.CAN_APPROVE_HIGHEST_VALUE,
        C.CAN_CONFIGURE_APPROVAL_MATRIX,
        C.CAN_ASSIGN_TREASURER_ROLES,
        C.CAN_VIEW_AUDIT_TRAIL,
        C.CAN_OVERRIDE_APPROVALS,
    ),
    FinanceRole.AUDITOR: PermissionSet.of(
        C.CAN_VIEW_ALL_PROJECTS_READ_ONLY,
        C.CAN_VIEW_FULL_AUDIT_TRAIL,
        C.CAN_EXPORT_REPORTS,
        C.CAN_VIEW_ALL_PAYMENTS,
        C.CAN_VIEW_ALL_DOCUMENTS,
    ),
    FinanceRole.BENEFICIARY: PermissionSet.of(
        C.CAN_VIEW_PROJECT_INFO,
        C.CAN_VIEW_PROJECT_PROGRESS,
        C.CAN_VIEW_VERIFICATION_STATUS,
    ),
}

DEFAULT_SYSTEM_PERMISSIONS: dict[SystemRole, PermissionSet] = {
    SystemRole.PLATFORM_ADMIN: PermissionSet.of(
        C.CAN_MANAGE_ALL_PROJECTS,
        C.CAN_ASSIGN_SYSTEM_ROLES,
        C.CAN_ASSIGN_PROJECT_ROLES,
        C.CAN_CONFIGURE_GLOBAL_SETTINGS,
        C.CAN_VIEW_SYSTEM_METRICS,
    ),
    SystemRole.SYSTEM_AUDITOR: PermissionSet.of(
        C.CAN_VIEW_ALL_PROJECTS_READ_ONLY,
        C.CAN_VIEW_SYSTEM_AUDIT_TRAIL,
        C.CAN_EXPORT_SYSTEM_REPORTS,
    ),
    SystemRole.TREASURY_MANAGER: PermissionSet.of(
        C.CAN_CONFIGURE_GLOBAL_TREASURY,
        C.CAN_MANAGE_PAYMENT_PROVIDERS,
        C.CAN_VIEW_TREASURY_METRICS,
        C.CAN_CONFIGURE_PAYMENT_RAILS,
    ),
}

del C


# ════════════════════════════════════════════════════════════════
# Boundary coercion
# ════════════════════════════════════════════════════════════════


def coerce_finance_role(value: FinanceRole | str) -> FinanceRole:
    """Resolve a finance role from an external payload; raises UnknownRole."""
    if isinstance(value, FinanceRole):
        return value
    try:
        return FinanceRole(str(value).strip().upper())
    except ValueError:
        raise UnknownRole(f"Unknown finance role: {value!r}", role=value) from None


def coerce_system_role(value: SystemRole | str) -> SystemRole:
    """Resolve a system role from an external payload; raises UnknownRole."""
    if isinstance(value, SystemRole):
        return value
    try:
        return SystemRole(str(value).strip().upper())
    except ValueError:
        raise UnknownRole(f"Unknown system role: {value!r}", role=value) from None


def _permission_set_from_config(name: str, raw: Any) -> PermissionSet:
    if isinstance(raw, PermissionSet):
        return raw
    if isinstance(raw, (list, tuple, set, frozenset)):
        raw = {str(c): True for c in raw}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Permissions for {name} must be a list or mapping")
    try:
        return PermissionSet(**dict(raw))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid permissions for {name}: {e}") from e


# ════════════════════════════════════════════════════════════════
# Registry
# ════════════════════════════════════════════════════════════════


class RolePermissionRegistry:
    """
    Process-wide, read-only map from roles to permission sets.

    Construction validates that every role in both closed enums has a
    permission set; an incomplete configuration raises ConfigurationError.
    """

    def __init__(
        self,
        finance_permissions: Mapping[FinanceRole, PermissionSet] | None = None,
        system_permissions: Mapping[SystemRole, PermissionSet] | None = None,
    ) -> None:
        finance = dict(
            DEFAULT_FINANCE_PERMISSIONS if finance_permissions is None else finance_permissions
        )
        system = dict(
            DEFAULT_SYSTEM_PERMISSIONS if system_permissions is None else system_permissions
        )

        missing_finance = [r.value for r in FinanceRole if r not in finance]
        missing_system = [r.value for r in SystemRole if r not in system]
        if missing_finance or missing_system:
            raise ConfigurationError(
                "Role registry is incomplete; missing permission sets for: "
                + ", ".join(missing_finance + missing_system)
            )

        self._finance: Mapping[FinanceRole, PermissionSet] = MappingProxyType(finance)
        self._system: Mapping[SystemRole, PermissionSet] = MappingProxyType(system)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> RolePermissionRegistry:
        """
        Build a registry from a configuration document.

        Expected shape::

            {"finance": {"VENDOR": ["can_create_invoices", ...], ...},
             "system": {"PLATFORM_ADMIN": {"can_manage_all_projects": true}, ...}}
        """
        try:
            finance = {
                FinanceRole(str(name).upper()): _permission_set_from_config(name, caps)
                for name, caps in dict(payload.get("finance", {})).items()
            }
            system = {
                SystemRole(str(name).upper()): _permission_set_from_config(name, caps)
                for name, caps in dict(payload.get("system", {})).items()
            }
        except ValueError as e:
            raise ConfigurationError(f"Unknown role in registry configuration: {e}") from e

        registry = cls(finance, system)
        logger.info(
            "Role registry loaded: finance_roles=%d system_roles=%d",
            len(finance), len(system),
        )
        return registry

    def permissions_for(self, role: FinanceRole | str) -> PermissionSet:
        return self._finance[coerce_finance_role(role)]

    def system_permissions_for(self, role: SystemRole | str) -> PermissionSet:
        return self._system[coerce_system_role(role)]

    def has_capability(self, role: FinanceRole | str, capability: Capability) -> bool:
        return self.permissions_for(role).has(capability)

    def system_has_capability(self, role: SystemRole | str, capability: Capability) -> bool:
        return self.system_permissions_for(role).has(capability)

    def roles_with(self, capability: Capability) -> list[FinanceRole]:
        """Finance roles holding a capability, in enum order."""
        return [r for r in FinanceRole if self._finance[r].has(capability)]

    def any_capability(self, role: FinanceRole | str, capabilities: Iterable[Capability]) -> bool:
        perms = self.permissions_for(role)
        return any(perms.has(c) for c in capabilities)

    def list_roles(self) -> dict[FinanceRole, PermissionSet]:
        """Return a copy of the finance role table."""
        return dict(self._finance)


# Process-wide registry with the default role table
role_registry = RolePermissionRegistry()
