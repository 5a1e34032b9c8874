"""
expense_services -- Package init and public API.

Responsibility:
    Caller-facing orchestration over the expense kernel: permission checks
    for workflow actions, role administration with authority, SoD, and audit
    gating, and seeding of governance reference data from configuration.
    This is the only layer that reads expense_config.

Architecture position:
    Services -- orchestration over engines + kernel.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        expense_services/ -> expense_kernel/   (allowed)
        expense_services/ -> expense_config/   (allowed)
        expense_kernel/   -> expense_services/ (FORBIDDEN)
        expense_kernel/   -> expense_config/   (FORBIDDEN)
        expense_engines/  -> expense_services/ (FORBIDDEN)
"""

from expense_services.bootstrap import BootstrapResult, seed_governance
from expense_services.rbac_authority import (
    check_role_assignment_authority,
    get_permission_for_action,
    required_assignment_permission,
)
from expense_services.report_workflow import ReportWorkflowService, build_approval_guard
from expense_services.role_administration import RoleAdministrationService

__all__ = [
    "BootstrapResult",
    "ReportWorkflowService",
    "RoleAdministrationService",
    "build_approval_guard",
    "check_role_assignment_authority",
    "get_permission_for_action",
    "required_assignment_permission",
    "seed_governance",
]
