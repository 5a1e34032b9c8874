"""
expense_services.bootstrap -- Seed governance reference data from configuration.

Responsibility:
    Make the database hold the permissions, system roles, SoD rules, and
    default workflow declared in governance.yaml.  Safe to run repeatedly:
    rows that already exist (matched by name) are left alone.

Architecture position:
    Services layer.  Writes through PermissionRegistry and
    WorkflowDefinitionStore; flushes only, the caller commits.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from expense_config.schema import GovernanceConfig
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.logging_config import get_logger
from expense_kernel.models.rbac import SodRule
from expense_kernel.models.workflow import WorkflowDefinitionModel
from expense_kernel.services.audit_ledger import AuditLedger
from expense_kernel.services.permission_registry import PermissionRegistry
from expense_kernel.services.workflow_definitions import WorkflowDefinitionStore

logger = get_logger("services.bootstrap")


@dataclass(frozen=True)
class BootstrapResult:
    permissions_created: int = 0
    roles_created: int = 0
    sod_rules_created: int = 0
    workflow_created: bool = False


def seed_governance(
    session: Session,
    config: GovernanceConfig,
    clock: Clock | None = None,
) -> BootstrapResult:
    clock = clock or SystemClock()
    registry = PermissionRegistry(session, clock)

    permissions_created = 0
    for definition in config.permissions:
        if registry.get_permission_by_name(definition.name) is None:
            registry.create_permission(
                definition.name,
                definition.description,
                definition.category,
                definition.risk_level,
                definition.requires_mfa,
            )
            permissions_created += 1

    roles_created = 0
    for role in config.roles:
        if registry.get_role_by_name(role.name) is None:
            registry.create_role(
                role.name,
                role.description,
                registry.permission_ids_for_names(role.permissions),
                created_by=None,
                is_system=role.is_system,
            )
            roles_created += 1

    existing_rules = set(session.execute(select(SodRule.name)).scalars())
    sod_rules_created = 0
    for rule in config.sod_rules:
        if rule.name not in existing_rules:
            registry.create_rule(rule.name, rule.description, rule.permission_set, rule.risk_level)
            sod_rules_created += 1

    workflow_created = False
    default = config.default_workflow
    if default is not None:
        present = session.execute(
            select(WorkflowDefinitionModel.id).where(WorkflowDefinitionModel.name == default.name)
        ).first()
        if present is None:
            store = WorkflowDefinitionStore(session, AuditLedger(session, clock), clock)
            store.create_workflow(
                name=default.name,
                description=default.description,
                steps=[dict(step) for step in default.steps],
                conditions=default.conditions,
                on_return_policy=default.on_return_policy,
            )
            workflow_created = True

    result = BootstrapResult(
        permissions_created=permissions_created,
        roles_created=roles_created,
        sod_rules_created=sod_rules_created,
        workflow_created=workflow_created,
    )
    logger.info(
        "governance_seeded",
        extra={
            "config_version": config.version,
            "checksum": config.checksum,
            "permissions_created": permissions_created,
            "roles_created": roles_created,
            "sod_rules_created": sod_rules_created,
            "workflow_created": workflow_created,
        },
    )
    return result
