"""
SodValidator -- Separation-of-Duties checks against stored rules.

Responsibility:
    Loads the active SoD rules and the permission sets a proposed change
    would produce, then delegates the superset test to
    ``expense_engines.sod.evaluate_sod``.

Architecture position:
    Kernel > Services.  Reads through PermissionRegistry; writes nothing.

Invariants enforced:
    - Violations are returned as data (``SodValidationResult``), never
      raised.  The caller decides whether a violation blocks.
    - Every firing rule is reported; evaluation never short-circuits.
    - Proposed changes are evaluated before any write.
"""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from expense_engines.sod import evaluate_sod, merge_results
from expense_kernel.domain.access import SodRuleSpec, SodValidationResult
from expense_kernel.logging_config import get_logger
from expense_kernel.services.permission_registry import PermissionRegistry

logger = get_logger("services.sod_validator")


class SodValidator:
    """
    Contract:
        Every ``validate_*`` method returns the full list of violated rules
        for the permission set(s) the subject would hold.

    Non-goals:
        - Does NOT persist anything or raise on violation.
    """

    def __init__(self, session: Session, registry: PermissionRegistry | None = None):
        self._session = session
        self._registry = registry or PermissionRegistry(session)

    def _rules(self) -> tuple[SodRuleSpec, ...]:
        return self._registry.active_rule_specs()

    def validate_sod(self, permissions: Iterable[str]) -> SodValidationResult:
        return evaluate_sod(permissions=frozenset(permissions), rules=self._rules())

    def validate_user_sod(self, user_id: UUID) -> SodValidationResult:
        return self.validate_sod(self._registry.get_user_permissions(user_id))

    def validate_role_assignment_sod(
        self,
        user_id: UUID,
        proposed_role_ids: Iterable[UUID],
    ) -> SodValidationResult:
        """The user's current permissions plus those of ``proposed_role_ids``."""
        current = self._registry.get_user_permissions(user_id)
        proposed = self._registry.permissions_for_roles(proposed_role_ids)
        result = self.validate_sod(current | proposed)
        self._log_result("role_assignment", result, user_id=str(user_id))
        return result

    def validate_replacement_roles(
        self,
        user_id: UUID,
        role_ids: Iterable[UUID],
    ) -> SodValidationResult:
        """For replace-all assignment: only the new role set counts."""
        result = self.validate_sod(self._registry.permissions_for_roles(role_ids))
        self._log_result("role_replacement", result, user_id=str(user_id))
        return result

    def validate_role_permission_change(
        self,
        role_id: UUID,
        new_permission_names: Iterable[str],
    ) -> SodValidationResult:
        """
        ``new_permission_names`` replaces the role's permissions.  The new set
        is checked on its own, then for each holder together with the
        permissions that holder gets from their other active roles.
        """
        new_set = frozenset(new_permission_names)
        rules = self._rules()

        results = [evaluate_sod(permissions=new_set, rules=rules)]
        for user_id in self._registry.role_holders(role_id):
            others = self._registry.get_user_permissions(user_id, exclude_role_id=role_id)
            results.append(
                evaluate_sod(
                    permissions=new_set | others,
                    rules=rules,
                    description_suffix=f" (affects user {user_id})",
                )
            )

        result = merge_results(*results)
        self._log_result("role_permission_change", result, role_id=str(role_id))
        return result

    def _log_result(self, check: str, result: SodValidationResult, **context: str) -> None:
        if result.valid:
            return
        logger.warning(
            "sod_violation_detected",
            extra={
                "check": check,
                "rules": [v.rule_name for v in result.violations],
                **context,
            },
        )
