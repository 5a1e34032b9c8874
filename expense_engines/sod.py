"""
expense_engines.sod -- Separation-of-Duties evaluation.

Responsibility:
    Given a permission set and the active SoD rules, report every rule whose
    toxic combination the set fully contains.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The database-facing side
    (loading rules, computing a user's permissions) is
    expense_kernel.services.sod_validator.

Invariants enforced:
    - Superset rule: a rule fires iff ``rule.permission_set <= permissions``.
    - All firing rules are returned, ordered by rule name; evaluation never
      stops at the first violation.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from expense_engines.tracer import traced_engine
from expense_kernel.domain.access import SodRuleSpec, SodValidationResult, SodViolation


@traced_engine("sod", "1.0", fingerprint_fields=("permissions",))
def evaluate_sod(
    *,
    permissions: Iterable[str],
    rules: Sequence[SodRuleSpec],
    description_suffix: str = "",
) -> SodValidationResult:
    held = frozenset(permissions)
    violations = [
        SodViolation(
            rule_name=rule.name,
            description=f"{rule.description}{description_suffix}",
            conflicting_permissions=tuple(sorted(rule.permission_set)),
        )
        for rule in sorted(rules, key=lambda r: r.name)
        if rule.permission_set <= held
    ]
    return SodValidationResult(violations=tuple(violations))


def merge_results(*results: SodValidationResult) -> SodValidationResult:
    """Concatenate violations from several evaluations, keeping order."""
    merged: list[SodViolation] = []
    for result in results:
        merged.extend(result.violations)
    return SodValidationResult(violations=tuple(merged))
