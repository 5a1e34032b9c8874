"""
Module: expense_engines
Responsibility:
    Pure calculation engines for the expense kernel: workflow condition
    evaluation, approval step routing, and Separation-of-Duties evaluation.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  May import
    expense_kernel.domain, expense_kernel.utils, and (for tracing)
    expense_kernel.logging_config.  MUST NOT import services, selectors,
    or models.

Invariants enforced:
    - Purity: engines never read the clock or the database.
    - Determinism: identical inputs always produce identical outputs.
"""

from expense_engines.conditions import evaluate_condition
from expense_engines.routing import (
    next_applicable_step,
    should_skip_step,
)
from expense_engines.sod import evaluate_sod, merge_results

__all__ = [
    "evaluate_condition",
    "evaluate_sod",
    "merge_results",
    "next_applicable_step",
    "should_skip_step",
]
