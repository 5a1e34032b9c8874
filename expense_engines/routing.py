"""
expense_engines.routing -- Approval step routing.

Responsibility:
    Decide which step of a workflow snapshot is next for a report, skipping
    steps whose conditions say they do not apply.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - A step is skipped when its ``skip_if`` holds; otherwise when its
      ``required_if`` does not hold; otherwise when it is statically
      ``required: false``.  ``skip_if`` takes precedence over ``required_if``.
    - Routing moves forward only: the next step always has a strictly larger
      step number than the current one.
"""

from __future__ import annotations

from expense_engines.conditions import evaluate_condition
from expense_engines.tracer import traced_engine
from expense_kernel.domain.report import ReportFacts
from expense_kernel.domain.workflow import WorkflowSnapshot, WorkflowStep


def should_skip_step(step: WorkflowStep, facts: ReportFacts) -> bool:
    if step.skip_if is not None:
        return evaluate_condition(step.skip_if, facts)
    if step.required_if is not None:
        return not evaluate_condition(step.required_if, facts)
    return step.required is False


@traced_engine("routing", "1.0", fingerprint_fields=("after_step",))
def next_applicable_step(
    *,
    snapshot: WorkflowSnapshot,
    facts: ReportFacts,
    after_step: int,
) -> WorkflowStep | None:
    """First step after ``after_step`` that is not skipped, or None when done."""
    for step in sorted(snapshot.steps, key=lambda s: s.step_number):
        if step.step_number <= after_step:
            continue
        if not should_skip_step(step, facts):
            return step
    return None
