"""Dependency resolution for plan steps.

Decides which steps may run next. Removed steps are satisfied by definition:
the first resolver pass that sees one marks it executed without running it
and records a ``skipped`` context entry, so dependents are never held back by
a step the planner dropped.
"""

from stepsql.planning.schema import (
    ContextEntry,
    ContextStatus,
    Plan,
    Step,
)

SKIPPED_REASON = "Step was removed during refinement"


def is_executable(step: Step, executed_ids: set[str] | list[str], all_steps: list[Step]) -> bool:
    """Check whether every live dependency of ``step`` has executed.

    Dependencies that point at a removed step are excluded from the check.

    Args:
        step: Step to test
        executed_ids: Ids of steps already executed (or skipped)
        all_steps: Every step of the plan, used to look up dependency kinds

    Returns:
        True if the step can run now
    """
    if not step.depends_on:
        return True

    removed = {s.id for s in all_steps if s.is_removed}
    executed = set(executed_ids)
    return all(dep in executed for dep in step.depends_on if dep not in removed)


def pending_steps(plan: Plan) -> list[Step]:
    """Steps that are neither removed, executed, nor permanently failed."""
    return [
        step
        for step in plan.steps
        if not step.is_removed and not plan.is_terminal(step.id)
    ]


def mark_removed_steps(plan: Plan) -> Plan:
    """Mark every not-yet-seen removed step as executed and log it as skipped."""
    unseen = [
        step for step in plan.steps
        if step.is_removed and step.id not in plan.executed_step_ids
    ]
    if not unseen:
        return plan

    plan = plan.model_copy(deep=True)
    for step in unseen:
        plan.executed_step_ids.append(step.id)
        plan.context.append(ContextEntry(
            step=step.model_copy(deep=True),
            status=ContextStatus.SKIPPED,
            reason=step.reasoning or SKIPPED_REASON,
        ))
    return plan


def eligible_step_ids(plan: Plan) -> list[str]:
    """Ids of pending steps whose dependencies are satisfied, in plan order."""
    return [
        step.id
        for step in pending_steps(plan)
        if is_executable(step, plan.executed_step_ids, plan.steps)
    ]


def resolve(plan: Plan) -> tuple[Plan, list[str]]:
    """Run one resolver pass.

    Returns:
        Tuple of (updated plan, eligible step ids in plan order)
    """
    plan = mark_removed_steps(plan)
    return plan, eligible_step_ids(plan)


def next_eligible(plan: Plan) -> tuple[Plan, Step | None]:
    """Return the first eligible step, or None when the plan is exhausted."""
    plan, eligible = resolve(plan)
    if not eligible:
        return plan, None
    return plan, plan.get_step(eligible[0])
