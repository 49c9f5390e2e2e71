"""Plan refinement: when to ask the planner for a revision and how to merge it.

Refinement is cost-bounded. It runs after a successful step only when the
``RefinementPolicy`` says so (a cadence of successes, an empty result, or a
very large one) and never once no pending step remains.

Merging a proposal is a pure transition:
- new steps are appended; ids that collide with existing steps are dropped
- modified steps are matched by id; executed or failed steps are immune
- a removal turns the step into ``kind=removed`` with no SQL
- dependency lists are repaired in the same pass, so no step is left
  referencing a step removed this round or an id that does not exist
"""

import logging
from dataclasses import dataclass

from stepsql.config import EngineConfig
from stepsql.errors import StepsqlError
from stepsql.execution.aggregation import build_execution_summary
from stepsql.execution.step_executor import StepOutcome
from stepsql.planning.planner import Planner
from stepsql.planning.resolver import SKIPPED_REASON, pending_steps
from stepsql.planning.schema import (
    ModifiedStep,
    Plan,
    PlanPhase,
    RefinementProposal,
    Step,
    StepKind,
    repair_dependencies,
)

logger = logging.getLogger(__name__)


@dataclass
class RefinementPolicy:
    """When a successful step triggers a refinement request."""

    every_n_successes: int = 2
    refine_on_empty: bool = True
    large_result_threshold: int = 1000
    max_rounds: int = 10

    @classmethod
    def from_config(cls, config: EngineConfig) -> "RefinementPolicy":
        return cls(
            every_n_successes=config.refine_every_n,
            refine_on_empty=config.refine_on_empty,
            large_result_threshold=config.large_result_rows,
            max_rounds=config.max_refinement_rounds,
        )


def should_refine(
    plan: Plan,
    last_outcome: StepOutcome | None,
    policy: RefinementPolicy | None = None,
) -> bool:
    """Decide whether to request a refinement after ``last_outcome``."""
    policy = policy or RefinementPolicy()
    if last_outcome is None:
        return False
    if plan.refinement_rounds >= policy.max_rounds:
        return False
    if not pending_steps(plan):
        return False

    if policy.refine_on_empty and last_outcome.row_count == 0:
        return True
    if policy.large_result_threshold and last_outcome.row_count > policy.large_result_threshold:
        return True
    n = policy.every_n_successes
    return n > 0 and plan.successful_steps > 0 and plan.successful_steps % n == 0


def _merge_step(step: Step, modification: ModifiedStep) -> None:
    if modification.description is not None:
        step.description = modification.description
    if modification.sql is not None:
        step.sql = modification.sql.strip()
    if modification.depends_on is not None:
        step.depends_on = [dep for dep in dict.fromkeys(modification.depends_on) if dep != step.id]
    if modification.type is not None and modification.type != StepKind.REMOVED:
        step.kind = modification.type
    if modification.reasoning is not None:
        step.reasoning = modification.reasoning


def apply_refinement(plan: Plan, proposal: RefinementProposal) -> Plan:
    """Merge ``proposal`` into a copy of ``plan``."""
    if not proposal.should_refine:
        return plan

    plan = plan.model_copy(deep=True)
    existing = set(plan.step_ids())

    added = 0
    for raw in proposal.new_steps:
        if raw.id in existing:
            logger.warning("Dropping new step %s: id already exists", raw.id)
            continue
        plan.steps.append(raw.to_step())
        existing.add(raw.id)
        added += 1

    removed_this_round: set[str] = set()
    for modification in proposal.modified_steps:
        step = plan.get_step(modification.id)
        if step is None:
            logger.warning("Ignoring modification of unknown step %s", modification.id)
            continue
        if plan.is_terminal(step.id) or step.result is not None:
            logger.info("Ignoring modification of finished step %s", step.id)
            continue
        if step.is_removed:
            continue

        if modification.is_removal():
            step.kind = StepKind.REMOVED
            step.sql = None
            step.reasoning = modification.reasoning or step.reasoning or SKIPPED_REASON
            removed_this_round.add(step.id)
            logger.info("Removed step %s during refinement", step.id)
        else:
            _merge_step(step, modification)

    repair_dependencies(plan.steps, removed_this_round)
    plan.refinement_rounds += 1
    logger.info(
        "Refinement round %d: %d new, %d removed",
        plan.refinement_rounds,
        added,
        len(removed_this_round),
    )
    return plan


class RefinementController:
    """Asks the planner for revisions on the policy's cadence.

    Usage:
        refinement = RefinementController(planner, RefinementPolicy())
        plan = refinement.maybe_refine(plan, outcome)
    """

    def __init__(self, planner: Planner, policy: RefinementPolicy | None = None):
        self.planner = planner
        self.policy = policy or RefinementPolicy()

    def maybe_refine(self, plan: Plan, last_outcome: StepOutcome | None) -> Plan:
        """Return the refined plan, or ``plan`` unchanged when no refinement applies."""
        if not should_refine(plan, last_outcome, self.policy):
            return plan

        pending = pending_steps(plan)
        summary = build_execution_summary(plan)
        refining = plan.model_copy(update={"phase": PlanPhase.REFINING})
        try:
            proposal = self.planner.request_refinement(refining, pending, summary)
        except StepsqlError as e:
            logger.warning("Refinement request failed, keeping current plan: %s", e)
            return plan

        if not proposal.should_refine:
            logger.info("Planner declined refinement: %s", proposal.reasoning or "no reason given")
            return plan
        return apply_refinement(refining, proposal)
