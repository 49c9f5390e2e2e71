"""Bounded retry of a failing step with planner-proposed fixes.

A step is attempted at most ``max_retries + 1`` times. After each execution
error the planner is asked for revised SQL; the step is retried only when the
revision differs from what just failed. Unsafe SQL fails the step at once,
without a planner round-trip.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from stepsql.errors import StepExecutionError, StepsqlError, UnsafeQueryError
from stepsql.execution.step_executor import StepOutcome, execute_step, record_success
from stepsql.planning.planner import Planner
from stepsql.planning.schema import (
    ContextEntry,
    ContextStatus,
    Plan,
    PlanPhase,
    Step,
)
from stepsql.sql.executor import QueryExecutor
from stepsql.sql.guardrails import GuardrailConfig

logger = logging.getLogger(__name__)

AttemptCallback = Callable[[Step, int], None]


@dataclass
class StepRunReport:
    """What happened to one step across all its attempts."""

    step_id: str
    succeeded: bool
    attempts: int
    outcome: Optional[StepOutcome] = None
    error: Optional[str] = None
    unsafe: bool = False


def replace_step_sql(plan: Plan, step_id: str, sql: str) -> Plan:
    """Return a copy of ``plan`` with the step's SQL swapped for a revision."""
    plan = plan.model_copy(deep=True)
    step = plan.get_step(step_id)
    if step is None:
        raise KeyError(f"Unknown step id: {step_id}")
    step.sql = sql
    step.error = None
    return plan


def record_failure(plan: Plan, step_id: str, error: str, attempts: int = 1) -> Plan:
    """Return a copy of ``plan`` with the step marked permanently failed.

    A step already marked failed is left as is, so the failure is counted once.
    """
    if step_id in plan.failed_step_ids:
        return plan

    plan = plan.model_copy(deep=True)
    step = plan.get_step(step_id)
    if step is None:
        raise KeyError(f"Unknown step id: {step_id}")

    step.error = error
    step.result = None
    step.attempts = attempts

    plan.failed_step_ids.append(step_id)
    plan.failed_steps += 1
    plan.phase = PlanPhase.EXECUTING
    plan.context.append(ContextEntry(
        step=step.model_copy(deep=True),
        status=ContextStatus.ERROR,
        error=error,
    ))
    return plan


class RetryController:
    """Runs a step to success or permanent failure.

    Usage:
        retry = RetryController(planner, executor, max_retries=3)
        plan, report = retry.run_step(plan, "step_1")
    """

    def __init__(
        self,
        planner: Planner,
        executor: QueryExecutor,
        max_retries: int = 3,
        guardrails: GuardrailConfig | None = None,
    ):
        self.planner = planner
        self.executor = executor
        self.max_retries = max(0, max_retries)
        self.guardrails = guardrails

    def _request_fix(self, plan: Plan, step: Step, error: str) -> str | None:
        try:
            return self.planner.request_step_fix(plan, step, error)
        except StepsqlError as e:
            # No revision available: the step fails with its original error
            logger.warning("Planner could not fix step %s: %s", step.id, e)
            return None

    def run_step(
        self,
        plan: Plan,
        step_id: str,
        on_attempt: AttemptCallback | None = None,
    ) -> tuple[Plan, StepRunReport]:
        """Execute ``step_id``, retrying with planner fixes within the bound.

        Args:
            plan: Current plan
            step_id: Id of an eligible step
            on_attempt: Called with (step, attempt number) before each attempt

        Returns:
            Tuple of (updated plan, report)
        """
        attempt = 0
        last_error = "Step failed"

        while True:
            step = plan.get_step(step_id)
            if step is None:
                raise KeyError(f"Unknown step id: {step_id}")
            attempt += 1
            if on_attempt is not None:
                on_attempt(step, attempt)

            try:
                outcome = execute_step(step, self.executor, self.guardrails)
            except UnsafeQueryError as e:
                error = f"Unsafe query rejected: {e.message}"
                logger.warning("Step %s rejected by read-only check: %s", step_id, e.message)
                plan = record_failure(plan, step_id, error, attempts=attempt)
                return plan, StepRunReport(
                    step_id=step_id,
                    succeeded=False,
                    attempts=attempt,
                    error=error,
                    unsafe=True,
                )
            except StepExecutionError as e:
                last_error = e.message
                logger.info("Step %s failed on attempt %d: %s", step_id, attempt, e.message)
                if attempt > self.max_retries:
                    break

                plan = plan.model_copy(update={"phase": PlanPhase.RETRYING})
                revised = self._request_fix(plan, step, e.message)
                if revised is None or revised.strip() == (step.sql or "").strip():
                    break
                logger.info("Retrying step %s with revised SQL", step_id)
                plan = replace_step_sql(plan, step_id, revised.strip())
                continue

            plan = record_success(plan, step_id, outcome, attempts=attempt)
            return plan, StepRunReport(
                step_id=step_id,
                succeeded=True,
                attempts=attempt,
                outcome=outcome,
            )

        logger.warning("Step %s failed permanently after %d attempt(s)", step_id, attempt)
        plan = record_failure(plan, step_id, last_error, attempts=attempt)
        return plan, StepRunReport(
            step_id=step_id,
            succeeded=False,
            attempts=attempt,
            error=last_error,
        )
