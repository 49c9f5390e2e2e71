"""Run one plan step against a query executor.

The read-only check runs before anything reaches the executor; a statement
that fails it raises ``UnsafeQueryError`` and is never executed.
"""

import logging
import time
from dataclasses import dataclass

from stepsql.errors import DatabaseError, StepExecutionError
from stepsql.planning.schema import (
    ContextEntry,
    ContextStatus,
    Plan,
    PlanPhase,
    Step,
    StepResult,
)
from stepsql.sql.executor import QueryExecutor
from stepsql.sql.guardrails import GuardrailConfig, check_read_only

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Successful execution of one step."""

    step_id: str
    result: StepResult
    row_count: int
    execution_time_ms: float


def execute_step(
    step: Step,
    executor: QueryExecutor,
    guardrails: GuardrailConfig | None = None,
) -> StepOutcome:
    """Execute ``step.sql`` once.

    Raises:
        UnsafeQueryError: If the SQL fails the read-only check
        StepExecutionError: If the executor raised ``DatabaseError``
    """
    sql = check_read_only(step.sql, guardrails)

    start = time.perf_counter()
    try:
        query_result = executor.execute_query(sql)
    except DatabaseError as e:
        raise StepExecutionError(e.message, step_id=step.id, sql=sql) from e
    elapsed_ms = round((time.perf_counter() - start) * 1000, 2)

    result = StepResult(
        rows=list(query_result.rows),
        columns=list(query_result.columns),
        row_count=query_result.row_count,
    )
    logger.info("Step %s returned %d row(s) in %.1fms", step.id, result.row_count, elapsed_ms)
    return StepOutcome(
        step_id=step.id,
        result=result,
        row_count=result.row_count,
        execution_time_ms=elapsed_ms,
    )


def record_success(plan: Plan, step_id: str, outcome: StepOutcome, attempts: int = 1) -> Plan:
    """Return a copy of ``plan`` with the step's result recorded."""
    plan = plan.model_copy(deep=True)
    step = plan.get_step(step_id)
    if step is None:
        raise KeyError(f"Unknown step id: {step_id}")

    step.result = outcome.result
    step.row_count = outcome.row_count
    step.execution_time_ms = outcome.execution_time_ms
    step.error = None
    step.attempts = attempts

    plan.executed_step_ids.append(step_id)
    plan.successful_steps += 1
    plan.total_execution_time_ms += outcome.execution_time_ms
    plan.phase = PlanPhase.EXECUTING
    plan.context.append(ContextEntry(
        step=step.model_copy(deep=True),
        status=ContextStatus.SUCCESS,
        result=outcome.result,
    ))
    return plan
