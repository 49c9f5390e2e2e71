"""Execution module: step execution, retry, refinement and aggregation."""

from stepsql.execution.aggregation import AggregationBuilder, extract_chart, select_final_sql
from stepsql.execution.refinement import (
    RefinementController,
    RefinementPolicy,
    apply_refinement,
    should_refine,
)
from stepsql.execution.retry import RetryController, StepRunReport
from stepsql.execution.step_executor import StepOutcome, execute_step, record_success

__all__ = [
    "AggregationBuilder",
    "RefinementController",
    "RefinementPolicy",
    "RetryController",
    "StepOutcome",
    "StepRunReport",
    "apply_refinement",
    "execute_step",
    "extract_chart",
    "record_success",
    "select_final_sql",
    "should_refine",
]
