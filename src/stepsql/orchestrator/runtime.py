"""Orchestrator runtime for multi-step query plans.

This module runs one question end to end:
Schema retrieval -> Planner -> (resolve -> execute -> retry -> refine)* -> Aggregate

Key features:
- Steps run strictly one at a time, first eligible step in plan order
- Each transition returns an updated plan value; the runner only threads it through
- Terminates exactly when no step is eligible
- Only two fatal errors: no relevant schema, and a failed initial plan
- Progress events for any external display
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stepsql.config import EngineConfig
from stepsql.errors import PlannerError, SchemaNotFoundError
from stepsql.events import PlanEventEmitter
from stepsql.execution.aggregation import AggregationBuilder, select_final_step
from stepsql.execution.refinement import RefinementController, RefinementPolicy
from stepsql.execution.retry import RetryController
from stepsql.planning.planner import LLMPlanner, Planner
from stepsql.planning.resolver import next_eligible
from stepsql.planning.schema import (
    ConversationTurn,
    Plan,
    PlanPhase,
    Step,
    TableSchema,
)
from stepsql.schema_search import DuckDBSchemaRetriever, HttpSchemaRetriever, SchemaRetriever
from stepsql.sql.executor import DuckDBQueryExecutor, QueryExecutor

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Answer text plus the finished plan."""

    answer: str
    plan: Plan

    def to_storage(self) -> dict[str, Any]:
        """The ``{sql, result_data, chart}`` triple handed to the caller for persistence."""
        final_step = select_final_step(self.plan)
        return {
            "sql": self.plan.final_sql,
            "result_data": final_step.result.rows if final_step and final_step.result else None,
            "chart": self.plan.chart.model_dump(by_alias=True) if self.plan.chart else None,
        }


def _step_payload(step: Step) -> dict[str, Any]:
    return {
        "id": step.id,
        "type": step.kind.value,
        "description": step.description,
        "sql": step.sql,
        "depends_on": list(step.depends_on),
    }


class PlanRunner:
    """Main runner for the plan execution loop.

    Usage:
        runner = PlanRunner(planner, DuckDBSchemaRetriever(db), DuckDBQueryExecutor(db))
        result = runner.run_plan("Top 5 customers by revenue", "local", "duckdb")
    """

    def __init__(
        self,
        planner: Planner,
        schema_retriever: SchemaRetriever,
        executor: QueryExecutor,
        config: EngineConfig | None = None,
        events: PlanEventEmitter | None = None,
    ):
        """Initialize runner.

        Args:
            planner: Planner used for plans, refinements, fixes and narration
            schema_retriever: Source of the relevant schema subset
            executor: Read-only query executor
            config: Engine tuning (default: EngineConfig())
            events: Default event emitter for runs that do not bring their own
        """
        self.planner = planner
        self.schema_retriever = schema_retriever
        self.executor = executor
        self.config = config or EngineConfig()
        self.events = events or PlanEventEmitter()

        self.retry = RetryController(planner, executor, max_retries=self.config.max_retries)
        self.refinement = RefinementController(planner, RefinementPolicy.from_config(self.config))
        self.aggregation = AggregationBuilder(planner, chart_max_points=self.config.chart_max_points)

    def retrieve_schema(self, database_id: str, question: str) -> list[TableSchema]:
        result = self.schema_retriever.retrieve_relevant_schema(
            database_id, question, self.config.schema_top_k
        )
        if not result.success:
            raise SchemaNotFoundError(
                f"Schema retrieval failed: {result.error or 'unknown error'}",
                {"database_id": database_id},
            )
        tables = [match.table for match in result.data]
        if not tables:
            raise SchemaNotFoundError(
                "No relevant tables found for the question",
                {"database_id": database_id},
            )
        logger.info("Retrieved %d relevant table(s) for database %s", len(tables), database_id)
        return tables

    def execute(self, plan: Plan, events: PlanEventEmitter | None = None) -> Plan:
        """Run eligible steps until none remain; returns the executed plan."""
        events = events or self.events

        def on_attempt(step: Step, attempt: int) -> None:
            events.emit(
                "step_started",
                plan_id=plan.id,
                step_id=step.id,
                attempt=attempt,
                description=step.description,
                sql=step.sql,
            )

        while True:
            plan, step = next_eligible(plan)
            if step is None:
                break

            plan = plan.model_copy(update={"phase": PlanPhase.EXECUTING})
            plan, report = self.retry.run_step(plan, step.id, on_attempt=on_attempt)

            if report.succeeded:
                events.emit(
                    "step_completed",
                    plan_id=plan.id,
                    step_id=step.id,
                    row_count=report.outcome.row_count,
                    execution_time_ms=report.outcome.execution_time_ms,
                    attempts=report.attempts,
                )
                plan = self.refinement.maybe_refine(plan, report.outcome)
            else:
                events.emit(
                    "step_error",
                    plan_id=plan.id,
                    step_id=step.id,
                    error=report.error,
                    attempts=report.attempts,
                    unsafe=report.unsafe,
                )

        return plan

    def run_plan(
        self,
        question: str,
        database_id: str,
        dialect: str = "postgresql",
        history: list[ConversationTurn] | None = None,
        *,
        events: PlanEventEmitter | None = None,
    ) -> RunResult:
        """Answer ``question`` against ``database_id``.

        Raises:
            SchemaNotFoundError: No relevant schema could be retrieved
            PlannerError: The initial plan could not be produced
        """
        events = events or self.events
        history = list(history or [])
        started = time.perf_counter()

        schema = self.retrieve_schema(database_id, question)

        try:
            plan = self.planner.request_plan(question, schema, dialect, history)
        except PlannerError:
            logger.error("Initial plan generation failed for: %s", question)
            raise

        plan = plan.model_copy(update={"phase": PlanPhase.EXECUTING})
        events.emit(
            "plan_generated",
            plan_id=plan.id,
            intent=plan.intent,
            steps=[_step_payload(step) for step in plan.steps if not step.is_removed],
        )

        plan = self.execute(plan, events)
        plan = self.aggregation.aggregate(plan)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "Plan %s done in %.0fms: %d succeeded, %d failed",
            plan.id, elapsed_ms, plan.successful_steps, plan.failed_steps,
        )
        events.emit(
            "plan_completed",
            plan_id=plan.id,
            successful_steps=plan.successful_steps,
            failed_steps=plan.failed_steps,
            final_sql=plan.final_sql,
            has_chart=plan.chart is not None,
            elapsed_ms=elapsed_ms,
        )
        return RunResult(answer=plan.final_answer or "", plan=plan)


def build_runner(
    db_path: Path | str,
    *,
    schema_service_url: str | None = None,
    provider: str | None = None,
    config: EngineConfig | None = None,
    events: PlanEventEmitter | None = None,
) -> PlanRunner:
    """Wire the shipped collaborators around a DuckDB file.

    Schema comes from the HTTP schema service when ``schema_service_url`` is
    given, otherwise from introspecting the DuckDB file itself.
    """
    config = config or EngineConfig.from_env()
    if schema_service_url:
        retriever: SchemaRetriever = HttpSchemaRetriever(schema_service_url)
    else:
        retriever = DuckDBSchemaRetriever(db_path)
    planner = LLMPlanner(
        provider=provider,
        large_result_rows=config.large_result_rows,
        chart_max_points=config.chart_max_points,
    )
    return PlanRunner(
        planner=planner,
        schema_retriever=retriever,
        executor=DuckDBQueryExecutor(db_path),
        config=config,
        events=events,
    )
