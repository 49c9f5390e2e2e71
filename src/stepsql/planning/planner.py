"""Planner seam: the reasoning oracle that writes and revises plans.

The engine only depends on the ``Planner`` protocol. ``LLMPlanner`` is the
shipped implementation: it prompts the configured LLM, parses the JSON it
returns and validates it strictly into plan models. Every failure, transport
or payload, surfaces as ``PlannerError``.
"""

import json
import logging
import os
from typing import Any, Callable, Protocol, runtime_checkable

from pydantic import ValidationError

from stepsql.errors import PlannerError
from stepsql.llm.client import parse_json_response
from stepsql.llm.router import call_llm
from stepsql.planning import prompts
from stepsql.planning.schema import (
    ContextEntry,
    ConversationTurn,
    ExecutionSummary,
    Plan,
    PlannerPlan,
    RefinementProposal,
    Step,
    TableSchema,
)

logger = logging.getLogger(__name__)

LLMCall = Callable[..., str]

REPAIR_PROMPT_TEMPLATE = """The previous JSON output had errors. Fix the JSON to satisfy the errors and rules.

Previous output:
{previous_output}

Errors:
{errors}

Rules reminder:
- Output ONLY valid JSON (no markdown)
- "steps" must be a non-empty list; every step needs a unique "id" and a "sql"
- "type" is one of: query, analysis, aggregation
- "dependsOn" lists ids of other steps in the same plan

Return ONLY the corrected JSON."""


@runtime_checkable
class Planner(Protocol):
    """Produces and revises plans, fixes failing steps, writes the narrative."""

    def request_plan(
        self,
        question: str,
        schema: list[TableSchema],
        dialect: str,
        history: list[ConversationTurn],
    ) -> Plan:
        ...

    def request_refinement(
        self,
        plan: Plan,
        pending_steps: list[Step],
        summary: ExecutionSummary,
    ) -> RefinementProposal:
        ...

    def request_step_fix(self, plan: Plan, step: Step, error: str) -> str | None:
        ...

    def request_narrative(
        self,
        question: str,
        context: list[ContextEntry],
        summary: ExecutionSummary,
    ) -> str:
        ...


class LLMPlanner:
    """Planner backed by ``stepsql.llm.router.call_llm``.

    Usage:
        planner = LLMPlanner(provider="openai")
        plan = planner.request_plan(question, schema, "postgresql", [])
    """

    def __init__(
        self,
        *,
        provider: str | None = None,
        model_overrides: dict[str, str] | None = None,
        max_repairs: int | None = None,
        large_result_rows: int = 1000,
        chart_max_points: int = 20,
        llm: LLMCall | None = None,
    ):
        """Initialize planner.

        Args:
            provider: LLM provider override (ollama/openai/anthropic)
            model_overrides: Per-role model names, keyed "planner"/"narrator"
            max_repairs: Repair round-trips for an invalid initial plan
                (default: STEPSQL_PLANNER_REPAIRS or 1)
            large_result_rows: Threshold quoted in the refinement prompt
            chart_max_points: Chart size quoted in the narrative prompt
            llm: Callable with the ``call_llm`` signature
        """
        self.provider = provider
        self.model_overrides = dict(model_overrides or {})
        if max_repairs is None:
            max_repairs = int(os.environ.get("STEPSQL_PLANNER_REPAIRS", "1"))
        self.max_repairs = max_repairs
        self.large_result_rows = large_result_rows
        self.chart_max_points = chart_max_points
        self._llm = llm or call_llm

    def _complete(self, messages: list[dict[str, str]], role: str) -> str:
        try:
            return self._llm(
                messages,
                role=role,
                provider=self.provider,
                model=self.model_overrides.get(role),
            )
        except Exception as e:
            raise PlannerError(f"LLM call failed ({role}): {e}") from e

    def _complete_json(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        response = self._complete(messages, "planner")
        try:
            return parse_json_response(response)
        except json.JSONDecodeError as e:
            raise PlannerError(f"Planner returned invalid JSON: {e}") from e

    def request_plan(
        self,
        question: str,
        schema: list[TableSchema],
        dialect: str,
        history: list[ConversationTurn],
    ) -> Plan:
        messages = prompts.build_plan_messages(question, schema, dialect, history)

        for attempt in range(self.max_repairs + 1):
            response = self._complete(messages, "planner")
            try:
                payload = parse_json_response(response)
                planner_plan = PlannerPlan.model_validate(payload)
            except (json.JSONDecodeError, ValidationError) as e:
                if attempt >= self.max_repairs:
                    raise PlannerError(
                        f"Planner output invalid after {self.max_repairs} repair(s): {e}"
                    ) from e
                logger.warning("Invalid plan from planner (attempt %d): %s", attempt + 1, e)
                messages = [
                    {"role": "system", "content": prompts.PLANNER_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": REPAIR_PROMPT_TEMPLATE.format(
                            previous_output=response, errors=str(e)
                        ),
                    },
                ]
                continue

            plan = planner_plan.to_plan(question, dialect, history)
            logger.info("Planner produced %d step(s) for plan %s", len(plan.steps), plan.id)
            return plan

        raise PlannerError("Unexpected error in plan generation")

    def request_refinement(
        self,
        plan: Plan,
        pending_steps: list[Step],
        summary: ExecutionSummary,
    ) -> RefinementProposal:
        messages = prompts.build_refinement_messages(
            plan, pending_steps, summary, large_result_rows=self.large_result_rows
        )
        payload = self._complete_json(messages)
        try:
            return RefinementProposal.model_validate(payload)
        except ValidationError as e:
            raise PlannerError(f"Invalid refinement payload: {e}") from e

    def request_step_fix(self, plan: Plan, step: Step, error: str) -> str | None:
        payload = self._complete_json(prompts.build_step_fix_messages(plan, step, error))
        sql = payload.get("sql")
        if not isinstance(sql, str) or not sql.strip():
            return None
        return sql.strip()

    def request_narrative(
        self,
        question: str,
        context: list[ContextEntry],
        summary: ExecutionSummary,
    ) -> str:
        messages = prompts.build_narrative_messages(
            question, context, summary, chart_max_points=self.chart_max_points
        )
        text = self._complete(messages, "narrator")
        if not text or not text.strip():
            raise PlannerError("Narrator returned an empty answer")
        return text
