"""Final answer assembly once no step is eligible.

Produces the three artifacts of a finished plan:
- the representative SQL (last successful step in plan order)
- the narrative answer, written by the planner or built deterministically
  from the successful context entries when narration fails
- the chart specification parsed from the narrative's ``chartdata`` block
"""

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from stepsql.planning.planner import Planner
from stepsql.planning.resolver import pending_steps
from stepsql.planning.schema import (
    ChartSpec,
    ContextStatus,
    ExecutionSummary,
    Plan,
    PlanPhase,
    Step,
)

logger = logging.getLogger(__name__)

CHART_KINDS = ("bar", "pie", "line", "none")
FALLBACK_PREVIEW_ROWS = 10

_CHART_BLOCK_RE = re.compile(r"```chartdata[ \t]*\r?\n?(.*?)```", re.DOTALL)
# A block with no closing fence after the tag runs to the end of the text
_UNTERMINATED_CHART_BLOCK_RE = re.compile(r"```chartdata\b(?:(?!```).)*\Z", re.DOTALL)


def select_final_step(plan: Plan) -> Step | None:
    """Last step, in plan order, with SQL, a result, and no error."""
    for step in reversed(plan.steps):
        if step.sql and step.result is not None and step.error is None:
            return step
    return None


def select_final_sql(plan: Plan) -> str | None:
    step = select_final_step(plan)
    return step.sql if step is not None else None


def build_execution_summary(plan: Plan) -> ExecutionSummary:
    timings = {
        step.id: step.execution_time_ms
        for step in plan.steps
        if step.execution_time_ms is not None
    }
    total_rows = sum(
        entry.result.row_count
        for entry in plan.context
        if entry.status == ContextStatus.SUCCESS and entry.result is not None
    )
    skipped = sum(1 for entry in plan.context if entry.status == ContextStatus.SKIPPED)
    return ExecutionSummary(
        total_steps=len(plan.steps),
        completed_steps=len(plan.executed_step_ids) + len(plan.failed_step_ids),
        pending_steps=len(pending_steps(plan)),
        successful_steps=plan.successful_steps,
        failed_steps=plan.failed_steps,
        skipped_steps=skipped,
        total_rows=total_rows,
        total_execution_time_ms=round(plan.total_execution_time_ms, 2),
        step_timings=timings,
    )


def strip_chart_block(text: str) -> str:
    text = _CHART_BLOCK_RE.sub("", text)
    text = _UNTERMINATED_CHART_BLOCK_RE.sub("", text)
    return text.strip()


def extract_chart(text: str, max_points: int = 20) -> tuple[str, ChartSpec | None]:
    """Split the narrative from its embedded chart block.

    The block is always removed from the narrative. It becomes a ``ChartSpec``
    only if it is JSON with a recognized ``type`` and an array ``data`` whose
    items validate (``type: none`` may omit ``data``); anything else yields None.

    Returns:
        Tuple of (narrative without the block, chart or None)
    """
    narrative = strip_chart_block(text)
    match = _CHART_BLOCK_RE.search(text)
    if not match:
        return narrative, None

    try:
        payload = json.loads(match.group(1).strip())
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse chart data: %s", e)
        return narrative, None

    if not isinstance(payload, dict):
        logger.warning("Chart data is not an object")
        return narrative, None
    if payload.get("type") == "none":
        payload.setdefault("data", [])
    if payload.get("type") not in CHART_KINDS or not isinstance(payload.get("data"), list):
        logger.warning("Chart data has no recognized type or no data array")
        return narrative, None

    try:
        chart = ChartSpec.model_validate(payload)
    except ValidationError as e:
        logger.warning("Chart data failed validation: %s", e)
        return narrative, None

    if len(chart.data) > max_points:
        chart.data = chart.data[:max_points]
    return narrative, chart


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("|", "\\|").replace("\n", " ")


def markdown_table(rows: list[dict[str, Any]], columns: list[str], limit: int = FALLBACK_PREVIEW_ROWS) -> str:
    if not rows:
        return "_No rows returned._"
    columns = columns or list(rows[0].keys())
    lines = [
        "| " + " | ".join(columns) + " |",
        "| " + " | ".join("---" for _ in columns) + " |",
    ]
    for row in rows[:limit]:
        lines.append("| " + " | ".join(_format_cell(row.get(col)) for col in columns) + " |")
    if len(rows) > limit:
        lines.append(f"\n_Showing {limit} of {len(rows)} rows._")
    return "\n".join(lines)


def build_fallback_answer(plan: Plan) -> str:
    """Deterministic markdown answer from successful context entries only."""
    successes = [entry for entry in plan.context if entry.status == ContextStatus.SUCCESS]
    if not successes:
        return (
            "# Unable to Answer\n\n"
            f'No query step succeeded for: "{plan.question}"\n\n'
            f"Failed steps: {plan.failed_steps}"
        )

    parts = [
        "# Query Results",
        "",
        "## Summary",
        f'Executed {len(successes)} successful query step(s) for: "{plan.question}"',
        "",
        "## Results",
    ]
    for idx, entry in enumerate(successes, start=1):
        result = entry.result
        parts.append(f"### Step {idx}: {entry.step.description or entry.step.id}")
        parts.append(f"```sql\n{entry.step.sql}\n```")
        if result is not None:
            parts.append(markdown_table(result.rows, result.columns))
        parts.append("")
    return "\n".join(parts).strip()


class AggregationBuilder:
    """Builds the final artifacts of a plan. Never raises on narration failure."""

    def __init__(self, planner: Planner, chart_max_points: int = 20):
        self.planner = planner
        self.chart_max_points = chart_max_points

    def aggregate(self, plan: Plan) -> Plan:
        plan = plan.model_copy(deep=True)
        plan.phase = PlanPhase.AGGREGATING
        plan.final_sql = select_final_sql(plan)
        summary = build_execution_summary(plan)

        if plan.successful_steps == 0:
            # nothing to narrate
            plan.final_answer = build_fallback_answer(plan)
            plan.chart = None
            plan.phase = PlanPhase.DONE
            return plan

        try:
            text = self.planner.request_narrative(plan.question, plan.context, summary)
        except Exception:
            logger.warning("Narrative generation failed, using fallback answer", exc_info=True)
            plan.final_answer = build_fallback_answer(plan)
            plan.chart = None
        else:
            narrative, chart = extract_chart(text, self.chart_max_points)
            plan.final_answer = narrative or build_fallback_answer(plan)
            plan.chart = chart

        plan.phase = PlanPhase.DONE
        return plan
