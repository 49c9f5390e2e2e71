"""Prompt templates for the LLM planner.

Four conversations are built here: the initial plan, a plan refinement, a
targeted fix for one failing step, and the final narrative answer. Database
content (result rows) is scrubbed for prompt injection before it is embedded.
"""

import json
from typing import Any

from stepsql.planning.schema import (
    ContextEntry,
    ContextStatus,
    ConversationTurn,
    ExecutionSummary,
    Plan,
    Step,
    TableSchema,
)
from stepsql.sql.guardrails import sanitize_rows

HISTORY_TURNS = 5
HISTORY_ANSWER_CHARS = 200
RESULT_SAMPLE_ROWS = 10


PLANNER_SYSTEM_PROMPT = """You are an expert SQL analyst and a strict planning engine. Output ONLY valid JSON. No markdown. No commentary."""

PLAN_PROMPT_TEMPLATE = """Analyze the user's question and create a step-by-step query plan.

DATABASE TYPE: {dialect}
DEFAULT SCHEMA: {default_schema}
DATABASE SCHEMA:
{schema}
{history}
CURRENT USER QUESTION: "{question}"

Create a JSON response with this structure:
{{
  "question": "{question}",
  "intent": "Brief description of what the user wants",
  "databaseType": "{dialect}",
  "steps": [
    {{
      "id": "step_1",
      "type": "query|analysis|aggregation",
      "description": "What this step does",
      "sql": "SQL query for this step",
      "dependsOn": ["ids of steps that must complete first"],
      "reasoning": "Why this step is needed"
    }}
  ]
}}

Rules:
1. Break the question into 2-4 logical steps. Steps build on each other through dependsOn.
   Steps with no dependencies run first. The last step should produce the final answer.
2. Use EXACT table and column names from the schema. Do not change case or rename.
3. Prefix tables with the default schema where the database needs it ({default_schema}.TableName).
4. Always limit rows: {limit_hint}
5. ONLY generate SELECT statements. Never use INSERT, UPDATE, DELETE, DROP, CREATE, ALTER or EXEC.
   Statements containing those keywords are rejected without running.
6. If the question refers to earlier context ("it", "that user"), reuse filters and ids from the history.

Output only the JSON object."""

REFINEMENT_PROMPT_TEMPLATE = """You are refining a multi-step query plan based on execution results.

DATABASE TYPE: {dialect}
ORIGINAL QUESTION: "{question}"
ORIGINAL INTENT: {intent}

EXECUTION SUMMARY:
- Total Steps: {total_steps}
- Completed: {completed_steps}
- Pending: {pending_steps}
- Successful: {successful_steps}
- Failed: {failed_steps}

COMPLETED STEPS ANALYSIS:
{completed}

PENDING STEPS:
{pending}

Decide whether the pending steps need modification or whether new steps are needed.
- If a step failed, add a corrected step.
- If a step returned 0 rows, broaden the dependent queries.
- If a step returned more than {large_result_rows} rows, narrow or aggregate the dependent queries.
- To remove a pending step, list it in modifiedSteps with "sql": "REMOVED".
- Only pending steps can be modified. New step ids must not reuse existing ids.

Return JSON:
{{
  "shouldRefine": true,
  "reasoning": "Clear explanation",
  "newSteps": [{{"id": "...", "type": "query", "description": "...", "sql": "...", "dependsOn": [], "reasoning": "..."}}],
  "modifiedSteps": [{{"id": "...", "description": "...", "sql": "...", "dependsOn": []}}]
}}

Return only valid JSON."""

STEP_FIX_PROMPT_TEMPLATE = """A step of a query plan failed. Return a corrected SQL statement for it.

DATABASE TYPE: {dialect}
ORIGINAL QUESTION: "{question}"

FAILED STEP:
- id: {step_id}
- description: {description}
- sql: {sql}

ERROR:
{error}

Rules:
- Keep the purpose of the step. Fix only what the error points at.
- ONLY SELECT statements. {limit_hint}

Return JSON: {{"id": "{step_id}", "sql": "corrected SQL"}}
If the step cannot be fixed, return {{"id": "{step_id}", "sql": null}}."""

NARRATOR_SYSTEM_PROMPT = """You are a senior data analyst. Present query results in clear, professional markdown that a business user can immediately understand. Describe ONLY what exists in the results. Answer in the same language as the question."""

NARRATIVE_PROMPT_TEMPLATE = """Generate a comprehensive answer to this database question.

ORIGINAL QUESTION: "{question}"

EXECUTION SUMMARY:
- Total Steps: {total_steps}
- Successful: {successful_steps}
- Failed: {failed_steps}
- Skipped: {skipped_steps}
- Total Rows: {total_rows}
- Execution Time: {total_execution_time_ms:.0f}ms

EXECUTION RESULTS:
{results}

Create a markdown answer with:
1. Clear heading
2. Executive summary
3. Key findings with data (markdown tables where useful)
4. Insights and analysis

If the data can be visualized, end with a chartdata block:
```chartdata
{{
  "type": "bar|pie|line|none",
  "data": [{{"name": "Category", "value": 123}}],
  "xAxisKey": "name",
  "yAxisKey": "value",
  "description": "What this chart shows"
}}
```
- bar: comparing categories (2-20 items); pie: proportions (3-8 slices); line: trends over time
- none: single values or non-numeric data
- At most {chart_max_points} data points. Values must be numbers."""


DEFAULT_SCHEMAS = {
    "mssql": "dbo",
    "sqlserver": "dbo",
    "postgresql": "public",
    "postgres": "public",
    "oracle": "public",
    "mysql": "mysql",
    "duckdb": "main",
}


def default_schema_prefix(dialect: str) -> str:
    return DEFAULT_SCHEMAS.get(dialect.lower(), "dbo")


def limit_hint(dialect: str) -> str:
    dialect = dialect.lower()
    if "mssql" in dialect or "sqlserver" in dialect:
        return "use TOP N syntax: SELECT TOP 10 * FROM ..."
    if "oracle" in dialect:
        return "use FETCH FIRST N ROWS ONLY"
    return "use LIMIT syntax: SELECT * FROM ... LIMIT 10"


def format_history(history: list[ConversationTurn]) -> str:
    """Render the last few exchanges; empty string when there is no history."""
    recent = history[-HISTORY_TURNS:]
    if not recent:
        return ""

    lines = [f"\nCONVERSATION HISTORY (last {len(recent)} exchanges):"]
    for idx, turn in enumerate(recent, start=1):
        answer = turn.answer[:HISTORY_ANSWER_CHARS]
        if len(turn.answer) > HISTORY_ANSWER_CHARS:
            answer += "..."
        lines.append(f'{idx}. USER ASKED: "{turn.question}"')
        lines.append(f"   AI ANSWERED: {answer}")
        lines.append(f"   SQL USED: {turn.sql_query or 'N/A'}")
        lines.append(f"   KEY FINDINGS: {', '.join(turn.key_findings) or 'N/A'}")
    lines.append("Use this context: the current question may be a follow-up.\n")
    return "\n".join(lines)


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def _schema_payload(schema: list[TableSchema]) -> str:
    return _dump([table.model_dump(by_alias=True, exclude_none=True) for table in schema])


def build_plan_messages(
    question: str,
    schema: list[TableSchema],
    dialect: str,
    history: list[ConversationTurn],
) -> list[dict[str, str]]:
    prompt = PLAN_PROMPT_TEMPLATE.format(
        dialect=dialect,
        default_schema=default_schema_prefix(dialect),
        schema=_schema_payload(schema),
        history=format_history(history),
        question=question,
        limit_hint=limit_hint(dialect),
    )
    return [
        {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def _step_payload(step: Step) -> dict[str, Any]:
    return {
        "id": step.id,
        "type": step.kind.value,
        "description": step.description,
        "sql": step.sql,
        "dependsOn": step.depends_on,
    }


def _context_summary(entry: ContextEntry) -> dict[str, Any]:
    return {
        "stepId": entry.step.id,
        "type": entry.step.kind.value,
        "description": entry.step.description,
        "status": "failed" if entry.status == ContextStatus.ERROR else entry.status.value,
        "error": entry.error,
        "rowCount": entry.result.row_count if entry.result else 0,
        "executionTime": entry.step.execution_time_ms,
        "hasData": bool(entry.result and entry.result.rows),
    }


def build_refinement_messages(
    plan: Plan,
    pending: list[Step],
    summary: ExecutionSummary,
    large_result_rows: int = 1000,
) -> list[dict[str, str]]:
    prompt = REFINEMENT_PROMPT_TEMPLATE.format(
        dialect=plan.dialect,
        question=plan.question,
        intent=plan.intent or "N/A",
        total_steps=summary.total_steps,
        completed_steps=summary.completed_steps,
        pending_steps=summary.pending_steps,
        successful_steps=summary.successful_steps,
        failed_steps=summary.failed_steps,
        completed=_dump([_context_summary(entry) for entry in plan.context]),
        pending=_dump([_step_payload(step) for step in pending]),
        large_result_rows=large_result_rows,
    )
    return [
        {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def build_step_fix_messages(plan: Plan, step: Step, error: str) -> list[dict[str, str]]:
    prompt = STEP_FIX_PROMPT_TEMPLATE.format(
        dialect=plan.dialect,
        question=plan.question,
        step_id=step.id,
        description=step.description,
        sql=step.sql,
        error=error,
        limit_hint=limit_hint(plan.dialect),
    )
    return [
        {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def _format_results(context: list[ContextEntry]) -> str:
    blocks = []
    for idx, entry in enumerate(context, start=1):
        if entry.status == ContextStatus.SKIPPED:
            continue
        lines = [
            f"Step {idx}: {entry.step.description}",
            f"SQL: {entry.step.sql}",
        ]
        if entry.status == ContextStatus.SUCCESS and entry.result is not None:
            sample = sanitize_rows(entry.result.rows[:RESULT_SAMPLE_ROWS])
            lines.append(f"Status: SUCCESS ({entry.result.row_count} rows)")
            lines.append(f"Data Sample:\n{_dump(sample)}")
        else:
            lines.append(f"Status: FAILED ({entry.error})")
        blocks.append("\n".join(lines))
    return "\n---\n".join(blocks) or "No steps produced results."


def build_narrative_messages(
    question: str,
    context: list[ContextEntry],
    summary: ExecutionSummary,
    chart_max_points: int = 20,
) -> list[dict[str, str]]:
    prompt = NARRATIVE_PROMPT_TEMPLATE.format(
        question=question,
        total_steps=summary.total_steps,
        successful_steps=summary.successful_steps,
        failed_steps=summary.failed_steps,
        skipped_steps=summary.skipped_steps,
        total_rows=summary.total_rows,
        total_execution_time_ms=summary.total_execution_time_ms,
        results=_format_results(context),
        chart_max_points=chart_max_points,
    )
    return [
        {"role": "system", "content": NARRATOR_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
