"""Plan model and planner payload schemas for stepsql.

This module defines the canonical data structures threaded through the
execution engine: steps, the plan, the execution context, and the chart
specification. Planner output is weakly typed JSON; it is validated here into
the tagged ``StepKind`` variant so downstream code never branches on raw
strings.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

# Planner marker for "drop this step" in a modified-step entry
REMOVED_SQL_SENTINEL = "REMOVED"

_REMOVAL_DESCRIPTION_RE = re.compile(r"\bremoved\b", re.IGNORECASE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_removal_sql(sql: str | None) -> bool:
    """Return True when SQL text is the removal sentinel (or blank)."""
    if sql is None:
        return False
    clean = sql.strip()
    return clean == "" or clean.upper() == REMOVED_SQL_SENTINEL


# =============================================================================
# Enums
# =============================================================================

class StepKind(str, Enum):
    """Kind of a plan step."""

    QUERY = "query"
    ANALYSIS = "analysis"
    AGGREGATION = "aggregation"
    REMOVED = "removed"


class PlanPhase(str, Enum):
    """Lifecycle phase of a plan."""

    PLANNING = "planning"
    EXECUTING = "executing"
    REFINING = "refining"
    RETRYING = "retrying"
    AGGREGATING = "aggregating"
    DONE = "done"


class ContextStatus(str, Enum):
    """Outcome recorded in an execution context entry."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


# =============================================================================
# Steps and context
# =============================================================================

class StepResult(BaseModel):
    """Rows returned by one executed step."""

    rows: list[dict[str, Any]] = Field(default_factory=list, description="Result rows")
    columns: list[str] = Field(default_factory=list, description="Column names")
    row_count: int = Field(0, ge=0, description="Number of rows returned")


class Step(BaseModel):
    """One atomic read-only retrieval or analysis unit within a plan.

    A removed step never carries SQL. Construction normalizes this both ways:
    ``kind=removed`` clears the SQL, and a blank or sentinel SQL turns the
    step into a removed one.
    """

    id: str = Field(..., min_length=1, description="Step id, unique within the plan")
    kind: StepKind = Field(StepKind.QUERY, description="Step kind")
    description: str = Field("", description="Human-readable description")
    sql: Optional[str] = Field(None, description="SQL text (None when removed)")
    depends_on: list[str] = Field(default_factory=list, description="Step ids this step depends on")
    reasoning: Optional[str] = Field(None, description="Why the planner added this step")

    # Execution state
    result: Optional[StepResult] = None
    error: Optional[str] = None
    execution_time_ms: Optional[float] = None
    row_count: Optional[int] = None
    attempts: int = 0

    @model_validator(mode="after")
    def normalize_removed(self) -> "Step":
        if self.kind == StepKind.REMOVED:
            self.sql = None
        elif self.sql is None or is_removal_sql(self.sql):
            self.kind = StepKind.REMOVED
            self.sql = None
        # A step can never wait on itself; duplicates carry no meaning
        deps: list[str] = []
        for dep in self.depends_on:
            if dep != self.id and dep not in deps:
                deps.append(dep)
        self.depends_on = deps
        return self

    @property
    def is_removed(self) -> bool:
        return self.kind == StepKind.REMOVED


class ContextEntry(BaseModel):
    """One entry of the append-only execution context."""

    step: Step = Field(..., description="Snapshot of the step at recording time")
    status: ContextStatus
    result: Optional[StepResult] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


# =============================================================================
# Chart
# =============================================================================

class ChartDatum(BaseModel):
    """A single category/value pair; extra keys are preserved."""

    model_config = ConfigDict(extra="allow")

    name: str
    value: float

    @field_validator("name", mode="before")
    @classmethod
    def coerce_name(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class ChartSpec(BaseModel):
    """Visualization suggestion extracted from the narrative answer."""

    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["bar", "pie", "line", "none"] = Field(..., alias="type")
    data: list[ChartDatum] = Field(default_factory=list)
    x_axis_key: Optional[str] = Field(None, alias="xAxisKey")
    y_axis_key: Optional[str] = Field(None, alias="yAxisKey")
    description: Optional[str] = None


# =============================================================================
# Conversation and schema
# =============================================================================

class ConversationTurn(BaseModel):
    """A previous question/answer exchange used as planning context."""

    model_config = ConfigDict(populate_by_name=True)

    question: str
    answer: str = ""
    sql_query: Optional[str] = Field(None, alias="sqlQuery")
    key_findings: list[str] = Field(default_factory=list, alias="keyFindings")


class ColumnSchema(BaseModel):
    """A column of a retrieved table schema."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    column_name: str = Field(..., alias="columnName")
    data_type: str = Field("", alias="dataType")
    description: Optional[str] = None
    is_primary_key: bool = Field(False, alias="isPrimaryKey")
    is_foreign_key: bool = Field(False, alias="isForeignKey")
    referenced_table: Optional[str] = Field(None, alias="referencedTable")


class TableSchema(BaseModel):
    """A table of the retrieved schema subset."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    table_name: str = Field(..., alias="tableName")
    table_description: str = Field("", alias="tableDescription")
    columns: list[ColumnSchema] = Field(default_factory=list)


class SchemaMatch(BaseModel):
    """A table returned by similarity search with its score."""

    model_config = ConfigDict(populate_by_name=True)

    table: TableSchema = Field(..., alias="schema")
    similarity: float = 0.0


class SchemaSearchResult(BaseModel):
    """Response of the schema retrieval service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool
    data: list[SchemaMatch] = Field(default_factory=list)
    error: Optional[str] = None
    query: Optional[str] = None
    results_count: Optional[int] = Field(None, alias="resultsCount")


# =============================================================================
# Plan
# =============================================================================

class ExecutionSummary(BaseModel):
    """Counters and timings handed to the planner for refinement and narration."""

    total_steps: int = 0
    completed_steps: int = 0
    pending_steps: int = 0
    successful_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    total_rows: int = 0
    total_execution_time_ms: float = 0.0
    step_timings: dict[str, float] = Field(default_factory=dict)


class Plan(BaseModel):
    """The step structure derived from one user question."""

    id: str = Field(default_factory=lambda: f"plan_{uuid.uuid4().hex[:12]}")
    question: str
    intent: str = ""
    dialect: str = "postgresql"
    steps: list[Step] = Field(default_factory=list)
    context: list[ContextEntry] = Field(default_factory=list)
    history: list[ConversationTurn] = Field(default_factory=list)

    # Execution bookkeeping
    executed_step_ids: list[str] = Field(default_factory=list)
    failed_step_ids: list[str] = Field(default_factory=list)
    successful_steps: int = 0
    failed_steps: int = 0
    refinement_rounds: int = 0
    phase: PlanPhase = PlanPhase.PLANNING

    # Final artifacts
    final_answer: Optional[str] = None
    final_sql: Optional[str] = None
    chart: Optional[ChartSpec] = None
    total_execution_time_ms: float = 0.0

    def get_step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def is_terminal(self, step_id: str) -> bool:
        """True once a step has been executed (or skipped) or failed permanently."""
        return step_id in self.executed_step_ids or step_id in self.failed_step_ids


def repair_dependencies(
    steps: list[Step],
    removed_ids: set[str] | frozenset[str] = frozenset(),
) -> dict[str, list[str]]:
    """Drop dependency references that would dangle.

    A reference dangles when it names a step removed in the current round or
    an id that no longer exists in ``steps``. Steps are edited in place.

    Returns:
        Mapping of step id to the dependency ids dropped from it
    """
    known = {step.id for step in steps}
    dropped: dict[str, list[str]] = {}
    for step in steps:
        kept = [dep for dep in step.depends_on if dep in known and dep not in removed_ids]
        if len(kept) != len(step.depends_on):
            dropped[step.id] = [dep for dep in step.depends_on if dep not in kept]
            step.depends_on = kept
    for step_id, deps in dropped.items():
        logger.info("Repaired dependencies of %s: dropped %s", step_id, ", ".join(deps))
    return dropped


# =============================================================================
# Planner payloads
# =============================================================================

_DEPENDS_ON_ALIASES = AliasChoices("dependsOn", "dependencies", "depends_on")


def _coerce_id_list(v: Any) -> Any:
    if v is None:
        return []
    if isinstance(v, (str, int)):
        return [str(v)]
    if isinstance(v, list):
        return [str(item) for item in v if item is not None and str(item).strip()]
    return v


class PlannerStep(BaseModel):
    """A step exactly as the planner emits it, before it becomes a ``Step``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    type: StepKind = StepKind.QUERY
    description: str = ""
    sql: Optional[str] = None
    depends_on: list[str] = Field(default_factory=list, validation_alias=_DEPENDS_ON_ALIASES)
    reasoning: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v.strip() if isinstance(v, str) else v

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if v is None:
            return StepKind.QUERY
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("depends_on", mode="before")
    @classmethod
    def coerce_depends_on(cls, v: Any) -> Any:
        return _coerce_id_list(v)

    def to_step(self) -> Step:
        return Step(
            id=self.id,
            kind=self.type,
            description=self.description,
            sql=self.sql,
            depends_on=list(self.depends_on),
            reasoning=self.reasoning,
        )


class PlannerPlan(BaseModel):
    """Initial plan payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    question: Optional[str] = None
    intent: str = ""
    database_type: Optional[str] = Field(None, alias="databaseType")
    steps: list[PlannerStep] = Field(..., min_length=1)

    @field_validator("intent", mode="before")
    @classmethod
    def coerce_intent(cls, v: Any) -> Any:
        return "" if v is None else v

    def to_plan(
        self,
        question: str,
        dialect: str,
        history: list[ConversationTurn] | None = None,
    ) -> Plan:
        """Build a ``Plan`` with unique step ids and no dangling dependencies."""
        steps: list[Step] = []
        seen: set[str] = set()
        for raw in self.steps:
            if raw.id in seen:
                logger.warning("Dropping duplicate step id %s from planner output", raw.id)
                continue
            seen.add(raw.id)
            steps.append(raw.to_step())
        repair_dependencies(steps)
        return Plan(
            question=question,
            intent=self.intent,
            dialect=dialect,
            steps=steps,
            history=list(history or []),
        )


class ModifiedStep(BaseModel):
    """A planner edit to an existing step, keyed by id."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    type: Optional[StepKind] = None
    description: Optional[str] = None
    sql: Optional[str] = None
    depends_on: Optional[list[str]] = Field(None, validation_alias=_DEPENDS_ON_ALIASES)
    reasoning: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v.strip() if isinstance(v, str) else v

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("depends_on", mode="before")
    @classmethod
    def coerce_depends_on(cls, v: Any) -> Any:
        return None if v is None else _coerce_id_list(v)

    def is_removal(self) -> bool:
        """Whether this entry asks for the step to be removed."""
        if self.type == StepKind.REMOVED or is_removal_sql(self.sql):
            return True
        return bool(self.description and _REMOVAL_DESCRIPTION_RE.search(self.description))


class RefinementProposal(BaseModel):
    """Structured plan revision returned by the planner."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    should_refine: bool = Field(False, alias="shouldRefine")
    reasoning: str = ""
    new_steps: list[PlannerStep] = Field(default_factory=list, alias="newSteps")
    modified_steps: list[ModifiedStep] = Field(default_factory=list, alias="modifiedSteps")

    @field_validator("new_steps", "modified_steps", mode="before")
    @classmethod
    def coerce_lists(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("reasoning", mode="before")
    @classmethod
    def coerce_reasoning(cls, v: Any) -> Any:
        return "" if v is None else v
