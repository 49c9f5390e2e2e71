"""Planning module: plan model, dependency resolution and the planner seam."""

from stepsql.planning.planner import LLMPlanner, Planner
from stepsql.planning.resolver import is_executable, next_eligible, pending_steps, resolve
from stepsql.planning.schema import (
    ChartSpec,
    ContextEntry,
    ContextStatus,
    ConversationTurn,
    ExecutionSummary,
    Plan,
    PlanPhase,
    RefinementProposal,
    Step,
    StepKind,
    StepResult,
)

__all__ = [
    "ChartSpec",
    "ContextEntry",
    "ContextStatus",
    "ConversationTurn",
    "ExecutionSummary",
    "LLMPlanner",
    "Plan",
    "PlanPhase",
    "Planner",
    "RefinementProposal",
    "Step",
    "StepKind",
    "StepResult",
    "is_executable",
    "next_eligible",
    "pending_steps",
    "resolve",
]
