"""Exception taxonomy for the plan execution engine.

Only two of these ever escape ``PlanRunner.run_plan``:
- SchemaNotFoundError: no relevant schema could be retrieved
- PlannerError: raised while producing the *initial* plan

Everything else is recorded on the plan (counters, context, narrative)
and the caller still receives a best-effort answer.
"""


class StepsqlError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnsafeQueryError(StepsqlError):
    """SQL failed the static read-only check and was never executed."""

    def __init__(self, message: str, sql: str, keywords: list[str] | None = None):
        super().__init__(message, {"sql": sql, "keywords": keywords or []})
        self.sql = sql
        self.keywords = keywords or []


class DatabaseError(StepsqlError):
    """Raised by a query executor when the database rejects a statement."""


class StepExecutionError(StepsqlError):
    """A step's SQL reached the executor and failed."""

    def __init__(self, message: str, step_id: str, sql: str):
        super().__init__(message, {"step_id": step_id, "sql": sql})
        self.step_id = step_id
        self.sql = sql


class PlannerError(StepsqlError):
    """The planner failed or returned a payload that does not validate."""


class SchemaNotFoundError(StepsqlError):
    """No relevant schema was found for the question."""
