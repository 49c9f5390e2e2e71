"""SQL safety checks and query executors."""

from stepsql.sql.executor import DuckDBQueryExecutor, QueryExecutor, QueryResult
from stepsql.sql.guardrails import check_read_only, detect_dangerous_keywords, validate_sql

__all__ = [
    "DuckDBQueryExecutor",
    "QueryExecutor",
    "QueryResult",
    "check_read_only",
    "detect_dangerous_keywords",
    "validate_sql",
]
