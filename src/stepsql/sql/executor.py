"""Query executors for read-only step SQL.

The engine talks to the database only through the ``QueryExecutor`` protocol.
``DuckDBQueryExecutor`` is the shipped implementation:
- Read-only connection, opened fresh per statement and always closed
- Statement timeout via connection interrupt
- Result row capping
- Its own read-only check on top of the engine's
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import duckdb

from stepsql.errors import DatabaseError
from stepsql.sql.guardrails import GuardrailConfig, validate_sql

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """Rows returned by a query executor."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    execution_time_ms: float = 0.0


@runtime_checkable
class QueryExecutor(Protocol):
    """Executes one read-only statement, or raises ``DatabaseError``."""

    def execute_query(self, sql: str) -> QueryResult:
        ...


class DuckDBQueryExecutor:
    """Read-only DuckDB executor.

    Usage:
        executor = DuckDBQueryExecutor("data/warehouse.duckdb")
        result = executor.execute_query("SELECT COUNT(*) AS n FROM orders")
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        timeout_seconds: float | None = 30.0,
        max_result_rows: int = 50000,
        config: GuardrailConfig | None = None,
    ):
        """Initialize executor.

        Args:
            db_path: Path to DuckDB database
            timeout_seconds: Interrupt statements running longer than this (None disables)
            max_result_rows: Rows kept from a result before truncation
            config: Guardrail configuration for the executor-side check
        """
        self.db_path = Path(db_path)
        self.timeout_seconds = timeout_seconds
        self.max_result_rows = max_result_rows
        self.config = config or GuardrailConfig()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Create a fresh read-only connection per execution."""
        return duckdb.connect(str(self.db_path), read_only=True)

    def execute_query(self, sql: str) -> QueryResult:
        """Execute ``sql`` and return its rows.

        Raises:
            DatabaseError: If the statement is rejected, fails, or times out
        """
        validation = validate_sql(sql, self.config)
        if not validation.is_valid:
            raise DatabaseError(f"Dangerous SQL rejected: {validation.error}")

        start_time = time.perf_counter()
        conn: duckdb.DuckDBPyConnection | None = None
        timer: threading.Timer | None = None
        timed_out = threading.Event()

        try:
            conn = self._get_connection()

            if self.timeout_seconds:
                active = conn

                def _interrupt() -> None:
                    timed_out.set()
                    active.interrupt()

                timer = threading.Timer(self.timeout_seconds, _interrupt)
                timer.daemon = True
                timer.start()

            result = conn.execute(sql)
            columns = [desc[0] for desc in result.description] if result.description else []
            raw_rows = result.fetchall()

            execution_time_ms = (time.perf_counter() - start_time) * 1000

            truncated = False
            if len(raw_rows) > self.max_result_rows:
                logger.warning(
                    "Truncating result from %d to %d rows", len(raw_rows), self.max_result_rows
                )
                raw_rows = raw_rows[:self.max_result_rows]
                truncated = True

            rows = [dict(zip(columns, row)) for row in raw_rows]
            return QueryResult(
                rows=rows,
                columns=columns,
                row_count=len(rows),
                truncated=truncated,
                execution_time_ms=round(execution_time_ms, 2),
            )

        except duckdb.Error as e:
            if timed_out.is_set():
                raise DatabaseError(
                    f"Query timed out after {self.timeout_seconds}s"
                ) from e
            raise DatabaseError(f"Database error: {e}") from e

        finally:
            if timer is not None:
                timer.cancel()
            if conn is not None:
                conn.close()
