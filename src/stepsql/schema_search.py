"""Schema retrieval: the schema subset relevant to a question.

Two retrievers ship with stepsql:
- ``HttpSchemaRetriever`` calls the similarity-search endpoint of the schema
  service, which ranks cached table embeddings against the question.
- ``DuckDBSchemaRetriever`` introspects a local DuckDB file and ranks tables
  by token overlap between the question and table/column names. It needs no
  embedding service and is what the CLI uses for local files.
"""

import logging
import re
from pathlib import Path
from typing import Protocol, runtime_checkable

import duckdb
import requests
from pydantic import ValidationError

from stepsql.config import get_schema_service_url
from stepsql.planning.schema import (
    ColumnSchema,
    SchemaMatch,
    SchemaSearchResult,
    TableSchema,
)

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@runtime_checkable
class SchemaRetriever(Protocol):
    def retrieve_relevant_schema(
        self, database_id: str, question: str, top_k: int = 20
    ) -> SchemaSearchResult:
        ...


class HttpSchemaRetriever:
    """Client for ``POST /api/database/{id}/schema/search-similar-tables``."""

    def __init__(self, base_url: str | None = None, timeout: int = 30):
        self.base_url = (base_url or get_schema_service_url()).rstrip("/")
        self.timeout = timeout

    def retrieve_relevant_schema(
        self, database_id: str, question: str, top_k: int = 20
    ) -> SchemaSearchResult:
        """Search similar tables; transport and payload errors become ``success=False``."""
        endpoint = f"{self.base_url}/api/database/{database_id}/schema/search-similar-tables"
        try:
            response = requests.post(
                endpoint,
                json={"query": question, "limit": top_k},
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = SchemaSearchResult.model_validate(response.json())
        except requests.exceptions.RequestException as e:
            logger.warning("Schema search failed for database %s: %s", database_id, e)
            return SchemaSearchResult(success=False, error=str(e), query=question)
        except (ValueError, ValidationError) as e:
            logger.warning("Schema search returned an invalid payload: %s", e)
            return SchemaSearchResult(success=False, error=f"Invalid schema payload: {e}", query=question)

        logger.info(
            "Schema search for database %s returned %d tables", database_id, len(result.data)
        )
        return result


def _tokens(text: str) -> set[str]:
    tokens = set()
    for token in _TOKEN_RE.findall(text.lower()):
        tokens.add(token)
        # crude plural folding: orders -> order, categories -> category
        if token.endswith("ies") and len(token) > 4:
            tokens.add(token[:-3] + "y")
        elif token.endswith("s") and len(token) > 3:
            tokens.add(token[:-1])
    return tokens


def score_table(table: TableSchema, question: str) -> float:
    """Fraction of question tokens matched by the table, table-name hits weighted double."""
    question_tokens = _tokens(question)
    if not question_tokens:
        return 0.0
    name_tokens = _tokens(table.table_name)
    column_tokens: set[str] = set()
    for column in table.columns:
        column_tokens |= _tokens(column.column_name)

    hits = 2 * len(question_tokens & name_tokens) + len(question_tokens & column_tokens)
    return round(hits / (2 * len(question_tokens)), 4)


class DuckDBSchemaRetriever:
    """Rank the tables of a DuckDB file against a question.

    ``database_id`` is accepted for interface parity and otherwise ignored;
    one retriever serves one file.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)

    def introspect(self) -> list[TableSchema]:
        conn = duckdb.connect(str(self.db_path), read_only=True)
        try:
            rows = conn.execute(
                """
                SELECT table_name, column_name, data_type
                FROM information_schema.columns
                WHERE table_schema NOT IN ('information_schema', 'pg_catalog')
                ORDER BY table_name, ordinal_position
                """
            ).fetchall()
        finally:
            conn.close()

        tables: dict[str, TableSchema] = {}
        for table_name, column_name, data_type in rows:
            table = tables.setdefault(table_name, TableSchema(table_name=table_name))
            table.columns.append(ColumnSchema(column_name=column_name, data_type=data_type))
        return list(tables.values())

    def retrieve_relevant_schema(
        self, database_id: str, question: str, top_k: int = 20
    ) -> SchemaSearchResult:
        try:
            tables = self.introspect()
        except duckdb.Error as e:
            logger.warning("Schema introspection failed for %s: %s", self.db_path, e)
            return SchemaSearchResult(success=False, error=str(e), query=question)

        scored = [SchemaMatch(table=table, similarity=score_table(table, question)) for table in tables]
        # stable sort keeps catalog order among ties
        scored.sort(key=lambda match: match.similarity, reverse=True)
        matches = scored[:top_k]
        return SchemaSearchResult(
            success=True,
            data=matches,
            query=question,
            results_count=len(matches),
        )
