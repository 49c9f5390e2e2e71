"""CLI entrypoint for stepsql."""

import json
import logging
from pathlib import Path

import click

from stepsql import __version__
from stepsql.config import DEFAULT_DB_PATH, EngineConfig, load_dotenv_file
from stepsql.errors import PlannerError, SchemaNotFoundError
from stepsql.events import PlanEvent, PlanEventEmitter
from stepsql.orchestrator.runtime import build_runner
from stepsql.schema_search import DuckDBSchemaRetriever, HttpSchemaRetriever
from stepsql.sql.guardrails import validate_sql


def _print_event(event: PlanEvent) -> None:
    payload = event.payload
    if event.type == "plan_generated":
        click.echo(f"📋 Plan generated: {len(payload.get('steps', []))} step(s)")
        for step in payload.get("steps", []):
            deps = ", ".join(step["depends_on"]) or "none"
            click.echo(f"   [{step['id']}] {step['description']} (depends on: {deps})")
    elif event.type == "step_started":
        suffix = f" (attempt {payload['attempt']})" if payload.get("attempt", 1) > 1 else ""
        click.echo(f"▶  {event.step_id}{suffix}")
    elif event.type == "step_completed":
        click.echo(
            f"✅ {event.step_id}: {payload.get('row_count', 0)} row(s) "
            f"in {payload.get('execution_time_ms', 0):.0f}ms"
        )
    elif event.type == "step_error":
        click.echo(f"❌ {event.step_id}: {payload.get('error')}", err=True)
    elif event.type == "plan_completed":
        click.echo(
            f"🏁 Done: {payload.get('successful_steps', 0)} succeeded, "
            f"{payload.get('failed_steps', 0)} failed"
        )


@click.group()
@click.version_option(__version__)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
@click.option(
    "--env-file",
    default=".env",
    type=click.Path(dir_okay=False),
    help="Load environment variables from this file if it exists (default: .env)",
)
def main(verbose: bool, env_file: str):
    """stepsql - multi-step question answering over SQL databases."""
    load_dotenv_file(env_file)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option(
    "--question",
    "-q",
    required=True,
    type=str,
    help="Natural language question about your data",
)
@click.option(
    "--db-path",
    default=DEFAULT_DB_PATH,
    type=click.Path(exists=True, file_okay=True, dir_okay=False),
    help=f"Path to DuckDB database (default: {DEFAULT_DB_PATH})",
)
@click.option(
    "--database-id",
    default="default",
    help="Database id passed to the schema service",
)
@click.option(
    "--schema-url",
    default=None,
    help="Schema service base URL (default: introspect the DuckDB file)",
)
@click.option(
    "--provider",
    type=click.Choice(["ollama", "openai", "anthropic"]),
    default=None,
    help="LLM provider (default: STEPSQL_LLM_PROVIDER or ollama)",
)
@click.option("--max-retries", type=int, default=None, help="Retries per failing step")
@click.option("--events/--no-events", default=True, help="Print progress events")
@click.option("--json-output", is_flag=True, default=False, help="Print the full plan as JSON")
def ask(
    question: str,
    db_path: str,
    database_id: str,
    schema_url: str | None,
    provider: str | None,
    max_retries: int | None,
    events: bool,
    json_output: bool,
):
    """Answer a question by planning and running read-only SQL steps."""
    config = EngineConfig.from_env()
    if max_retries is not None:
        config.max_retries = max_retries

    emitter = PlanEventEmitter()
    if events and not json_output:
        emitter.subscribe(_print_event)

    runner = build_runner(
        Path(db_path),
        schema_service_url=schema_url,
        provider=provider,
        config=config,
        events=emitter,
    )

    try:
        result = runner.run_plan(question, database_id, dialect="duckdb")
    except SchemaNotFoundError as e:
        click.echo(f"❌ {e.message}", err=True)
        raise click.Abort()
    except PlannerError as e:
        click.echo(f"❌ Planning failed: {e.message}", err=True)
        raise click.Abort()

    if json_output:
        click.echo(json.dumps(result.plan.model_dump(mode="json", by_alias=True), indent=2))
        return

    click.echo("\n" + "=" * 70)
    click.echo(result.answer)
    click.echo("=" * 70)
    if result.plan.final_sql:
        click.echo(f"\nFinal SQL:\n{result.plan.final_sql}")
    if result.plan.chart is not None:
        click.echo("\nChart:")
        click.echo(json.dumps(result.plan.chart.model_dump(by_alias=True), indent=2))


@main.command("check-sql")
@click.argument("sql")
def check_sql(sql: str):
    """Run the read-only check on SQL without executing it."""
    validation = validate_sql(sql)
    if validation.is_valid:
        click.echo("✅ SQL passes the read-only check")
        return
    click.echo(f"❌ {validation.error}", err=True)
    raise SystemExit(1)


@main.command()
@click.option("--question", "-q", required=True, type=str, help="Question to rank tables against")
@click.option(
    "--db-path",
    default=DEFAULT_DB_PATH,
    type=click.Path(file_okay=True, dir_okay=False),
    help=f"Path to DuckDB database (default: {DEFAULT_DB_PATH})",
)
@click.option("--database-id", default="default", help="Database id passed to the schema service")
@click.option("--schema-url", default=None, help="Schema service base URL")
@click.option("--top-k", type=int, default=20, help="Number of tables to return")
def schema(question: str, db_path: str, database_id: str, schema_url: str | None, top_k: int):
    """Show the tables retrieved as relevant for a question."""
    if schema_url:
        retriever = HttpSchemaRetriever(schema_url)
    else:
        if not Path(db_path).exists():
            click.echo(f"❌ Database not found: {db_path}", err=True)
            raise click.Abort()
        retriever = DuckDBSchemaRetriever(db_path)

    result = retriever.retrieve_relevant_schema(database_id, question, top_k)
    if not result.success:
        click.echo(f"❌ Schema retrieval failed: {result.error}", err=True)
        raise click.Abort()
    if not result.data:
        click.echo("No relevant tables found.")
        return

    for match in result.data:
        table = match.table
        click.echo(f"{table.table_name} (similarity: {match.similarity:.2f})")
        for column in table.columns:
            click.echo(f"   • {column.column_name} {column.data_type}")


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port")
def serve(host: str, port: int):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from stepsql.api.server import create_app

    uvicorn.run(create_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
