"""FastAPI backend for stepsql.

Wraps ``PlanRunner.run_plan`` in an HTTP API:
- GET /health
- POST /ask: run a question, return answer, plan and the storage triple
- POST /ask/stream: the same run as server-sent progress events, then the result

Handlers are plain ``def`` so FastAPI runs each request in its worker thread
pool; plans never share state, so concurrent requests are independent.
"""

import json
import logging
import os
import threading
from typing import Any, Callable, Iterator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from stepsql import __version__
from stepsql.config import get_db_path
from stepsql.errors import PlannerError, SchemaNotFoundError
from stepsql.events import PlanEventEmitter, QueueEventSink
from stepsql.orchestrator.runtime import PlanRunner, RunResult, build_runner
from stepsql.planning.schema import ChartSpec, ConversationTurn

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[], PlanRunner]


class AskRequest(BaseModel):
    """Request to ask a question."""

    question: str = Field(..., min_length=1, description="Natural language question")
    database_id: str = Field("default", description="Database identity for schema retrieval")
    dialect: str = Field("duckdb", description="SQL dialect of the target database")
    history: list[ConversationTurn] = Field(default_factory=list)


class AskResponse(BaseModel):
    """Unified response for question answering."""

    answer: str
    final_sql: str | None = None
    chart: ChartSpec | None = None
    successful_steps: int
    failed_steps: int
    plan: dict[str, Any]
    storage: dict[str, Any]


def _to_response(result: RunResult) -> AskResponse:
    plan = result.plan
    return AskResponse(
        answer=result.answer,
        final_sql=plan.final_sql,
        chart=plan.chart,
        successful_steps=plan.successful_steps,
        failed_steps=plan.failed_steps,
        plan=plan.model_dump(mode="json"),
        storage=json.loads(json.dumps(result.to_storage(), default=str)),
    )


def _default_runner_factory() -> PlanRunner:
    return build_runner(
        get_db_path(),
        schema_service_url=os.environ.get("STEPSQL_SCHEMA_SERVICE_URL"),
    )


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def create_app(runner_factory: RunnerFactory | None = None) -> FastAPI:
    """Build the API around a runner factory (one runner per app)."""
    app = FastAPI(title="stepsql API", version=__version__)

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    factory = runner_factory or _default_runner_factory
    state: dict[str, PlanRunner] = {}
    lock = threading.Lock()

    def get_runner() -> PlanRunner:
        with lock:
            if "runner" not in state:
                state["runner"] = factory()
            return state["runner"]

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    @app.post("/ask", response_model=AskResponse)
    def ask_question(request: AskRequest):
        """Answer a natural language question with a multi-step plan."""
        question = request.question.strip()
        if not question:
            raise HTTPException(status_code=400, detail="Question cannot be empty")

        runner = get_runner()
        try:
            result = runner.run_plan(
                question,
                request.database_id,
                request.dialect,
                request.history,
                events=PlanEventEmitter(),
            )
        except SchemaNotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message) from e
        except PlannerError as e:
            raise HTTPException(status_code=502, detail=f"Planning failed: {e.message}") from e

        return _to_response(result)

    @app.post("/ask/stream")
    def ask_question_stream(request: AskRequest):
        """Stream progress events, then a final ``result`` (or ``error``) event."""
        question = request.question.strip()
        if not question:
            raise HTTPException(status_code=400, detail="Question cannot be empty")

        runner = get_runner()
        sink = QueueEventSink()
        events = PlanEventEmitter()
        events.subscribe(sink)
        outcome: dict[str, Any] = {}

        def worker() -> None:
            try:
                outcome["result"] = runner.run_plan(
                    question,
                    request.database_id,
                    request.dialect,
                    request.history,
                    events=events,
                )
            except SchemaNotFoundError as e:
                outcome["error"] = {"status": 404, "detail": e.message}
            except PlannerError as e:
                outcome["error"] = {"status": 502, "detail": f"Planning failed: {e.message}"}
            except Exception as e:
                logger.exception("Streaming run failed")
                outcome["error"] = {"status": 500, "detail": f"Unexpected error: {str(e)[:500]}"}
            finally:
                sink.close()

        def stream() -> Iterator[str]:
            thread = threading.Thread(target=worker, daemon=True)
            thread.start()
            while True:
                event = sink.queue.get()
                if event is None:
                    break
                yield event.to_sse()
            thread.join()

            if "result" in outcome:
                yield _sse("result", _to_response(outcome["result"]).model_dump(mode="json", by_alias=True))
            else:
                yield _sse("error", outcome.get("error", {"status": 500, "detail": "No result"}))

        return StreamingResponse(stream(), media_type="text/event-stream")

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_level="info")
