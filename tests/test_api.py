"""API tests against a runner wired with scripted collaborators."""

import json

import pytest
from fastapi.testclient import TestClient

from stepsql.api.server import create_app
from stepsql.errors import PlannerError
from stepsql.orchestrator.runtime import PlanRunner
from tests.fakes import FakeExecutor, FakePlanner, FakeRetriever, make_plan, step

NARRATIVE = (
    "# Orders\n\nThere are 5 orders.\n\n"
    '```chartdata\n{"type": "bar", "data": [{"name": "orders", "value": 5}], "xAxisKey": "name"}\n```'
)


def make_client(planner, retriever=None, executor=None):
    runner = PlanRunner(
        planner=planner,
        schema_retriever=retriever or FakeRetriever(),
        executor=executor or FakeExecutor({"SELECT COUNT(*) AS n FROM orders": [{"n": 5}]}),
    )
    return TestClient(create_app(lambda: runner))


@pytest.fixture
def client():
    plan = make_plan(step("1", sql="SELECT COUNT(*) AS n FROM orders"))
    return make_client(FakePlanner(plan=plan, narrative=NARRATIVE))


def parse_sse(text):
    frames = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        frames.append((lines["event"], json.loads(lines["data"])))
    return frames


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestAsk:
    def test_answer_sql_and_chart(self, client):
        response = client.post("/ask", json={"question": "How many orders?"})
        assert response.status_code == 200

        body = response.json()
        assert body["answer"].startswith("# Orders")
        assert "chartdata" not in body["answer"]
        assert body["final_sql"] == "SELECT COUNT(*) AS n FROM orders"
        assert body["chart"]["type"] == "bar"
        assert body["successful_steps"] == 1
        assert body["failed_steps"] == 0
        assert body["storage"]["result_data"] == [{"n": 5}]
        assert body["plan"]["phase"] == "done"

    def test_history_accepted(self, client):
        response = client.post("/ask", json={
            "question": "And last month?",
            "history": [{"question": "Orders this month?", "answer": "5", "sqlQuery": "SELECT 5"}],
        })
        assert response.status_code == 200

    def test_blank_question(self, client):
        assert client.post("/ask", json={"question": "   "}).status_code == 400
        assert client.post("/ask", json={"question": ""}).status_code == 422

    def test_schema_not_found(self):
        client = make_client(FakePlanner(plan=make_plan(step("1"))), retriever=FakeRetriever(tables=[]))
        response = client.post("/ask", json={"question": "q"})
        assert response.status_code == 404

    def test_planner_failure(self):
        client = make_client(FakePlanner(plan=PlannerError("model offline")))
        response = client.post("/ask", json={"question": "q"})
        assert response.status_code == 502
        assert "model offline" in response.json()["detail"]


class TestAskStream:
    def test_events_then_result(self, client):
        response = client.post("/ask/stream", json={"question": "How many orders?"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        frames = parse_sse(response.text)
        names = [name for name, _ in frames]
        assert names == ["plan_generated", "step_started", "step_completed", "plan_completed", "result"]
        assert frames[-1][1]["final_sql"] == "SELECT COUNT(*) AS n FROM orders"
        assert frames[2][1]["step_id"] == "1"

    def test_error_event(self):
        client = make_client(FakePlanner(plan=PlannerError("model offline")))
        frames = parse_sse(client.post("/ask/stream", json={"question": "q"}).text)
        assert frames == [("error", {"status": 502, "detail": "Planning failed: model offline"})]
