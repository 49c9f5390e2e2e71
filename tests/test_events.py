"""Tests for progress events."""

import json
import logging

from stepsql.events import PlanEvent, PlanEventEmitter, QueueEventSink


def test_subscribe_and_unsubscribe():
    events = PlanEventEmitter()
    seen = []
    unsubscribe = events.subscribe(seen.append)

    events.emit("step_started", plan_id="p1", step_id="1", attempt=1)
    unsubscribe()
    events.emit("step_completed", plan_id="p1", step_id="1")

    assert len(seen) == 1
    assert seen[0].payload == {"attempt": 1}
    assert events.listener_count == 0


def test_emit_without_listeners_returns_event():
    event = PlanEventEmitter().emit("plan_completed", plan_id="p1", failed_steps=0)
    assert event.type == "plan_completed"
    assert event.step_id is None


def test_listener_failure_is_logged_and_others_still_run(caplog):
    events = PlanEventEmitter()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    events.subscribe(broken)
    events.subscribe(seen.append)

    with caplog.at_level(logging.ERROR, logger="stepsql.events"):
        events.emit("step_error", plan_id="p1", step_id="2", error="x")

    assert len(seen) == 1
    assert "Event listener failed" in caplog.text


def test_sse_frame():
    event = PlanEvent(type="step_started", plan_id="p1", step_id="3", payload={"sql": "SELECT 1"})
    frame = event.to_sse()

    assert frame.startswith("event: step_started\ndata: ")
    assert frame.endswith("\n\n")
    data = json.loads(frame.split("data: ", 1)[1])
    assert data["step_id"] == "3"
    assert data["payload"]["sql"] == "SELECT 1"


class TestQueueEventSink:
    def test_events_then_end_marker(self):
        sink = QueueEventSink()
        events = PlanEventEmitter()
        events.subscribe(sink)

        events.emit("plan_generated", plan_id="p1")
        sink.close()

        assert sink.queue.get_nowait().type == "plan_generated"
        assert sink.queue.get_nowait() is None

    def test_full_queue_drops_without_blocking(self):
        sink = QueueEventSink(maxsize=1)
        sink(PlanEvent(type="step_started", plan_id="p1"))
        sink(PlanEvent(type="step_completed", plan_id="p1"))

        assert sink.dropped == 1
        assert sink.queue.qsize() == 1
