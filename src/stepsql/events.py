"""Progress events emitted while a plan runs.

The engine never talks to a progress display directly. It emits ``PlanEvent``
values through a ``PlanEventEmitter``; any number of listeners may subscribe.
Emission is fire-and-forget: a listener that raises is logged and skipped,
and ``QueueEventSink`` hands events to a consumer thread without blocking.
"""

import logging
import queue
from datetime import datetime
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, Field

from stepsql.planning.schema import utc_now

logger = logging.getLogger(__name__)

EventType = Literal[
    "plan_generated",
    "step_started",
    "step_completed",
    "step_error",
    "plan_completed",
]

EventListener = Callable[["PlanEvent"], None]


class PlanEvent(BaseModel):
    """One progress notification."""

    type: EventType
    plan_id: str
    step_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    def to_sse(self) -> str:
        """Render as a server-sent event frame."""
        return f"event: {self.type}\ndata: {self.model_dump_json()}\n\n"


class PlanEventEmitter:
    """Observer registry for plan progress events.

    Usage:
        events = PlanEventEmitter()
        unsubscribe = events.subscribe(print)
        events.emit("step_started", plan_id="plan_1", step_id="1")
        unsubscribe()
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register ``listener`` and return a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(
        self,
        event_type: EventType,
        *,
        plan_id: str,
        step_id: str | None = None,
        **payload: Any,
    ) -> PlanEvent:
        """Deliver an event to every listener. Never raises on listener failure."""
        event = PlanEvent(type=event_type, plan_id=plan_id, step_id=step_id, payload=payload)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed on %s", event_type)
        return event


class QueueEventSink:
    """Listener that pushes events onto a queue for a streaming consumer.

    ``put_nowait`` is used so a slow consumer can never stall the execution
    loop; when a bounded queue is full the event is dropped with a warning.
    ``close()`` enqueues ``None`` to mark the end of the stream.
    """

    def __init__(self, maxsize: int = 0):
        self.queue: queue.Queue[PlanEvent | None] = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, event: PlanEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning("Event queue full, dropped %s", event.type)

    def close(self) -> None:
        try:
            self.queue.put_nowait(None)
        except queue.Full:
            logger.warning("Event queue full, end-of-stream marker not delivered")
