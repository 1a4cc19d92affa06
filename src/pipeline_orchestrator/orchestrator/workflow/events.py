"""Structured events emitted by the scheduler and the promotion engine.

Sinks are fire-and-forget: a sink that raises is logged and ignored, and
:class:`BackgroundEventSink` moves delivery off the calling thread entirely.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

logger = logging.getLogger(__name__)

JOB_STARTED = "job.started"
JOB_FINISHED = "job.finished"
STEP_FINISHED = "step.finished"
RUN_STARTED = "run.started"
RUN_FINISHED = "run.finished"
PROMOTION_FINISHED = "promotion.finished"


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    type: str
    payload: dict[str, object] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventSink(Protocol):
    def emit(self, event: PipelineEvent) -> None: ...


class NullEventSink:
    def emit(self, event: PipelineEvent) -> None:
        return None


class LoggingEventSink:
    """Forward events to the `pipeline_orchestrator.events` logger."""

    def __init__(self, logger_name: str = "pipeline_orchestrator.events") -> None:
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: PipelineEvent) -> None:
        self._logger.info(event.type, extra={"event": event.type, "payload": event.payload})


class BackgroundEventSink:
    """Deliver events to another sink from a daemon thread."""

    def __init__(self, inner: EventSink) -> None:
        self._inner = inner
        self._queue: queue.SimpleQueue[PipelineEvent | None] = queue.SimpleQueue()
        self._thread = threading.Thread(
            target=self._drain, name="pipeline-event-sink", daemon=True
        )
        self._thread.start()

    def emit(self, event: PipelineEvent) -> None:
        self._queue.put(event)

    def close(self, timeout: float | None = 5.0) -> None:
        self._queue.put(None)
        self._thread.join(timeout)

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                return
            safe_emit(self._inner, event)


def safe_emit(sink: EventSink, event: PipelineEvent) -> None:
    try:
        sink.emit(event)
    except Exception:
        logger.exception("Event sink failed", extra={"event": event.type})
