from __future__ import annotations

import logging
import threading

import pytest

from pipeline_orchestrator.orchestrator.workflow.events import (
    JOB_STARTED,
    BackgroundEventSink,
    LoggingEventSink,
    NullEventSink,
    PipelineEvent,
    safe_emit,
)


class _Collect:
    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []
        self.threads: list[str] = []

    def emit(self, event: PipelineEvent) -> None:
        self.events.append(event)
        self.threads.append(threading.current_thread().name)


class _Broken:
    def emit(self, event: PipelineEvent) -> None:
        raise RuntimeError("sink down")


def test_safe_emit_swallows_sink_errors(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        safe_emit(_Broken(), PipelineEvent(JOB_STARTED, {"instance_id": "build"}))

    assert any("sink" in r.getMessage().lower() for r in caplog.records)


def test_background_sink_delivers_in_order_off_thread() -> None:
    inner = _Collect()
    sink = BackgroundEventSink(inner)

    for i in range(5):
        sink.emit(PipelineEvent(JOB_STARTED, {"n": i}))
    sink.close()

    assert [e.payload["n"] for e in inner.events] == [0, 1, 2, 3, 4]
    assert set(inner.threads) == {"pipeline-event-sink"}


def test_background_sink_survives_failing_inner_sink() -> None:
    sink = BackgroundEventSink(_Broken())
    sink.emit(PipelineEvent(JOB_STARTED))
    sink.close()


def test_logging_sink_uses_event_logger(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="pipeline_orchestrator.events"):
        LoggingEventSink().emit(PipelineEvent(JOB_STARTED, {"instance_id": "build"}))

    record = caplog.records[-1]
    assert record.getMessage() == JOB_STARTED
    assert record.payload == {"instance_id": "build"}  # type: ignore[attr-defined]


def test_null_sink_accepts_anything() -> None:
    assert NullEventSink().emit(PipelineEvent(JOB_STARTED)) is None
