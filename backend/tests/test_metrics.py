"""Tests for metrics and tracing helpers."""
from __future__ import annotations

from time import perf_counter
from typing import Any, Dict

import pytest

from app.core.context import run_id_ctx_var
from app.observability import client as client_module
from app.observability import metrics
from app.observability import tracing


class _DummyTrace:
    def __init__(self, name: str, metadata: Dict[str, Any]):
        self.name = name
        self.metadata = metadata
        self.ended = False
        self.error_info: Dict[str, Any] | None = None

    def update(self, error_info=None, **kwargs) -> None:
        self.error_info = error_info

    def end(self) -> None:
        self.ended = True


class _DummyClient:
    def __init__(self):
        self.traces: list[_DummyTrace] = []
        self.flushed = False

    def trace(self, name: str, metadata: Dict[str, Any] | None = None):
        trace = _DummyTrace(name, metadata or {})
        self.traces.append(trace)
        return trace

    def flush(self) -> None:
        self.flushed = True


def test_log_metric_records_value_and_metadata(monkeypatch) -> None:
    dummy_client = _DummyClient()
    monkeypatch.setattr(metrics, "get_opik_client", lambda: dummy_client)

    metrics.log_metric("schedule.fallback.used", 1, metadata={"task_count": 4})

    assert dummy_client.traces[0].name == "metric:schedule.fallback.used"
    assert dummy_client.traces[0].metadata == {"value": 1, "task_count": 4}


def test_log_metric_is_noop_without_client(monkeypatch) -> None:
    monkeypatch.setattr(metrics, "get_opik_client", lambda: None)

    metrics.log_metric("anything", 1)


def test_log_latency_reports_elapsed_ms(monkeypatch) -> None:
    dummy_client = _DummyClient()
    monkeypatch.setattr(metrics, "get_opik_client", lambda: dummy_client)

    elapsed = metrics.log_latency("plan.reflect.latency_ms", perf_counter())

    assert elapsed >= 0
    assert dummy_client.traces[0].metadata["value"] >= 0


def test_trace_attaches_run_id_and_closes(monkeypatch) -> None:
    dummy_client = _DummyClient()
    monkeypatch.setattr(tracing, "get_opik_client", lambda: dummy_client)
    token = run_id_ctx_var.set("run-123")
    try:
        with tracing.trace("stage.goal_analysis", metadata={"goal_length": 10}, request_id="req-1"):
            pass
    finally:
        run_id_ctx_var.reset(token)

    recorded = dummy_client.traces[0]
    assert recorded.metadata == {"goal_length": 10, "request_id": "req-1", "run_id": "run-123"}
    assert recorded.ended is True


def test_trace_records_error_and_reraises(monkeypatch) -> None:
    dummy_client = _DummyClient()
    monkeypatch.setattr(tracing, "get_opik_client", lambda: dummy_client)

    with pytest.raises(ValueError):
        with tracing.trace("stage.reflection"):
            raise ValueError("bad payload")

    recorded = dummy_client.traces[0]
    assert recorded.error_info == {"message": "bad payload", "type": "ValueError"}
    assert recorded.ended is True


def test_shutdown_flushes_and_resets_client(monkeypatch) -> None:
    dummy_client = _DummyClient()
    monkeypatch.setattr(client_module, "_client", dummy_client)
    monkeypatch.setattr(client_module, "_init_attempted", True)

    client_module.shutdown_opik()

    assert dummy_client.flushed is True
    assert client_module._client is None
    assert client_module._init_attempted is False
