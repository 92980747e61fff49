"""Per-request and per-run context utilities."""
from __future__ import annotations

from contextvars import ContextVar

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
run_id_ctx_var: ContextVar[str | None] = ContextVar("run_id", default=None)


def get_request_id() -> str | None:
    """Return the current request id if available."""
    return request_id_ctx_var.get()


def get_run_id() -> str | None:
    """Return the id of the orchestration run executing in this context."""
    return run_id_ctx_var.get()
