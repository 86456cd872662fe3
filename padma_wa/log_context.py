"""Per-task log tagging for the gateway.

HTTP requests and the background tasks a session spawns (connection hooks,
reconnect timers, cache snapshots, boot restore) tag themselves with an
operation code and a session id. `ContextFilter` copies both onto every
record as ``record.op`` and ``record.session`` so one session's history can
be grepped out of ``padma.log``. ``record.ctx`` is a short console prefix.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar

OPERATIONS = {
    "http": "API request",
    "conn": "connection event or reconnect",
    "boot": "startup restore",
    "snap": "chat cache snapshot",
}

UNSET = "-"
_CONSOLE_ID_WIDTH = 24

ctx_session_id: ContextVar[str | None] = ContextVar("ctx_session_id", default=None)
ctx_operation: ContextVar[str | None] = ContextVar("ctx_operation", default=None)


def _console_prefix(op: str | None, session_id: str | None) -> str:
    if session_id and len(session_id) > _CONSOLE_ID_WIDTH:
        session_id = session_id[: _CONSOLE_ID_WIDTH - 1] + "~"
    if op and session_id:
        return f"[{session_id}/{op}] "
    if op or session_id:
        return f"[{op or session_id}] "
    return ""


class ContextFilter(logging.Filter):
    """Attach ``op``, ``session`` and ``ctx`` to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        op = ctx_operation.get()
        session_id = ctx_session_id.get()
        record.op = op or UNSET
        record.session = session_id or UNSET
        record.ctx = _console_prefix(op, session_id)
        return True


def set_log_context(
    *,
    operation: str | None = None,
    session_id: str | None = None,
) -> None:
    """Tag the current task. Tasks created afterwards inherit the tags."""
    if operation is not None:
        if operation not in OPERATIONS:
            msg = f"Unknown log operation {operation!r}"
            raise ValueError(msg)
        ctx_operation.set(operation)
    if session_id is not None:
        ctx_session_id.set(session_id)
