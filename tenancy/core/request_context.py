"""Request/task correlation context.

A correlation ID travels through API requests, scheduler job runs and
notification deliveries so their log lines can be stitched together.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from uuid import uuid4

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_request_id() -> str | None:
    """Get the current request/task correlation ID (if any)."""

    return _request_id_var.get()


def set_request_id(request_id: str | None) -> Token[str | None]:
    """Set the current correlation ID and return the reset token."""

    return _request_id_var.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _request_id_var.reset(token)


def new_request_id(prefix: str | None = None) -> str:
    """Generate a new correlation ID, optionally tagged (``job:sweep:<uuid>``)."""

    value = str(uuid4())
    return f"{prefix}:{value}" if prefix else value


@contextmanager
def request_id_context(request_id: str | None) -> Iterator[str | None]:
    """Set the correlation ID for the duration of the block."""

    token = set_request_id(request_id)
    try:
        yield request_id
    finally:
        reset_request_id(token)
