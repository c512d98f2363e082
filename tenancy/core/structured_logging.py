"""Small structured logging helpers.

Everything logs single-line JSON so request handlers, scheduler jobs and the
notification worker can be correlated by ``request_id`` in any collector.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from tenancy.core.request_context import get_request_id


def log_json(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """Emit a single JSON log line with optional request/task correlation ID."""

    payload: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "event": event,
    }
    request_id = get_request_id()
    if request_id:
        payload["request_id"] = request_id

    payload.update(fields)
    logger.log(level, json.dumps(payload, default=str))


@contextmanager
def logged_operation(
    logger: logging.Logger,
    event: str,
    **fields: Any,
) -> Iterator[dict[str, Any]]:
    """Log ``<event>_start`` / ``<event>_done`` / ``<event>_error`` around a block.

    The yielded dict is merged into the ``_done`` line, so callers can attach
    result counts after the work finishes.
    """

    started = time.perf_counter()
    result: dict[str, Any] = {}
    log_json(logger, logging.INFO, f"{event}_start", **fields)
    try:
        yield result
    except Exception as exc:
        duration_ms = (time.perf_counter() - started) * 1000
        log_json(
            logger,
            logging.ERROR,
            f"{event}_error",
            duration_ms=round(duration_ms, 2),
            error=str(exc),
            exception=exc.__class__.__name__,
            **fields,
        )
        raise

    duration_ms = (time.perf_counter() - started) * 1000
    log_json(
        logger,
        logging.INFO,
        f"{event}_done",
        duration_ms=round(duration_ms, 2),
        **fields,
        **result,
    )
