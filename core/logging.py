"""
core/logging.py -- stdlib logging setup and per-request correlation ids.

Every module logs through logging.getLogger("gatekeeper.<area>"). The
correlation id lives in a ContextVar set by the HTTP middleware; the
CorrelationIdFilter copies it onto each LogRecord so the format string can
print it. Code running outside a request (CLI, background sweep) logs "-".
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar

_request_id: ContextVar[str | None] = ContextVar("gatekeeper_request_id", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s [%(request_id)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_request_id() -> str | None:
    return _request_id.get()


def set_request_id(request_id: str | None = None) -> str:
    """Bind a correlation id to the current context, generating one if needed."""
    rid = request_id or uuid.uuid4().hex
    _request_id.set(rid)
    return rid


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once. Safe to call repeatedly."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    root.setLevel(level.upper())
    for handler in root.handlers:
        if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
            handler.addFilter(CorrelationIdFilter())
