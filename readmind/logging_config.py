"""
Logging setup for the memory engine.

Plain-text logs by default; JSON lines when ``settings.structured_logging`` is
on. Request and owner ids are carried in context variables so log lines from
background extraction and request handlers can be correlated.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar

from readmind.config import settings

# Context variables for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
owner_id_var: ContextVar[str] = ContextVar("owner_id", default="")

ROOT_LOGGER = "readmind"
PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        req_id = request_id_var.get("")
        if req_id:
            log_entry["request_id"] = req_id
        owner_id = owner_id_var.get("")
        if owner_id:
            log_entry["owner_id"] = owner_id

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry)


_configured = False


def configure_logging(level: str = None, structured: bool = None) -> None:
    """Attach a stdout handler to the ``readmind`` logger tree (idempotent)."""
    global _configured
    if _configured:
        return

    level = level or settings.log_level
    structured = settings.structured_logging if structured is None else structured

    handler = logging.StreamHandler(sys.stdout)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))

    root = logging.getLogger(ROOT_LOGGER)
    root.addHandler(handler)
    root.setLevel(level.upper())
    _configured = True


def set_request_context(request_id: str = "", owner_id: str = "") -> None:
    """Set context variables for the current request or job."""
    if request_id:
        request_id_var.set(request_id)
    if owner_id:
        owner_id_var.set(owner_id)


def generate_request_id() -> str:
    return str(uuid.uuid4())[:12]
