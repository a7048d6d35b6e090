"""
Structured JSON logging configuration.

Usage:
    # At startup (once):
    from mailpilot.logging.config import setup_logging
    setup_logging("info", service="mailpilot", env="production")

    # In any module:
    import logging
    logger = logging.getLogger(__name__)
    logger.info("something happened", extra={"message_id": "AAMk..."})
"""

import logging
import json
import sys
from datetime import datetime, timezone
from contextvars import ContextVar
from typing import Optional


# Context variables. The poller sets cycle_id once per cycle and the HTTP
# middleware sets it per request; both end up on every log line.
cycle_id_var: ContextVar[str] = ContextVar("cycle_id", default="-")
mailbox_var: ContextVar[str] = ContextVar("mailbox", default="-")

# Third-party loggers that are chatty at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "sqlalchemy.engine", "uvicorn.access")

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    `static_fields` (service name, environment) are stamped on every line,
    followed by the cycle/mailbox context and whatever was passed in extra.
    """

    def __init__(self, static_fields: Optional[dict] = None):
        super().__init__()
        self._static = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            **self._static,
            "cycle_id": cycle_id_var.get(),
            "mailbox": mailbox_var.get(),
        }
        log.update(
            (key, val) for key, val in record.__dict__.items()
            if key not in _RECORD_ATTRS and key not in log
        )

        if record.exc_info and record.exc_info[0] is not None:
            log["exception_type"] = record.exc_info[0].__name__
            log["exception_message"] = str(record.exc_info[1])
            log["traceback"] = self.formatException(record.exc_info)

        return json.dumps(log, default=str)


def setup_logging(level: str = "info", **static_fields) -> None:
    """
    Route all logging to stdout as JSON lines.

    Safe to call more than once; the previous root handlers are replaced.
    """
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(static_fields))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
