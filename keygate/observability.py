"""Observability - Structured Logging and Request Correlation."""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from . import __version__

SERVICE_NAME = "keygate"

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else was passed via ``extra=``.
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class RequestContext:
    """Request correlation context."""

    @staticmethod
    def get_request_id() -> Optional[str]:
        return _request_id.get()

    @staticmethod
    def start(request_id: Optional[str] = None):
        """Bind a request id to the current context; returns a reset token."""
        return _request_id.set(request_id or uuid.uuid4().hex)

    @staticmethod
    def end(token) -> None:
        _request_id.reset(token)


@dataclass
class LogEntry:
    """Structured log entry."""

    timestamp: str
    level: str
    logger: str
    message: str
    request_id: Optional[str] = None
    service: str = SERVICE_NAME
    version: str = __version__
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        entry = {
            "timestamp": self.timestamp,
            "level": self.level,
            "logger": self.logger,
            "message": self.message,
            "request_id": self.request_id,
            "service": self.service,
            "version": self.version,
        }
        if self.attributes:
            entry["attributes"] = self.attributes
        return entry

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False)


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        attributes = {k: v for k, v in vars(record).items() if k not in _RESERVED_ATTRS}
        if record.exc_info:
            attributes["exception"] = self.formatException(record.exc_info)
        entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
            request_id=RequestContext.get_request_id(),
            attributes=attributes,
        )
        return entry.to_json()


class TextFormatter(logging.Formatter):
    """Plain text with the request id appended when one is bound."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        request_id = RequestContext.get_request_id()
        return f"{line} [request_id={request_id}]" if request_id else line


def configure_logging(log_level: str = "INFO", log_format: str = "json", stream=None) -> logging.Logger:
    """Install the gateway's handler on the ``keygate`` logger tree."""
    root = logging.getLogger(SERVICE_NAME)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers = []

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if log_format == "json" else TextFormatter())
    root.addHandler(handler)
    root.propagate = False
    return root
