"""
Logging setup for LogToPost.

Every record from the ``logtopost`` logger tree carries the id of the HTTP
request, or of the billing event being processed, that produced it.
Production writes one JSON object per line; development writes a readable
single line. Stripe keys and webhook secrets are masked before output.
"""

import json
import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Union

ROOT_LOGGER = "logtopost"
MAX_FIELD_CHARS = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
event_id_ctx_var: ContextVar[Optional[str]] = ContextVar("event_id", default=None)

# Record attributes copied into JSON output when present.
_CONTEXT_FIELDS = (
    "event_id",
    "event_type",
    "user_id",
    "outcome",
    "error_code",
    "status",
    "method",
    "path",
    "latency_bucket",
)

_SECRET_RE = re.compile(r"\b((?:sk|rk)_(?:live|test)_|whsec_)[A-Za-z0-9]+")

_LATENCY_BUCKETS = (
    (10, "<10ms"),
    (100, "10-100ms"),
    (500, "100-500ms"),
    (1000, "500-1000ms"),
)


def mask_secrets(text: str) -> str:
    return _SECRET_RE.sub(lambda m: m.group(1) + "***", text)


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


@contextmanager
def bind_event(event_id: str) -> Iterator[None]:
    """Tag every log line emitted while ``event_id`` is processed."""
    token = event_id_ctx_var.set(event_id)
    try:
        yield
    finally:
        event_id_ctx_var.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def truncate_field(value: Any, limit: int = MAX_FIELD_CHARS) -> str:
    text = mask_secrets(str(value))
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...<truncated>"


class ContextFilter(logging.Filter):
    """Fill request_id / event_id from context when the call site did not."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_ctx_var.get()
        if getattr(record, "event_id", None) is None:
            record.event_id = event_id_ctx_var.get()
        return True


def _utc_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_secrets(record.getMessage()),
            "request_id": getattr(record, "request_id", None),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = mask_secrets(self.formatException(record.exc_info))
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    _TAGS = (("request_id", "rid"), ("event_id", "evt"), ("user_id", "user"))

    def format(self, record: logging.LogRecord) -> str:
        tags = "".join(
            f" [{short}={getattr(record, name)}]"
            for name, short in self._TAGS
            if getattr(record, name, None)
        )
        line = f"{_utc_timestamp(record)} {record.levelname:<7} {record.name}{tags} {mask_secrets(record.getMessage())}"
        if record.exc_info:
            line += "\n" + mask_secrets(self.formatException(record.exc_info))
        return line


def configure_logging(env: str = "development", level: Union[str, int] = "INFO") -> None:
    """Install the single stdout handler on the ``logtopost`` logger."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper() if isinstance(level, str) else level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(ContextFilter())
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn access lines duplicate request.complete
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False
    logging.getLogger("stripe").setLevel(logging.WARNING)


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Emit one structured line on the ``logtopost`` logger; ``extra`` values are truncated."""
    fields: Dict[str, Any] = {"request_id": request_id or request_id_ctx_var.get()}
    for name, value in (
        ("user_id", user_id),
        ("event_id", event_id),
        ("event_type", event_type),
        ("error_code", error_code),
    ):
        if value is not None:
            fields[name] = value
    for key, value in (extra or {}).items():
        fields[key] = truncate_field(value)

    logging.getLogger(ROOT_LOGGER).log(logging.getLevelName(level.upper()), msg, extra=fields)
