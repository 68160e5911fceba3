"""
Structured logging with job/run id support.

Features:
- JSON logs in production, pretty logs in development.
- Context-bound run_id for correlating one expiry pass or strategy run.
- log_event helper for consistent structured logs with safe truncation.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional
from uuid import uuid4

run_id_ctx_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

_STRUCTURED_FIELDS = ("user_id", "strategy_id", "lot_id", "event_type", "error_code")


def get_run_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current run_id from context (if any)."""
    rid = run_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def bind_run_id(run_id: Optional[str] = None) -> Iterator[str]:
    """Bind a run_id for the duration of a job; a fresh one is generated if omitted."""
    rid = run_id or str(uuid4())
    token = run_id_ctx_var.set(rid)
    try:
        yield rid
    finally:
        run_id_ctx_var.reset(token)


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


class RunIdFilter(logging.Filter):
    """Inject run_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "run_id", None) is None:
            record.run_id = get_run_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", None),
        }
        for field in _STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "run_id", None)
        rid_part = f" [run={rid}]" if rid else ""
        fields = " ".join(
            f"{field}={getattr(record, field)}"
            for field in _STRUCTURED_FIELDS
            if getattr(record, field, None) is not None
        )
        ts = _format_timestamp(record)
        line = f"{ts} {record.levelname} [quota_manager]{rid_part} {record.getMessage()}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: str = "INFO", stream=None) -> None:
    """Configure structured logging based on environment (stdout unless a stream is given)."""
    logger = logging.getLogger("quota_manager")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(RunIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # SQL echo stays off unless explicitly enabled
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    run_id: Optional[str] = None,
    user_id: Optional[str] = None,
    strategy_id: Optional[int] = None,
    lot_id: Optional[int] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Structured logging helper with safe truncation and run correlation."""

    logger = logging.getLogger("quota_manager")
    if not logger.handlers:
        # Unconfigured callers (tests) log to stderr, stdout is left to reports
        configure_logging(os.getenv("ENV", "development"), stream=sys.stderr)

    payload = {
        "run_id": run_id or get_run_id(),
        "user_id": user_id,
        "strategy_id": strategy_id,
        "lot_id": lot_id,
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    if extra:
        for k, v in extra.items():
            payload[k] = _safe_truncate(v)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)
