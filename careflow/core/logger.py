"""Structured logging helpers for the agent pipeline."""
from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from careflow.config import config

_correlation_id: ContextVar[Optional[str]] = ContextVar("careflow_correlation_id", default=None)
_configured = False

# Context keys rendered as top-level fields so runs can be filtered per agent and step.
PROMOTED_FIELDS = ("agent", "step", "model")


def split_context(record: logging.LogRecord) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Return the promoted fields and the remaining context of ``record``."""
    context = dict(getattr(record, "context", None) or {})
    promoted = {key: context.pop(key) for key in PROMOTED_FIELDS if key in context}
    return promoted, context


class PipelineIdFilter(logging.Filter):
    """Stamp every record with the pipeline id bound to the current task."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.pipeline_id = _correlation_id.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with pipeline, agent and step as first-class keys."""

    def format(self, record: logging.LogRecord) -> str:
        promoted, context = split_context(record)
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "pipeline_id": getattr(record, "pipeline_id", "-"),
            **promoted,
            "message": record.getMessage(),
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class DevFormatter(logging.Formatter):
    """Single-line console output for local runs."""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s %(levelname)-7s [%(pipeline_id)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
        )

    def format(self, record: logging.LogRecord) -> str:
        promoted, context = split_context(record)
        line = super().format(record)
        fields = " ".join(f"{key}={value}" for key, value in {**promoted, **context}.items())
        return f"{line} | {fields}" if fields else line


def bind_correlation_id(correlation_id: Optional[str]) -> None:
    """Bind a correlation identifier to the current task context."""

    _correlation_id.set(correlation_id or None)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def configure_logging() -> None:
    """Configure the package loggers once per process."""

    global _configured
    if _configured:
        return

    package_logger = logging.getLogger("careflow")
    package_logger.setLevel(config.log_level)

    handler = logging.StreamHandler()
    handler.addFilter(PipelineIdFilter())
    if config.environment == "development":
        handler.setFormatter(DevFormatter())
    else:
        handler.setFormatter(JsonFormatter())

    package_logger.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger configured for the application."""

    configure_logging()
    return logging.getLogger(name)


def _emit_with_context(
    level: int,
    message: str,
    *,
    logger_name: str,
    context: Optional[Dict[str, Any]] = None,
    exc_info: Any = None,
) -> None:
    logger = get_logger(logger_name)
    log_kwargs: Dict[str, Any] = {}
    if context is not None:
        log_kwargs["extra"] = {"context": context}
    if exc_info:
        log_kwargs["exc_info"] = exc_info
    logger.log(level, message, **log_kwargs)


def log_agent_step(
    agent_name: str,
    *,
    success: bool,
    iterations: int,
    tool_calls: int,
    duration_ms: float,
    error: Optional[str] = None,
) -> None:
    """Emit a structured log entry once an agent run terminates."""

    context = {
        "agent": agent_name,
        "success": success,
        "iterations": iterations,
        "tool_calls": tool_calls,
        "duration_ms": round(duration_ms, 1),
    }
    if error:
        context["error"] = error
    _emit_with_context(
        logging.INFO if success else logging.WARNING,
        f"Agent '{agent_name}' {'completed' if success else 'failed'}.",
        logger_name="careflow.agent",
        context=context,
    )


def log_model_call(
    model: str,
    input_tokens: int,
    output_tokens: int,
    latency_ms: float,
    stop_reason: str,
) -> None:
    """Log metrics from a call to the remote model service."""

    _emit_with_context(
        logging.DEBUG,
        f"Model call '{model}' completed.",
        logger_name="careflow.model",
        context={
            "model": model,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "latency_ms": round(latency_ms, 1),
            "stop_reason": stop_reason,
        },
    )


def log_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
    """Emit a structured error log with the full exception attached."""

    merged_context = dict(context) if context else {}
    merged_context["error"] = str(error) or type(error).__name__
    _emit_with_context(
        logging.ERROR,
        "An error occurred.",
        logger_name="careflow.error",
        context=merged_context,
        exc_info=(type(error), error, error.__traceback__),
    )
