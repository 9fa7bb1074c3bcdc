"""Structured logging and metric hooks.

Every log line is a single JSON object. Request-scoped fields (request id,
caller, challenge, submission key) live in context variables so that the
submission driver task, which copies the context of the request that
started it, keeps logging with the same fields.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Callable

ROOT_LOGGER = "tentropy_core"

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
caller_var: ContextVar[str | None] = ContextVar("caller", default=None)
challenge_id_var: ContextVar[str | None] = ContextVar("challenge_id", default=None)
submission_key_var: ContextVar[str | None] = ContextVar("submission_key", default=None)

_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    "request_id": request_id_var,
    "caller": caller_var,
    "challenge_id": challenge_id_var,
    "submission_key": submission_key_var,
}


def current_context() -> dict[str, str]:
    """Return the request-scoped fields that are currently set."""
    result = {}
    for name, var in _CONTEXT_VARS.items():
        value = var.get()
        if value is not None:
            result[name] = value
    return result


class StructuredFormatter(logging.Formatter):
    """Formats log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        data: dict[str, Any] = {
            "level": record.levelname,
            "message": record.getMessage(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "logger": record.name,
        }

        context = current_context()
        extra_context = getattr(record, "context", None)
        if isinstance(extra_context, dict):
            context.update(extra_context)
        if context:
            data["context"] = context

        if record.exc_info and record.exc_info[0] is not None:
            data["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        duration_ms = getattr(record, "duration_ms", None)
        if duration_ms is not None:
            data["duration_ms"] = round(duration_ms, 3)

        return json.dumps(data, default=str)


class StructuredLogger:
    """Thin wrapper over a stdlib logger that accepts structured fields.

    Example:
        logger = get_logger(__name__)
        logger.info("Sandbox ready", context={"sandbox_id": sid})
        logger.error("Run crashed", error=exc)
    """

    def __init__(self, name: str) -> None:
        self.logger = logging.getLogger(name)

    def _log(
        self,
        level: int,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        duration_ms: float | None = None,
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra: dict[str, Any] = {}
        if context:
            extra["context"] = context
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms
        exc_info = (type(error), error, error.__traceback__) if error else None
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, context: dict[str, Any] | None = None, error: BaseException | None = None) -> None:
        self._log(logging.DEBUG, message, context, error)

    def info(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> None:
        self._log(logging.INFO, message, context, duration_ms=duration_ms)

    def warning(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> None:
        self._log(logging.WARNING, message, context, error)

    def error(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        duration_ms: float | None = None,
    ) -> None:
        self._log(logging.ERROR, message, context, error, duration_ms)


class RequestContext:
    """Sets request-scoped logging fields for the duration of a block.

    Example:
        async with RequestContext(caller="anon:10.0.0.1"):
            logger.info("Submission received")
    """

    def __init__(
        self,
        request_id: str | None = None,
        caller: str | None = None,
        challenge_id: str | None = None,
        submission_key: str | None = None,
    ) -> None:
        self.request_id = request_id or uuid.uuid4().hex
        self._values = {
            "request_id": self.request_id,
            "caller": caller,
            "challenge_id": challenge_id,
            "submission_key": submission_key,
        }
        self._tokens: list[tuple[ContextVar[str | None], Token[str | None]]] = []

    def __enter__(self) -> "RequestContext":
        for name, value in self._values.items():
            if value is not None:
                var = _CONTEXT_VARS[name]
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, *args: Any) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)

    async def __aenter__(self) -> "RequestContext":
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


class Timer:
    """Measures wall-clock duration of a block.

    Reading ``duration_ms`` inside the block gives the time elapsed so far.
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float | None = None

    @property
    def duration_ms(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        self.end_time = None
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()

    async def __aenter__(self) -> "Timer":
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


MetricCallback = Callable[[str, float, dict[str, Any]], None]

_metric_callbacks: list[MetricCallback] = []


def register_metric_callback(callback: MetricCallback) -> None:
    """Register a callback receiving (name, value, labels) for every metric."""
    _metric_callbacks.append(callback)


def unregister_metric_callback(callback: MetricCallback) -> None:
    """Remove a previously registered metric callback."""
    if callback in _metric_callbacks:
        _metric_callbacks.remove(callback)


def emit_metric(name: str, value: float, labels: dict[str, Any] | None = None) -> None:
    """Emit a metric to all registered callbacks.

    A failing callback is logged and skipped; metrics never break the caller.
    """
    labels = dict(labels or {})
    challenge_id = challenge_id_var.get()
    if challenge_id:
        labels.setdefault("challenge_id", challenge_id)

    for callback in list(_metric_callbacks):
        try:
            callback(name, value, labels)
        except Exception as exc:
            logging.getLogger(ROOT_LOGGER).debug(
                "Metric callback failed", exc_info=exc
            )


def emit_counter(name: str, labels: dict[str, Any] | None = None) -> None:
    """Emit a counter metric (increment by 1)."""
    emit_metric(name, 1.0, labels)


def emit_timer(name: str, duration_ms: float, labels: dict[str, Any] | None = None) -> None:
    """Emit a timer metric."""
    emit_metric(name, duration_ms, labels)


def configure_logging(level: str = "INFO", format: str = "json") -> None:
    """Install a single stdout handler on the package root logger.

    Args:
        level: Minimum level name (DEBUG, INFO, ...)
        format: "json" for structured output, anything else for plain text
    """
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if format == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
    root_logger.addHandler(handler)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module (typically ``__name__``)."""
    return StructuredLogger(name)
