"""JSON-lines run logs for statusflow.

Every engine invocation gets ``<log_dir>/<run_id>/statusflow.jsonl``. Records go
through a bounded queue to a background listener so a slow disk never stalls a
rule run; records that do not fit are counted and dropped. ``structlog`` events
from the engine are rendered into stdlib records and land in the same file.

Each line carries the run id, any fields bound with :func:`correlation_scope`,
and the record's ``extra`` payload under ``fields``. Secret-looking keys and
inline credentials are scrubbed unless redaction is switched off.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Final

import structlog

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "statusflow.jsonl"
ROOT_LOGGER_NAME: Final[str] = "statusflow"

_SECRET_KEY_FRAGMENTS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "api_key", "authorization", "credential"}
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\s*([:=])\s*[^\s,;]+"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[\w.~+/-]+=*")

# Attributes every LogRecord has; anything else on a record came in via ``extra``.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "correlation",
}

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "statusflow_log_correlation", default=()
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how one run writes its JSON log."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    redact: bool = True
    redactor: LogRedactor | None = None


def parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return level


def _require_text(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{label} must not be empty")
    return text


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind fields onto every record logged inside the block; ``None`` unbinds a field."""

    bound = get_correlation_context()
    for key, value in fields.items():
        name = _require_text(key, "correlation key")
        if value is None:
            bound.pop(name, None)
        else:
            bound[name] = _require_text(value, "correlation value")
    token = _correlation.set(tuple(bound.items()))
    try:
        yield
    finally:
        _correlation.reset(token)


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, datetime):
        aware = value if value.utcoffset() is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return repr(value)


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS)


def _scrub(value: JSONValue) -> JSONValue:
    if isinstance(value, str):
        value = _INLINE_SECRET.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", value)
        return _BEARER.sub(f"Bearer {REDACTED}", value)
    if isinstance(value, list):
        return [_scrub(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_secret_key(key) else _scrub(item) for key, item in value.items()
        }
    return value


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Replace values under secret-looking keys and inline ``key=value`` credentials."""

    return _scrub(value)


def _pass_through(value: JSONValue) -> JSONValue:
    return value


def _redactor_for(config: LoggingConfig) -> LogRedactor:
    if not config.redact:
        return _pass_through
    custom = config.redactor
    if custom is None:
        return default_log_redactor

    def layered(value: JSONValue) -> JSONValue:
        return _scrub(_jsonable(custom(value)))

    return layered


class _JSONLinesFormatter(logging.Formatter):
    def __init__(self, run_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redactor

    def _text(self, value: object) -> str:
        cleaned = self._redact(_jsonable(value))
        if isinstance(cleaned, str):
            return cleaned
        return json.dumps(cleaned, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=UTC)
        line: dict[str, JSONValue] = {
            "timestamp": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._text(record.getMessage()),
            "run_id": self._run_id,
        }
        bound = getattr(record, "correlation", None)
        if isinstance(bound, Mapping):
            line.update({str(k): str(v) for k, v in bound.items()})

        extra = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and k[:1] != "_"}
        if extra:
            line["fields"] = self._redact(_jsonable(extra))
        if record.exc_info:
            line["exception"] = self._text(self.formatException(record.exc_info))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class _BoundedQueueHandler(logging.handlers.QueueHandler):
    """Enqueue without blocking; count what a full queue forces us to drop."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        bound = get_correlation_context()
        if bound:
            record.correlation = bound
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._lock:
                self.dropped += 1


@dataclass(slots=True)
class StructuredLoggingHandle:
    """A running JSON log: the configured logger plus the machinery feeding its file."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    _queue: queue.Queue[logging.LogRecord] = field(repr=False)
    _handler: _BoundedQueueHandler = field(repr=False)
    _sink: logging.Handler = field(repr=False)
    _listener: logging.handlers.QueueListener = field(repr=False)
    _closed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def dropped_records(self) -> int:
        return self._handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        self._sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._handler)
            self._handler.close()
            self._sink.close()
            self._closed = True


class _ActiveHandle:
    """The one handle a process logs through; replaced by each setup call."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None
        self._atexit = False

    def get(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def replace(self, handle: StructuredLoggingHandle | None) -> StructuredLoggingHandle | None:
        with self._lock:
            previous, self._handle = self._handle, handle
            if handle is not None and not self._atexit:
                atexit.register(shutdown_logging)
                self._atexit = True
            return previous

    def clear_if(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None


_active = _ActiveHandle()


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Point ``config.logger_name`` at a fresh JSON-lines file for ``config.run_id``."""

    previous = _active.replace(None)
    if previous is not None:
        previous.shutdown()

    run_id = _require_text(config.run_id, "run_id")
    logger_name = _require_text(config.logger_name, "logger_name")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = parse_log_level(config.level)

    log_path = Path(config.base_log_dir) / run_id / LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    sink = logging.FileHandler(log_path, encoding="utf-8")
    sink.setLevel(level)
    sink.setFormatter(_JSONLinesFormatter(run_id, _redactor_for(config)))

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    handler = _BoundedQueueHandler(log_queue)
    handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, sink, respect_handler_level=True)
    listener.start()
    logger.addHandler(handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        _queue=log_queue,
        _handler=handler,
        _sink=sink,
        _listener=listener,
    )
    _active.replace(handle)
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
) -> logging.Logger:
    """Set up run logging from an ``[observability]`` table and return the logger."""

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    base = log_dir if log_dir is not None else section.get("log_dir", "logs")
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base if isinstance(base, (str, Path)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            redact=bool(section.get("redact_secrets", True)),
        )
    )
    return handle.logger


def configure_structlog() -> None:
    """Send structlog events through stdlib logging, into the run's JSON file."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    return _active.get()


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle or _active.get()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain the queue, stop the listener, and close the file. Safe to call twice."""

    target = handle or _active.get()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    _active.clear_if(target)


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LOG_FILENAME",
    "LogRedactor",
    "LoggingConfig",
    "REDACTED",
    "ROOT_LOGGER_NAME",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "parse_log_level",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
