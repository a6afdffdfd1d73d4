"""
release-orchestrator: structured session logging

File: src/release_orchestrator/observability/logging.py

Purpose
- Give every CLI invocation (a "session") one JSON-lines log file under
  ``<log_dir>/<session_id>/relorch.jsonl``.
- Route ``structlog.get_logger(__name__)`` calls from the engine through the stdlib
  logging tree, so structlog events and plain ``logging`` records share one sink.
- Stamp each line with the correlation ids bound by the coordinator
  (session, tick, release, task, cycle) and scrub credentials before writing.

Threading
- Producers never block on disk: records go through a bounded queue drained by a
  ``QueueListener`` thread. Overflow is counted, not raised.
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
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTION_MARK: Final[str] = "***REDACTED***"
PACKAGE_LOGGER: Final[str] = "release_orchestrator"
SESSION_LOG_FILENAME: Final[str] = "relorch.jsonl"

CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "session_id",
    "tick_id",
    "release_id",
    "task_id",
    "cycle_id",
)

# Substrings of field names whose values are never written.
_SECRET_FIELD_HINTS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
    "signature",
)

_INLINE_SECRET_RULES: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b"
            r"\s*([:=])\s*([^\s,;]+)"
        ),
        rf"\1\2{REDACTION_MARK}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTION_MARK}"),
    (re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"), REDACTION_MARK),
    (re.compile(r"(?i)(https?://)[^/\s:@]+:[^/\s@]+@"), rf"\1{REDACTION_MARK}@"),
)

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_BUILTINS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName", "correlation"}

_correlation: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "release_orchestrator_correlation", default={}
)

_handle_lock = threading.Lock()
_current_handle: StructuredLoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings for one session's log sinks."""

    session_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = PACKAGE_LOGGER
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = SESSION_LOG_FILENAME
    log_to_stdout: bool = False
    rotating_file: bool = True
    max_bytes: int = 10_000_000
    backup_count: int = 5
    redactor: LogRedactor | None = None


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    session_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = PACKAGE_LOGGER,
) -> StructuredLoggingHandle:
    """Start session logging from the ``[observability]`` config table.

    Recognised keys are ``log_level``, ``log_dir``, ``log_to_stdout`` and
    ``redact_secrets``; ``log_dir`` here overrides the table's value. Also points
    structlog at the stdlib tree, so call this once per process before the engine logs.
    """
    settings = dict(observability_config or {})
    level = settings.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else settings.get("log_dir", "logs")
    handle = setup_structured_logging(
        LoggingConfig(
            session_id=session_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(settings.get("log_to_stdout", False)),
            redactor=None if settings.get("redact_secrets", True) else _passthrough,
        )
    )
    configure_structlog()
    return handle


def configure_structlog() -> None:
    """Send structlog events to stdlib logging; keyword args become record extras."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class _SnapshotQueueHandler(logging.handlers.QueueHandler):
    """Copies the caller's correlation ids onto the record and never blocks."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._overflow_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # contextvars are invisible on the listener thread.
        bound = get_correlation_context()
        if bound:
            record.correlation = bound
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._overflow_lock:
                self.dropped += 1


class _SessionLineFormatter(logging.Formatter):
    """Renders a record as one sorted-key JSON object."""

    def __init__(self, *, session_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._session_id = session_id
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": _record_time(record.created),
            "level": record.levelname,
            "logger": record.name,
            "event": _as_text(self._redact(record.getMessage())),
        }
        line.update(self._correlation_for(record))

        extras = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _RECORD_BUILTINS
            and key not in CORRELATION_KEYS
            and not key.startswith("_")
        }
        if extras:
            line["fields"] = self._redact(dict(extras))
        if record.exc_info is not None:
            line["exception"] = _as_text(self._redact(self.formatException(record.exc_info)))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _correlation_for(self, record: logging.LogRecord) -> dict[str, str]:
        ids = {"session_id": self._session_id}
        snapshot = getattr(record, "correlation", None)
        if isinstance(snapshot, Mapping):
            ids.update((str(key), str(value)) for key, value in snapshot.items())
        # Explicit ``release_id=...`` on a structlog call beats the bound scope.
        for key in CORRELATION_KEYS:
            explicit = getattr(record, key, None)
            if isinstance(explicit, str) and explicit.strip():
                ids[key] = explicit.strip()
        return ids


class StructuredLoggingHandle:
    """An active session log: where it writes and how to stop it."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session_id: str,
        log_path: Path,
        log_queue: queue.Queue[logging.LogRecord],
        queue_handler: _SnapshotQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.session_id = session_id
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._stop_lock = threading.Lock()
        self._stopped = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._stopped

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        give_up_at = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < give_up_at:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._stop_lock:
            if self._stopped:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._stopped = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Replace any active session log with a fresh one described by ``config``."""
    global _current_handle

    session_id = _non_blank(config.session_id, "session_id")
    logger_name = _non_blank(config.logger_name, "logger_name")
    filename = _non_blank(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if not isinstance(config.queue_size, int) or config.queue_size <= 0:
        raise ValueError("queue_size must be a positive integer")
    level = _level_number(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / session_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    sinks: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max(1, config.max_bytes),
            backupCount=max(1, config.backup_count),
            encoding="utf-8",
        )
        if config.rotating_file
        else logging.FileHandler(log_path, encoding="utf-8")
    ]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    formatter = _SessionLineFormatter(
        session_id=session_id, redactor=config.redactor or default_log_redactor
    )
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _SnapshotQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        log_queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _handle_lock:
        _current_handle = handle
    return handle


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle or get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain and close ``handle`` (default: the active one). Safe to call twice."""
    global _current_handle

    target = handle or get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _handle_lock:
        if _current_handle is target:
            _current_handle = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _handle_lock:
        return _current_handle


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**ids: str | None) -> Iterator[None]:
    """Bind correlation ids for records logged inside the block; ``None`` unbinds one."""
    scoped = get_correlation_context()
    for key, value in ids.items():
        if value is None:
            scoped.pop(key, None)
        else:
            scoped[_non_blank(key, "correlation key")] = _non_blank(value, "correlation value")
    token = _correlation.set(scoped)
    try:
        yield
    finally:
        _correlation.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and credentials embedded in strings."""
    if isinstance(value, str):
        for pattern, replacement in _INLINE_SECRET_RULES:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTION_MARK if _is_secret_field(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _is_secret_field(name: str) -> bool:
    lowered = name.lower()
    return any(hint in lowered for hint in _SECRET_FIELD_HINTS)


def _passthrough(value: JSONValue) -> JSONValue:
    return value


def _non_blank(value: object, what: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{what} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{what} must not be empty")
    return text


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        number = logging.getLevelName(level.strip().upper())
        if isinstance(number, int):
            return number
    raise ValueError(f"unsupported logging level {level!r}")


def _record_time(created: float) -> str:
    moment = datetime.fromtimestamp(created, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return "" if value is None else json.dumps(value, sort_keys=True, ensure_ascii=False)


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, Enum):
        return _jsonable(value.value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=repr)
    return repr(value)


atexit.register(shutdown_logging)


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
