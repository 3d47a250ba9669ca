"""JSON-lines logging for orchestrator runs.

Module code logs through ``structlog.get_logger(__name__)`` with snake_case event names.
:func:`setup_logging` routes those events through a non-blocking stdlib queue to a
per-run ``<log_dir>/<run_id>.jsonl`` file and/or stderr, one JSON object per line.

Each line carries:

* ``event``, ``level``, ``logger`` and a UTC ``timestamp``;
* the correlation ids bound by :func:`correlation_scope` (task, trace, crew, agent);
* ``plane``, derived from the event name (``router_decision`` -> ``routing``);
* ``fields``: the remaining keyword fields, with cost and energy figures rounded,
  unlimited budget limits rendered as ``"unlimited"``, and secrets or prompt
  transcripts redacted.
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
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]

REDACTED: Final[str] = "***REDACTED***"
UNLIMITED: Final[str] = "unlimited"
ROOT_LOGGER_NAME: Final[str] = "joule_orchestrator"

CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "run_id",
    "session_id",
    "task_id",
    "trace_id",
    "crew_id",
    "agent_id",
)

# First matching prefix wins.
EVENT_PLANES: Final[tuple[tuple[str, str], ...]] = (
    ("router_", "routing"),
    ("routing_", "routing"),
    ("model_", "routing"),
    ("budget_", "budget"),
    ("energy_", "energy"),
    ("efficiency_", "energy"),
    ("engine_", "engine"),
    ("tool_", "engine"),
    ("constitution_", "engine"),
    ("planner_", "planning"),
    ("decomposition_", "planning"),
    ("crew_", "crew"),
    ("trace_", "trace"),
)

_MONEY_SUFFIXES: Final[tuple[str, ...]] = ("_usd",)
_ENERGY_SUFFIXES: Final[tuple[str, ...]] = ("_wh", "_grams", "_kwh")

_SECRET_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
)
# Model prompts and completions stay out of the log sinks.
_TRANSCRIPT_KEY_TERMS: Final[tuple[str, ...]] = (
    "transcript",
    "system_prompt",
    "user_message",
    "prompt_messages",
    "completion_text",
)
# Budget counters that merely mention tokens.
_COUNTER_KEY_TERMS: Final[tuple[str, ...]] = ("tokens_", "_tokens", "max_tokens")

_INLINE_SECRETS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*[^\s,;]+"
        ),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\bsk-ant-[A-Za-z0-9_-]{12,}\b"), REDACTED),
    (re.compile(r"\bsk-[A-Za-z0-9]{12,}\b"), REDACTED),
    (re.compile(r"\bAIza[0-9A-Za-z_-]{20,}\b"), REDACTED),
)

_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation"}

_CORRELATION: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "joule_log_correlation", default=()
)

_ACTIVE_LOCK = threading.Lock()
_ACTIVE: LoggingHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    log_dir: Path | str | None = Path("logs")
    level: int | str = "INFO"
    log_to_stdout: bool = True
    redact: bool = True
    queue_size: int = 4096
    logger_name: str = ROOT_LOGGER_NAME

    def __post_init__(self) -> None:
        if not isinstance(self.run_id, str) or not self.run_id.strip():
            raise ValueError("LoggingConfig.run_id must be a non-empty string")
        if Path(self.run_id.strip()).name != self.run_id.strip():
            raise ValueError("LoggingConfig.run_id must not include path separators")
        if isinstance(self.queue_size, bool) or not isinstance(self.queue_size, int):
            raise ValueError("LoggingConfig.queue_size must be an integer")
        if self.queue_size <= 0:
            raise ValueError("LoggingConfig.queue_size must be > 0")
        _level_number(self.level)

    @property
    def log_path(self) -> Path | None:
        if self.log_dir is None:
            return None
        return Path(self.log_dir) / f"{self.run_id.strip()}.jsonl"


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
) -> LoggingHandle:
    """Configure logging from the ``[observability]`` config section.

    ``log_to_file = false`` disables the JSON-lines file; ``log_dir`` overrides the
    configured directory.
    """

    cfg = dict(observability_config or {})
    raw_level = cfg.get("log_level", "INFO")
    directory: object = log_dir if log_dir is not None else cfg.get("log_dir", "logs")
    if not cfg.get("log_to_file", True) or not isinstance(directory, (str, Path)):
        directory = None
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            log_dir=directory,
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_to_stdout=bool(cfg.get("log_to_stdout", True)),
            redact=bool(cfg.get("redact_secrets", True)),
            logger_name=logger_name,
        )
    )


class LoggingHandle:
    """An active logging setup; :meth:`shutdown` drains the queue and closes the sinks."""

    def __init__(
        self,
        *,
        config: LoggingConfig,
        logger: logging.Logger,
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.config = config
        self.logger = logger
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def log_path(self) -> Path | None:
        return self.config.log_path

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._closed = True


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the event loop: a full queue drops the record and counts it."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see this task's contextvars.
        bound = dict(_CORRELATION.get())
        if bound:
            record.correlation = bound
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, *, run_id: str, redact: bool) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": self._clean(record.getMessage()),
            "run_id": self._run_id,
        }
        bound = getattr(record, "correlation", None)
        if isinstance(bound, Mapping):
            line.update({str(key): str(value) for key, value in bound.items()})
        fields: dict[str, JSONValue] = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            if key in CORRELATION_KEYS and isinstance(value, str) and value:
                line[key] = value
            elif key == "plane":
                line["plane"] = str(value)
            else:
                fields[key] = _to_json(value, key)
        if fields:
            line["fields"] = redact_fields(fields) if self._redact else fields
        if record.exc_info is not None:
            line["exception"] = self._clean(self.formatException(record.exc_info))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _clean(self, text: str) -> str:
        return redact_text(text) if self._redact else text


def setup_structured_logging(config: LoggingConfig) -> LoggingHandle:
    """Install queue-backed JSON-lines logging; replaces any earlier active setup."""

    global _ACTIVE, _ATEXIT_REGISTERED
    previous = _ACTIVE
    if previous is not None:
        shutdown_logging(previous)

    level = _level_number(config.level)
    formatter = _JsonLinesFormatter(run_id=config.run_id.strip(), redact=config.redact)
    sinks: list[logging.Handler] = []
    if config.log_path is not None:
        config.log_path.parent.mkdir(parents=True, exist_ok=True)
        sinks.append(logging.FileHandler(config.log_path, encoding="utf-8"))
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    queue_handler = _DroppingQueueHandler(queue.Queue(maxsize=config.queue_size))
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = LoggingHandle(
        config=config,
        logger=logger,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _ACTIVE_LOCK:
        _ACTIVE = handle
        if not _ATEXIT_REGISTERED:
            atexit.register(shutdown_logging)
            _ATEXIT_REGISTERED = True
    return handle


def shutdown_logging(handle: LoggingHandle | None = None) -> None:
    """Drain and close ``handle``, or the active setup when omitted."""

    global _ACTIVE
    with _ACTIVE_LOCK:
        target = handle if handle is not None else _ACTIVE
        if target is _ACTIVE:
            _ACTIVE = None
    if target is not None:
        target.shutdown()


def configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            tag_event,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def tag_event(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: add ``plane`` and keep fields clear of LogRecord attributes."""

    event = str(event_dict.get("event", ""))
    plane = event_plane(event)
    for key in list(event_dict):
        if key != "event" and key in _RECORD_ATTRIBUTES:
            event_dict[f"field_{key}"] = event_dict.pop(key)
    if plane is not None:
        event_dict.setdefault("plane", plane)
    return event_dict


def event_plane(event: str) -> str | None:
    for prefix, plane in EVENT_PLANES:
        if event.startswith(prefix):
            return plane
    return None


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation ids to every log line emitted in scope, asyncio tasks included.

    A ``None`` value unbinds that key for the duration of the scope.
    """

    bound = dict(_CORRELATION.get())
    for key, value in fields.items():
        if key not in CORRELATION_KEYS:
            raise ValueError(f"unknown correlation key {key!r}")
        if value is None:
            bound.pop(key, None)
        elif not isinstance(value, str) or not value.strip():
            raise ValueError(f"correlation value for {key} must be a non-empty string")
        else:
            bound[key] = value.strip()
    token = _CORRELATION.set(tuple(bound.items()))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


def redact_fields(value: JSONValue, *, key: str | None = None) -> JSONValue:
    """Deep redaction of secret-looking keys, prompt transcripts and inline credentials."""

    if key is not None and _sensitive_key(key):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, list):
        return [redact_fields(item) for item in value]
    if isinstance(value, dict):
        return {name: redact_fields(item, key=name) for name, item in value.items()}
    return value


def redact_text(text: str) -> str:
    for pattern, replacement in _INLINE_SECRETS:
        text = pattern.sub(replacement, text)
    return text


def _sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if any(term in lowered for term in _COUNTER_KEY_TERMS):
        return False
    return any(term in lowered for term in _SECRET_KEY_TERMS + _TRANSCRIPT_KEY_TERMS)


def _to_json(value: object, key: str = "") -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isinf(value):
            return UNLIMITED if value > 0 else "-" + UNLIMITED
        if math.isnan(value):
            return "nan"
        if key.endswith(_MONEY_SUFFIXES):
            return round(value, 8)
        if key.endswith(_ENERGY_SUFFIXES):
            return round(value, 6)
        return value
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return str(value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _to_json(to_dict(), key)
    if isinstance(value, Mapping):
        return {str(name): _to_json(item, str(name)) for name, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_to_json(item, key) for item in value]
        return sorted(items, key=repr) if isinstance(value, (set, frozenset)) else items
    return repr(value)


def _level_number(level: int | str) -> int:
    if isinstance(level, int) and not isinstance(level, bool):
        return level
    if isinstance(level, str):
        parsed = logging.getLevelName(level.strip().upper())
        if isinstance(parsed, int):
            return parsed
    raise ValueError(f"unsupported logging level {level!r}")


__all__ = [
    "CORRELATION_KEYS",
    "EVENT_PLANES",
    "JSONValue",
    "LoggingConfig",
    "LoggingHandle",
    "REDACTED",
    "UNLIMITED",
    "configure_structlog",
    "correlation_scope",
    "event_plane",
    "get_correlation_context",
    "redact_fields",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
    "tag_event",
]
