"""
Payment Channel Observability

Structured logging and protocol event emission. Every protocol component
logs through a ProtocolLogger tagged with its layer; every committed state
change of a hub, registry or consumer channel is appended to that entity's
EventLog, a hash-chained record that doubles as the protocol's event stream.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                   Protocol Components                    │
    │  logger.info("msg", hub=x)   events.emit("NewStake",..)  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │              ProtocolLogger / EventLog                   │
    │  correlation IDs, layer tags, SHA-256 event chaining     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                  StructuredHandler                       │
    │            JSON or text lines on a stream                │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from tools.paychannel.config import get_config

# Context variable for request-scoped data
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

# Log lines of the enclosing transaction, written only once it commits
_pending_logs: contextvars.ContextVar[Optional[List[Callable[[], None]]]] = contextvars.ContextVar(
    "pending_logs", default=None
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ChannelLayer(Enum):
    """Protocol layers for categorization."""
    SIGNATURES = "signatures"
    LEDGER = "ledger"
    EXCHANGE = "exchange"
    REGISTRY = "registry"
    CHANNEL = "channel"
    HUB = "hub"
    CONFIG = "config"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=_json_default)

    def to_text(self) -> str:
        parts = [self.timestamp, self.level.upper(), self.logger, self.message]
        if self.error_code:
            parts.append(f"error_code={self.error_code}")
        parts.extend(f"{k}={_json_default(v) if isinstance(v, bytes) else v}" for k, v in self.context.items())
        return " ".join(str(p) for p in parts)


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, Enum):
        return value.value
    return str(value)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON or plain text lines."""

    def __init__(self, stream: Any = None, log_format: str = "json"):
        super().__init__()
        self.stream = stream or sys.stderr
        self.log_format = log_format

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            line = event.to_text() if self.log_format == "text" else event.to_json()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class ProtocolLogger:
    """
    Structured logger for payment channel components.

    Automatically includes correlation IDs and layer information in all
    log events.
    """

    def __init__(
        self,
        name: str,
        layer: ChannelLayer,
        level: Optional[LogLevel] = None,
    ):
        self.name = name
        self.layer = layer
        observability = get_config().observability
        if level is None:
            level = LogLevel(observability.log_level.get())
        self._logger = logging.getLogger(f"paychannel.{layer.value}.{name}")
        self._logger.setLevel(getattr(logging, level.value.upper()))

        # Add structured handler if not already added
        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler(log_format=observability.log_format.get()))

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, error_code: str = "", **context: Any) -> None:
        self._log(logging.WARNING, message, error_code=error_code, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def on_commit(self, level: LogLevel, message: str, **context: Any) -> None:
        """Log a state change once the enclosing transaction commits; dropped on rollback."""
        numeric = getattr(logging, level.value.upper())
        pending = _pending_logs.get()
        if pending is None:
            self._log(numeric, message, **context)
        else:
            pending.append(lambda: self._log(numeric, message, **context))

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        error_code: str = "",
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "rejected"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            error_code=error_code,
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: ChannelLayer) -> ProtocolLogger:
    """Get a logger for a payment channel component."""
    return ProtocolLogger(name, layer)


@contextmanager
def deferred_logging() -> Iterator[None]:
    """
    Hold on_commit log lines until the outermost block completes.

    A nested block that raises drops only the lines it buffered itself;
    the outermost block writes its buffer only if it completes.
    """
    pending = _pending_logs.get()
    if pending is not None:
        mark = len(pending)
        try:
            yield
        except BaseException:
            del pending[mark:]
            raise
        return

    pending = []
    token = _pending_logs.set(pending)
    try:
        yield
    finally:
        _pending_logs.reset(token)
    for write in pending:
        write()


T = TypeVar("T")


def timed_operation(
    logger: ProtocolLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations, including rejections."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(
                    operation_name,
                    duration_ms,
                    success=False,
                    error_code=getattr(exc, "code", type(exc).__name__),
                    reason=str(exc),
                )
                raise
            duration_ms = (time.monotonic() - start) * 1000
            logger.operation(operation_name, duration_ms, success=True)
            return result
        wrapper.__name__ = func.__name__
        wrapper.__doc__ = func.__doc__
        wrapper.__wrapped__ = func  # type: ignore[attr-defined]
        return wrapper
    return decorator


# =============================================================================
# PROTOCOL EVENTS
# =============================================================================

@dataclass
class ProtocolEvent:
    """A committed state change, chained to its predecessor."""
    sequence: int
    name: str
    emitter: str
    timestamp: int
    args: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = "genesis"
    event_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def compute_hash(self) -> str:
        data = {
            "sequence": self.sequence,
            "name": self.name,
            "emitter": self.emitter,
            "timestamp": self.timestamp,
            "args": self.args,
            "previous_hash": self.previous_hash,
        }
        encoded = json.dumps(data, sort_keys=True, default=_json_default)
        return hashlib.sha256(encoded.encode()).hexdigest()


class EventLog:
    """
    Tamper-evident event stream of one protocol entity.

    Events are hash chained. Owners roll the log back to its length before
    a rejected call, so the call leaves no events behind.
    """

    def __init__(self, emitter: str, logger: ProtocolLogger):
        self.emitter = emitter
        self._logger = logger
        self._events: List[ProtocolEvent] = []

    def truncate(self, length: int) -> None:
        """Drop events appended after the log held ``length`` events."""
        del self._events[length:]

    def emit(self, name: str, timestamp: int, **args: Any) -> ProtocolEvent:
        """Append an event; its log line is written when the call commits."""
        previous = self._events[-1].event_hash if self._events else "genesis"
        event = ProtocolEvent(
            sequence=len(self._events),
            name=name,
            emitter=self.emitter,
            timestamp=timestamp,
            args=args,
            previous_hash=previous,
        )
        event.event_hash = event.compute_hash()
        self._events.append(event)
        self._logger.on_commit(LogLevel.INFO, f"EVENT: {name}", operation="event", emitter=self.emitter, **args)
        return event

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Verify the hash chain.

        Returns (valid, index of the first broken event).
        """
        previous = "genesis"
        for i, event in enumerate(self._events):
            if event.previous_hash != previous or event.compute_hash() != event.event_hash:
                return (False, i)
            previous = event.event_hash
        return (True, None)

    def named(self, name: str) -> List[ProtocolEvent]:
        return [e for e in self._events if e.name == name]

    def last(self, name: Optional[str] = None) -> Optional[ProtocolEvent]:
        events = self.named(name) if name else self._events
        return events[-1] if events else None

    def export(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self._events]

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))
