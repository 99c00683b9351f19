"""Stored-row contracts for the telemetry store tables.

Repositories convert SQLAlchemy rows into these dataclasses. Enum fields
are strict: the store is our own data, so an unknown status read back from
it is a bug, not input to be coerced.
"""

from dataclasses import dataclass, field
from datetime import datetime

from telemark.contracts.enums import LogLevel, Signal, SpanStatus


def _validate_enum(value: object, enum_type: type, field_name: str) -> None:
    if value is not None and not isinstance(value, enum_type):
        raise TypeError(f"{field_name} must be {enum_type.__name__}, got {type(value).__name__}: {value!r}")


@dataclass
class Trace:
    """One logical end-to-end operation."""

    trace_id: str
    operation: str
    service_name: str
    start_time: datetime
    tenant_id: str | None = None
    end_time: datetime | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    @property
    def is_closed(self) -> bool:
        return self.end_time is not None


@dataclass
class Span:
    """One unit of work inside a trace."""

    span_id: str
    trace_id: str
    operation: str
    start_time: datetime
    status: SpanStatus
    parent_span_id: str | None = None
    end_time: datetime | None = None
    duration_ms: float | None = None
    tenant_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _validate_enum(self.status, SpanStatus, "status")

    @property
    def is_closed(self) -> bool:
        return self.end_time is not None


@dataclass
class SpanEvent:
    event_id: int
    span_id: str
    name: str
    timestamp: datetime
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass
class Metric:
    metric_id: int
    name: str
    value: float
    unit: str
    timestamp: datetime
    trace_id: str | None = None
    span_id: str | None = None
    tenant_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass
class LogRecord:
    log_id: int
    level: LogLevel
    message: str
    timestamp: datetime
    trace_id: str | None = None
    span_id: str | None = None
    tenant_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _validate_enum(self.level, LogLevel, "level")


@dataclass
class QueueEntry:
    """Durable delivery work item.

    Lifecycle: pending -> processed (success), or pending with growing
    attempt_count -> dead_lettered once attempts reach the maximum.
    """

    queue_id: int
    signal: Signal
    payload: str
    created_at: datetime
    processed: bool = False
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    processed_at: datetime | None = None
    dead_lettered: bool = False
    claimed_by: str | None = None
    claimed_until: datetime | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.signal, Signal, "signal")


@dataclass
class DeadLetter:
    """Terminal failure snapshot."""

    dead_letter_id: int
    exported_at: datetime
    signal: Signal
    payload: str
    error_message: str
    retry_count: int
    http_status: int | None = None
    queue_id: int | None = None
    last_retry_at: datetime | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.signal, Signal, "signal")


@dataclass
class DiagnosticError:
    """Internal SDK failure, written out-of-band."""

    error_id: int
    recorded_at: datetime
    message: str
    module: str
    code: str | None = None
    trace_id: str | None = None
    span_id: str | None = None
    error_stack: str | None = None
