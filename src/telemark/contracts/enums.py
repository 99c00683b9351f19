"""Status codes, modes, and kinds used across subsystem boundaries.

Values are lowercase strings except where they mirror a wire-protocol or
log-level name that operators type in configuration (span status, log
level), which keep their conventional upper-case spelling.
"""

from enum import StrEnum


class SpanStatus(StrEnum):
    """Final status of a span.

    Stored in the database (spans.status).
    """

    UNSET = "UNSET"
    OK = "OK"
    ERROR = "ERROR"


class Signal(StrEnum):
    """Kind of telemetry unit carried by an envelope.

    Stored in the database (delivery_queue.signal, dead_letters.signal).
    """

    TRACE = "trace"
    SPAN = "span"
    EVENT = "event"
    METRIC = "metric"
    LOG = "log"

    @property
    def endpoint(self) -> "SignalEndpoint":
        """Collector endpoint this signal is posted to."""
        match self:
            case Signal.TRACE | Signal.SPAN:
                return SignalEndpoint.TRACES
            case Signal.METRIC:
                return SignalEndpoint.METRICS
            case Signal.EVENT | Signal.LOG:
                return SignalEndpoint.LOGS


class SignalEndpoint(StrEnum):
    """Per-signal collector endpoint (OTLP/HTTP path suffix)."""

    TRACES = "traces"
    METRICS = "metrics"
    LOGS = "logs"

    @property
    def path(self) -> str:
        return f"/v1/{self.value}"


class LogLevel(StrEnum):
    """Severity of a log record.

    Stored in the database (logs.level).
    """

    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"

    @property
    def severity_number(self) -> int:
        """OTLP severity number for the lowest value in this level's range."""
        return _SEVERITY_NUMBERS[self]

    @property
    def rank(self) -> int:
        """Ordering key; higher is more severe."""
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER: tuple[LogLevel, ...] = (
    LogLevel.TRACE,
    LogLevel.DEBUG,
    LogLevel.INFO,
    LogLevel.WARN,
    LogLevel.ERROR,
    LogLevel.FATAL,
)

_SEVERITY_NUMBERS: dict[LogLevel, int] = {
    LogLevel.TRACE: 1,
    LogLevel.DEBUG: 5,
    LogLevel.INFO: 9,
    LogLevel.WARN: 13,
    LogLevel.ERROR: 17,
    LogLevel.FATAL: 21,
}


class DeliveryMode(StrEnum):
    """How completed telemetry units leave the producer.

    - SYNC: exported inline; a failure is dead-lettered immediately
    - ASYNC: written to the durable delivery queue for the worker
    """

    SYNC = "sync"
    ASYNC = "async"


class DeadLetterPolicy(StrEnum):
    """What happens to a queue entry once its retries are exhausted.

    - FLAG: entry stays in the queue table, marked terminal, for audit
    - DELETE: entry is removed after the dead-letter record is written
    """

    FLAG = "flag"
    DELETE = "delete"


class JsonParseMode(StrEnum):
    """Field-extraction strategy used when reading envelopes back.

    - AUTO: pick the structured parser when available
    - NATIVE: structured JSON parser
    - FALLBACK: pattern-based extraction
    """

    AUTO = "auto"
    NATIVE = "native"
    FALLBACK = "fallback"


class TransportStrategy(StrEnum):
    """How a serialized body is written to the wire.

    - SIMPLE: single fixed buffer, one request body with Content-Length
    - CHUNKED: growable buffer, body streamed with chunked transfer encoding
    """

    SIMPLE = "simple"
    CHUNKED = "chunked"


class ActivationSignal(StrEnum):
    """Signal family an activation rule applies to."""

    TRACE = "trace"
    METRIC = "metric"
    LOG = "log"
