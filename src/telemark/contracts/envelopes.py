"""Generic, protocol-agnostic telemetry envelopes.

An envelope is the JSON form of one completed telemetry unit before any
wire-protocol translation. It is what the delivery queue stores and what
exporters receive. Every envelope is a flat JSON object:

- a ``signal`` discriminator (trace, span, event, metric, log)
- scalar fields (strings, numbers, null); timestamps are ISO-8601 UTC
- one nested ``attributes`` object whose values are all strings

The flat shape is what lets the pattern-based extractor in the bridge
read envelopes back without a structured JSON parser.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from telemark.contracts.enums import LogLevel, Signal, SpanStatus


class EnvelopeError(ValueError):
    """Raised when extracted fields do not form a valid envelope."""


def format_timestamp(value: datetime) -> str:
    """Render a timestamp for an envelope (UTC, microsecond precision)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse an envelope timestamp back into an aware datetime."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_timestamp(fields: dict[str, Any], key: str) -> datetime | None:
    raw = fields.get(key)
    if raw is None:
        return None
    return parse_timestamp(_require_str(fields, key))


def _require_str(fields: dict[str, Any], key: str) -> str:
    if key not in fields:
        raise EnvelopeError(f"envelope is missing required field '{key}'")
    value = fields[key]
    if not isinstance(value, str):
        raise EnvelopeError(f"envelope field '{key}' must be a string, got {type(value).__name__}")
    return value


def _optional_str(fields: dict[str, Any], key: str) -> str | None:
    value = fields.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise EnvelopeError(f"envelope field '{key}' must be a string, got {type(value).__name__}")
    return value


def _attributes(fields: dict[str, Any]) -> dict[str, str]:
    raw = fields.get("attributes")
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise EnvelopeError(f"envelope field 'attributes' must be an object, got {type(raw).__name__}")
    return {str(k): str(v) for k, v in raw.items()}


@dataclass(frozen=True)
class TraceEnvelope:
    """A completed trace (the root operation)."""

    trace_id: str
    operation: str
    service_name: str
    start_time: datetime
    end_time: datetime | None = None
    tenant_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    signal = Signal.TRACE

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.signal.value,
            "trace_id": self.trace_id,
            "operation": self.operation,
            "service_name": self.service_name,
            "tenant_id": self.tenant_id,
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time) if self.end_time else None,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, Any]) -> TraceEnvelope:
        return cls(
            trace_id=_require_str(fields, "trace_id"),
            operation=_require_str(fields, "operation"),
            service_name=_require_str(fields, "service_name"),
            start_time=parse_timestamp(_require_str(fields, "start_time")),
            end_time=_optional_timestamp(fields, "end_time"),
            tenant_id=_optional_str(fields, "tenant_id"),
            attributes=_attributes(fields),
        )


@dataclass(frozen=True)
class SpanEnvelope:
    """A closed span."""

    trace_id: str
    span_id: str
    operation: str
    start_time: datetime
    end_time: datetime
    status: SpanStatus
    parent_span_id: str | None = None
    duration_ms: float | None = None
    tenant_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    signal = Signal.SPAN

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.signal.value,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation": self.operation,
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time),
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "tenant_id": self.tenant_id,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, Any]) -> SpanEnvelope:
        status_raw = _require_str(fields, "status")
        try:
            status = SpanStatus(status_raw)
        except ValueError as e:
            raise EnvelopeError(f"unknown span status '{status_raw}'") from e
        duration = fields.get("duration_ms")
        if duration is not None and not isinstance(duration, int | float):
            raise EnvelopeError("envelope field 'duration_ms' must be a number")
        end_time = _optional_timestamp(fields, "end_time")
        if end_time is None:
            raise EnvelopeError("span envelope requires 'end_time'")
        return cls(
            trace_id=_require_str(fields, "trace_id"),
            span_id=_require_str(fields, "span_id"),
            parent_span_id=_optional_str(fields, "parent_span_id"),
            operation=_require_str(fields, "operation"),
            start_time=parse_timestamp(_require_str(fields, "start_time")),
            end_time=end_time,
            duration_ms=float(duration) if duration is not None else None,
            status=status,
            tenant_id=_optional_str(fields, "tenant_id"),
            attributes=_attributes(fields),
        )


@dataclass(frozen=True)
class EventEnvelope:
    """A timestamped annotation on an open span."""

    trace_id: str
    span_id: str
    name: str
    timestamp: datetime
    attributes: dict[str, str] = field(default_factory=dict)

    signal = Signal.EVENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.signal.value,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "name": self.name,
            "timestamp": format_timestamp(self.timestamp),
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, Any]) -> EventEnvelope:
        return cls(
            trace_id=_require_str(fields, "trace_id"),
            span_id=_require_str(fields, "span_id"),
            name=_require_str(fields, "name"),
            timestamp=parse_timestamp(_require_str(fields, "timestamp")),
            attributes=_attributes(fields),
        )


@dataclass(frozen=True)
class MetricEnvelope:
    """A numeric measurement, optionally correlated to a trace/span."""

    name: str
    value: float
    unit: str
    timestamp: datetime
    trace_id: str | None = None
    span_id: str | None = None
    tenant_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    signal = Signal.METRIC

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.signal.value,
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "timestamp": format_timestamp(self.timestamp),
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "tenant_id": self.tenant_id,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, Any]) -> MetricEnvelope:
        value = fields.get("value")
        # bool is an int subclass; a boolean metric value is malformed
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise EnvelopeError("envelope field 'value' must be a number")
        return cls(
            name=_require_str(fields, "name"),
            value=float(value),
            unit=_require_str(fields, "unit"),
            timestamp=parse_timestamp(_require_str(fields, "timestamp")),
            trace_id=_optional_str(fields, "trace_id"),
            span_id=_optional_str(fields, "span_id"),
            tenant_id=_optional_str(fields, "tenant_id"),
            attributes=_attributes(fields),
        )


@dataclass(frozen=True)
class LogEnvelope:
    """A structured log message."""

    level: LogLevel
    message: str
    timestamp: datetime
    trace_id: str | None = None
    span_id: str | None = None
    tenant_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    signal = Signal.LOG

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.signal.value,
            "level": self.level.value,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "tenant_id": self.tenant_id,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, Any]) -> LogEnvelope:
        level_raw = _require_str(fields, "level")
        try:
            level = LogLevel(level_raw)
        except ValueError as e:
            raise EnvelopeError(f"unknown log level '{level_raw}'") from e
        return cls(
            level=level,
            message=_require_str(fields, "message"),
            timestamp=parse_timestamp(_require_str(fields, "timestamp")),
            trace_id=_optional_str(fields, "trace_id"),
            span_id=_optional_str(fields, "span_id"),
            tenant_id=_optional_str(fields, "tenant_id"),
            attributes=_attributes(fields),
        )


Envelope = TraceEnvelope | SpanEnvelope | EventEnvelope | MetricEnvelope | LogEnvelope

_ENVELOPE_TYPES: dict[Signal, type[TraceEnvelope | SpanEnvelope | EventEnvelope | MetricEnvelope | LogEnvelope]] = {
    Signal.TRACE: TraceEnvelope,
    Signal.SPAN: SpanEnvelope,
    Signal.EVENT: EventEnvelope,
    Signal.METRIC: MetricEnvelope,
    Signal.LOG: LogEnvelope,
}


def envelope_to_json(envelope: Envelope) -> str:
    """Serialize an envelope to compact JSON text."""
    return json.dumps(envelope.to_dict(), separators=(",", ":"), ensure_ascii=False)


def envelope_from_fields(fields: dict[str, Any]) -> Envelope:
    """Build a typed envelope from extracted fields.

    Raises:
        EnvelopeError: If the signal is unknown or required fields are
            missing or mistyped.
    """
    signal_raw = fields.get("signal")
    if not isinstance(signal_raw, str):
        raise EnvelopeError("envelope is missing 'signal'")
    try:
        signal = Signal(signal_raw)
    except ValueError as e:
        raise EnvelopeError(f"unknown envelope signal '{signal_raw}'") from e
    return _ENVELOPE_TYPES[signal].from_fields(fields)
