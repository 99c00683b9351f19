"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE: it imports nothing from core, delivery,
diagnostics, or bridge. Settings classes live in telemark.core.config.

Import patterns:
    from telemark.contracts import SpanStatus, SpanEnvelope, DeliveryResult
    from telemark.core.config import TelemarkSettings
"""

from telemark.contracts.enums import (
    ActivationSignal,
    DeadLetterPolicy,
    DeliveryMode,
    JsonParseMode,
    LogLevel,
    Signal,
    SignalEndpoint,
    SpanStatus,
    TransportStrategy,
)
from telemark.contracts.envelopes import (
    Envelope,
    EnvelopeError,
    EventEnvelope,
    LogEnvelope,
    MetricEnvelope,
    SpanEnvelope,
    TraceEnvelope,
    envelope_from_fields,
    envelope_to_json,
)
from telemark.contracts.records import (
    DeadLetter,
    DiagnosticError,
    LogRecord,
    Metric,
    QueueEntry,
    Span,
    SpanEvent,
    Trace,
)
from telemark.contracts.results import DeliveryResult, InternalFault

__all__ = [
    "ActivationSignal",
    "DeadLetter",
    "DeadLetterPolicy",
    "DeliveryMode",
    "DeliveryResult",
    "DiagnosticError",
    "Envelope",
    "EnvelopeError",
    "EventEnvelope",
    "InternalFault",
    "JsonParseMode",
    "LogEnvelope",
    "LogLevel",
    "LogRecord",
    "Metric",
    "MetricEnvelope",
    "QueueEntry",
    "Signal",
    "SignalEndpoint",
    "Span",
    "SpanEnvelope",
    "SpanEvent",
    "SpanStatus",
    "Trace",
    "TraceEnvelope",
    "TransportStrategy",
    "envelope_from_fields",
    "envelope_to_json",
]
