"""Repository layer for telemetry store records.

Handles the seam between SQLAlchemy rows (strings, naive SQLite
timestamps, JSON text) and the record dataclasses (strict enums, aware UTC
datetimes, attribute dicts). Bad data read from our own store crashes.
"""

from typing import Any

from sqlalchemy.engine import Row as SARow

from telemark.contracts.enums import LogLevel, Signal, SpanStatus
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
from telemark.core.attributes import attributes_from_json
from telemark.core.store._helpers import as_utc


def _required_utc(value: Any) -> Any:
    converted = as_utc(value)
    if converted is None:
        raise ValueError("required timestamp column is NULL")
    return converted


class TraceRepository:
    def load(self, row: SARow[Any]) -> Trace:
        return Trace(
            trace_id=row.trace_id,
            operation=row.operation,
            service_name=row.service_name,
            tenant_id=row.tenant_id,
            start_time=_required_utc(row.start_time),
            end_time=as_utc(row.end_time),
            attributes=attributes_from_json(row.attributes_json),
        )


class SpanRepository:
    def load(self, row: SARow[Any]) -> Span:
        return Span(
            span_id=row.span_id,
            trace_id=row.trace_id,
            parent_span_id=row.parent_span_id,
            operation=row.operation,
            start_time=_required_utc(row.start_time),
            end_time=as_utc(row.end_time),
            duration_ms=row.duration_ms,
            status=SpanStatus(row.status),
            tenant_id=row.tenant_id,
            attributes=attributes_from_json(row.attributes_json),
        )


class SpanEventRepository:
    def load(self, row: SARow[Any]) -> SpanEvent:
        return SpanEvent(
            event_id=row.event_id,
            span_id=row.span_id,
            name=row.name,
            timestamp=_required_utc(row.timestamp),
            attributes=attributes_from_json(row.attributes_json),
        )


class MetricRepository:
    def load(self, row: SARow[Any]) -> Metric:
        return Metric(
            metric_id=row.metric_id,
            name=row.name,
            value=row.value,
            unit=row.unit,
            timestamp=_required_utc(row.timestamp),
            trace_id=row.trace_id,
            span_id=row.span_id,
            tenant_id=row.tenant_id,
            attributes=attributes_from_json(row.attributes_json),
        )


class LogRecordRepository:
    def load(self, row: SARow[Any]) -> LogRecord:
        return LogRecord(
            log_id=row.log_id,
            level=LogLevel(row.level),
            message=row.message,
            timestamp=_required_utc(row.timestamp),
            trace_id=row.trace_id,
            span_id=row.span_id,
            tenant_id=row.tenant_id,
            attributes=attributes_from_json(row.attributes_json),
        )


class QueueEntryRepository:
    """Repository for delivery_queue rows."""

    def load(self, row: SARow[Any]) -> QueueEntry:
        return QueueEntry(
            queue_id=row.queue_id,
            signal=Signal(row.signal),
            payload=row.payload,
            created_at=_required_utc(row.created_at),
            processed=bool(row.processed),
            attempt_count=row.attempt_count,
            last_attempt_at=as_utc(row.last_attempt_at),
            last_error=row.last_error,
            processed_at=as_utc(row.processed_at),
            dead_lettered=bool(row.dead_lettered),
            claimed_by=row.claimed_by,
            claimed_until=as_utc(row.claimed_until),
        )


class DeadLetterRepository:
    def load(self, row: SARow[Any]) -> DeadLetter:
        return DeadLetter(
            dead_letter_id=row.dead_letter_id,
            exported_at=_required_utc(row.exported_at),
            queue_id=row.queue_id,
            signal=Signal(row.signal),
            http_status=row.http_status,
            payload=row.payload,
            error_message=row.error_message,
            retry_count=row.retry_count,
            last_retry_at=as_utc(row.last_retry_at),
        )


class DiagnosticErrorRepository:
    def load(self, row: SARow[Any]) -> DiagnosticError:
        return DiagnosticError(
            error_id=row.error_id,
            recorded_at=_required_utc(row.recorded_at),
            message=row.message,
            code=row.code,
            module=row.module,
            trace_id=row.trace_id,
            span_id=row.span_id,
            error_stack=row.error_stack,
        )
