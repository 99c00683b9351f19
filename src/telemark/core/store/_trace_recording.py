"""Trace, span and span-event recording methods for StoreRecorder."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from telemark.contracts.enums import SpanStatus
from telemark.contracts.records import Span, SpanEvent, Trace
from telemark.core.attributes import attributes_to_json, merge_attributes
from telemark.core.store._helpers import duration_ms
from telemark.core.store.schema import span_events_table, spans_table, traces_table

if TYPE_CHECKING:
    from telemark.core.store._database_ops import DatabaseOps
    from telemark.core.store.repositories import SpanEventRepository, SpanRepository, TraceRepository


class TraceRecordingMixin:
    """Trace/span/event CRUD. Mixed into StoreRecorder."""

    # Shared state annotations (set by StoreRecorder.__init__)
    _ops: DatabaseOps
    _trace_repo: TraceRepository
    _span_repo: SpanRepository
    _event_repo: SpanEventRepository

    # === Traces ===

    def insert_trace(
        self,
        trace_id: str,
        operation: str,
        service_name: str,
        start_time: datetime,
        *,
        tenant_id: str | None = None,
        attributes: dict[str, str] | None = None,
    ) -> Trace:
        self._ops.execute_insert(
            traces_table.insert().values(
                trace_id=trace_id,
                operation=operation,
                service_name=service_name,
                tenant_id=tenant_id,
                start_time=start_time,
                end_time=None,
                attributes_json=attributes_to_json(attributes or {}),
            )
        )
        return Trace(
            trace_id=trace_id,
            operation=operation,
            service_name=service_name,
            tenant_id=tenant_id,
            start_time=start_time,
            attributes=dict(attributes or {}),
        )

    def get_trace(self, trace_id: str) -> Trace | None:
        row = self._ops.execute_fetchone(select(traces_table).where(traces_table.c.trace_id == trace_id))
        return self._trace_repo.load(row) if row is not None else None

    def close_trace(
        self,
        trace_id: str,
        end_time: datetime,
        attributes: dict[str, str] | None = None,
    ) -> Trace | None:
        """Set end_time once. Returns the closed trace, or None when the
        trace is unknown or was already closed.
        """
        trace = self.get_trace(trace_id)
        if trace is None or trace.is_closed:
            return None
        # Never earlier than start (clock adjustments)
        end_time = max(end_time, trace.start_time)
        merged = merge_attributes(trace.attributes, attributes)
        affected = self._ops.execute_update(
            traces_table.update()
            .where(traces_table.c.trace_id == trace_id)
            .where(traces_table.c.end_time.is_(None))
            .values(end_time=end_time, attributes_json=attributes_to_json(merged))
        )
        if affected == 0:
            return None
        trace.end_time = end_time
        trace.attributes = merged
        return trace

    # === Spans ===

    def insert_span(
        self,
        span_id: str,
        trace_id: str,
        operation: str,
        start_time: datetime,
        *,
        parent_span_id: str | None = None,
        tenant_id: str | None = None,
        attributes: dict[str, str] | None = None,
    ) -> Span:
        self._ops.execute_insert(
            spans_table.insert().values(
                span_id=span_id,
                trace_id=trace_id,
                parent_span_id=parent_span_id,
                operation=operation,
                start_time=start_time,
                status=SpanStatus.UNSET.value,
                tenant_id=tenant_id,
                attributes_json=attributes_to_json(attributes or {}),
            )
        )
        return Span(
            span_id=span_id,
            trace_id=trace_id,
            parent_span_id=parent_span_id,
            operation=operation,
            start_time=start_time,
            status=SpanStatus.UNSET,
            tenant_id=tenant_id,
            attributes=dict(attributes or {}),
        )

    def get_span(self, span_id: str) -> Span | None:
        row = self._ops.execute_fetchone(select(spans_table).where(spans_table.c.span_id == span_id))
        return self._span_repo.load(row) if row is not None else None

    def list_spans(self, trace_id: str) -> list[Span]:
        rows = self._ops.execute_fetchall(
            select(spans_table).where(spans_table.c.trace_id == trace_id).order_by(spans_table.c.start_time)
        )
        return [self._span_repo.load(row) for row in rows]

    def close_span(
        self,
        span_id: str,
        end_time: datetime,
        status: SpanStatus,
        attributes: dict[str, str] | None = None,
    ) -> Span | None:
        """Close a span exactly once.

        Duration is derived from the stored start time. Attributes given at
        close are merged over those given at start (last write wins).

        Returns:
            The closed span, or None when the span is unknown or already
            closed (the caller treats both as a no-op).
        """
        span = self.get_span(span_id)
        if span is None or span.is_closed:
            return None
        end_time = max(end_time, span.start_time)
        merged = merge_attributes(span.attributes, attributes)
        elapsed = duration_ms(span.start_time, end_time)
        affected = self._ops.execute_update(
            spans_table.update()
            .where(spans_table.c.span_id == span_id)
            .where(spans_table.c.end_time.is_(None))
            .values(
                end_time=end_time,
                duration_ms=elapsed,
                status=status.value,
                attributes_json=attributes_to_json(merged),
            )
        )
        if affected == 0:
            # Lost a race with a concurrent close
            return None
        span.end_time = end_time
        span.duration_ms = elapsed
        span.status = status
        span.attributes = merged
        return span

    # === Span events ===

    def insert_event(
        self,
        span_id: str,
        name: str,
        timestamp: datetime,
        attributes: dict[str, str] | None = None,
    ) -> SpanEvent:
        event_id = self._ops.execute_insert(
            span_events_table.insert().values(
                span_id=span_id,
                name=name,
                timestamp=timestamp,
                attributes_json=attributes_to_json(attributes or {}),
            )
        )
        return SpanEvent(
            event_id=event_id or 0,
            span_id=span_id,
            name=name,
            timestamp=timestamp,
            attributes=dict(attributes or {}),
        )

    def list_events(self, span_id: str) -> list[SpanEvent]:
        rows = self._ops.execute_fetchall(
            select(span_events_table)
            .where(span_events_table.c.span_id == span_id)
            .order_by(span_events_table.c.timestamp, span_events_table.c.event_id)
        )
        return [self._event_repo.load(row) for row in rows]
