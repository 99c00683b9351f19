# tests/unit/core/store/test_recorder.py
"""Tests for StoreRecorder CRUD over the telemetry store."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from telemark.contracts.enums import LogLevel, SpanStatus
from telemark.core.identifiers import new_span_id, new_trace_id
from telemark.core.store.database import TelemetryDB
from telemark.core.store.recorder import StoreRecorder

T0 = datetime(2026, 3, 14, 9, 0, 0, 250_000, tzinfo=UTC)


def start_trace(recorder: StoreRecorder, operation: str = "checkout") -> str:
    trace_id = new_trace_id()
    recorder.insert_trace(trace_id, operation, "checkout-service", T0, tenant_id="acme")
    return trace_id


class TestTraces:
    def test_insert_and_get(self, recorder: StoreRecorder) -> None:
        trace_id = new_trace_id()
        recorder.insert_trace(trace_id, "checkout", "svc", T0, tenant_id="acme", attributes={"k": "v"})

        trace = recorder.get_trace(trace_id)
        assert trace is not None
        assert trace.operation == "checkout"
        assert trace.start_time == T0
        assert trace.start_time.tzinfo is not None
        assert trace.end_time is None
        assert trace.attributes == {"k": "v"}

    def test_close_sets_end_time_once(self, recorder: StoreRecorder) -> None:
        trace_id = start_trace(recorder)

        closed = recorder.close_trace(trace_id, T0 + timedelta(seconds=2))
        again = recorder.close_trace(trace_id, T0 + timedelta(seconds=9))

        assert closed is not None
        assert closed.end_time == T0 + timedelta(seconds=2)
        assert again is None
        stored = recorder.get_trace(trace_id)
        assert stored is not None and stored.end_time == T0 + timedelta(seconds=2)

    def test_close_unknown_trace_returns_none(self, recorder: StoreRecorder) -> None:
        assert recorder.close_trace(new_trace_id(), T0) is None

    def test_close_merges_attributes(self, recorder: StoreRecorder) -> None:
        trace_id = new_trace_id()
        recorder.insert_trace(trace_id, "op", "svc", T0, attributes={"a": "1"})
        closed = recorder.close_trace(trace_id, T0, {"b": "2"})
        assert closed is not None and closed.attributes == {"a": "1", "b": "2"}


class TestSpans:
    def test_close_computes_exact_duration(self, recorder: StoreRecorder) -> None:
        trace_id = start_trace(recorder)
        span_id = new_span_id()
        recorder.insert_span(span_id, trace_id, "charge_card", T0)

        closed = recorder.close_span(span_id, T0 + timedelta(milliseconds=1500, microseconds=250), SpanStatus.OK)

        assert closed is not None
        assert closed.status == SpanStatus.OK
        assert closed.duration_ms == 1500.25
        stored = recorder.get_span(span_id)
        assert stored is not None
        assert stored.end_time is not None
        assert stored.duration_ms == (stored.end_time - stored.start_time) / timedelta(milliseconds=1)

    def test_end_before_start_is_clamped(self, recorder: StoreRecorder) -> None:
        trace_id = start_trace(recorder)
        span_id = new_span_id()
        recorder.insert_span(span_id, trace_id, "op", T0)

        closed = recorder.close_span(span_id, T0 - timedelta(seconds=1), SpanStatus.OK)

        assert closed is not None
        assert closed.end_time == T0
        assert closed.duration_ms == 0.0

    def test_second_close_is_noop(self, recorder: StoreRecorder) -> None:
        trace_id = start_trace(recorder)
        span_id = new_span_id()
        recorder.insert_span(span_id, trace_id, "op", T0)

        recorder.close_span(span_id, T0 + timedelta(seconds=1), SpanStatus.OK)
        assert recorder.close_span(span_id, T0 + timedelta(seconds=5), SpanStatus.ERROR) is None

        stored = recorder.get_span(span_id)
        assert stored is not None
        assert stored.status == SpanStatus.OK
        assert stored.end_time == T0 + timedelta(seconds=1)

    def test_close_merges_attributes_last_write_wins(self, recorder: StoreRecorder) -> None:
        trace_id = start_trace(recorder)
        span_id = new_span_id()
        recorder.insert_span(span_id, trace_id, "op", T0, attributes={"a": "start", "b": "keep"})

        closed = recorder.close_span(span_id, T0, SpanStatus.OK, {"a": "end"})

        assert closed is not None and closed.attributes == {"a": "end", "b": "keep"}

    def test_list_spans_by_trace(self, recorder: StoreRecorder) -> None:
        trace_id = start_trace(recorder)
        other = start_trace(recorder)
        for offset in range(3):
            recorder.insert_span(new_span_id(), trace_id, f"op-{offset}", T0 + timedelta(seconds=offset))
        recorder.insert_span(new_span_id(), other, "elsewhere", T0)

        assert [s.operation for s in recorder.list_spans(trace_id)] == ["op-0", "op-1", "op-2"]

    def test_span_requires_existing_trace(self, recorder: StoreRecorder) -> None:
        with pytest.raises(IntegrityError):
            recorder.insert_span(new_span_id(), new_trace_id(), "orphan", T0)


class TestEventsMetricsLogs:
    def test_events_ordered_by_time(self, recorder: StoreRecorder) -> None:
        trace_id = start_trace(recorder)
        span_id = new_span_id()
        recorder.insert_span(span_id, trace_id, "op", T0)
        recorder.insert_event(span_id, "second", T0 + timedelta(seconds=2))
        recorder.insert_event(span_id, "first", T0 + timedelta(seconds=1), {"cache": "miss"})

        events = recorder.list_events(span_id)
        assert [e.name for e in events] == ["first", "second"]
        assert events[0].attributes == {"cache": "miss"}

    def test_metric_round_trip(self, recorder: StoreRecorder) -> None:
        recorder.insert_metric("charge.amount", 12.5, "EUR", T0, tenant_id="acme", attributes={"currency": "EUR"})
        [metric] = recorder.list_metrics("charge.amount")
        assert metric.value == 12.5
        assert metric.unit == "EUR"
        assert metric.timestamp == T0
        assert metric.attributes == {"currency": "EUR"}

    def test_log_round_trip(self, recorder: StoreRecorder) -> None:
        trace_id = start_trace(recorder)
        recorder.insert_log(LogLevel.WARN, "card declined", T0, trace_id=trace_id)
        [log] = recorder.list_logs(trace_id)
        assert log.level == LogLevel.WARN
        assert log.message == "card declined"


def test_closed_database_raises(db: TelemetryDB) -> None:
    recorder = StoreRecorder(db)
    db.close()
    with pytest.raises(RuntimeError):
        recorder.get_trace(new_trace_id())
