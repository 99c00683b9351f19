# tests/unit/test_api.py
"""Tests for the Telemetry facade.

Most tests run in async mode and inspect the delivery queue, which holds
exactly the envelopes the facade emitted, in order.
"""

import json
from typing import Any

import pytest

from telemark.api import Telemetry
from telemark.contracts import semconv
from telemark.contracts.enums import DeliveryMode, LogLevel, Signal, SpanStatus
from telemark.contracts.results import DeliveryResult
from telemark.core.attributes import clean_text
from telemark.core.identifiers import is_valid_span_id, is_valid_trace_id, new_span_id, new_trace_id
from telemark.core.store.database import TelemetryDB
from telemark.diagnostics.channel import DiagnosticChannel
from tests.fixtures.doubles import FixedClock, RecordingExporter, make_telemetry


def emitted(telemetry: Telemetry) -> list[dict[str, Any]]:
    return [json.loads(entry.payload) for entry in telemetry.queue.list_entries(limit=1000)]


def emitted_signals(telemetry: Telemetry) -> list[str]:
    return [envelope["signal"] for envelope in emitted(telemetry)]


def codes(diagnostics: DiagnosticChannel) -> list[str | None]:
    return [record.code for record in reversed(diagnostics.list_recent())]


class TestTraces:
    def test_start_trace_sets_context(self, telemetry: Telemetry) -> None:
        trace_id = telemetry.start_trace("checkout", attributes={"cart.size": 3})

        assert trace_id is not None and is_valid_trace_id(trace_id)
        assert telemetry.get_current_trace_id() == trace_id
        assert telemetry.get_current_span_id() is None
        trace = telemetry.recorder.get_trace(trace_id)
        assert trace is not None
        assert trace.service_name == "checkout-service"
        assert trace.attributes == {"cart.size": "3"}

    def test_end_trace_emits_and_clears(self, telemetry: Telemetry, clock: FixedClock) -> None:
        trace_id = telemetry.start_trace("checkout")
        clock.advance(seconds=2)
        telemetry.end_trace()

        assert telemetry.get_current_trace_id() is None
        [envelope] = emitted(telemetry)
        assert envelope["signal"] == "trace"
        assert envelope["trace_id"] == trace_id
        assert envelope["end_time"] == "2026-03-14T09:26:55.589793+00:00"

    def test_end_trace_twice_emits_once(self, telemetry: Telemetry) -> None:
        trace_id = telemetry.start_trace("checkout")
        telemetry.end_trace(trace_id)
        telemetry.end_trace(trace_id)
        assert emitted_signals(telemetry) == ["trace"]

    def test_tenant_defaults_from_service(self, db: TelemetryDB, diagnostics: DiagnosticChannel) -> None:
        telemetry = make_telemetry(db, diagnostics=diagnostics, service={"tenant_id": "acme"})
        trace_id = telemetry.start_trace("checkout")
        trace = telemetry.recorder.get_trace(trace_id or "")
        assert trace is not None and trace.tenant_id == "acme"


class TestSpanResolution:
    def test_span_without_trace_starts_one(self, telemetry: Telemetry) -> None:
        span_id = telemetry.start_span("handle_request")

        trace_id = telemetry.get_current_trace_id()
        assert trace_id is not None
        assert telemetry.get_current_span_id() == span_id
        trace = telemetry.recorder.get_trace(trace_id)
        assert trace is not None and trace.operation == "handle_request"

    def test_current_span_is_implicit_parent(self, telemetry: Telemetry) -> None:
        trace_id = telemetry.start_trace("checkout")
        outer = telemetry.start_span("validate")
        inner = telemetry.start_span("lookup")

        span = telemetry.recorder.get_span(inner or "")
        assert span is not None
        assert span.parent_span_id == outer
        assert span.trace_id == trace_id

    def test_end_span_restores_parent(self, telemetry: Telemetry) -> None:
        telemetry.start_trace("checkout")
        outer = telemetry.start_span("validate")
        inner = telemetry.start_span("lookup")

        telemetry.end_span(inner)
        assert telemetry.get_current_span_id() == outer
        telemetry.end_span(outer)
        assert telemetry.get_current_span_id() is None

    def test_out_of_order_close_restores_nearest_open_ancestor(self, telemetry: Telemetry) -> None:
        telemetry.start_trace("checkout")
        root = telemetry.start_span("root")
        middle = telemetry.start_span("middle")
        leaf = telemetry.start_span("leaf")

        telemetry.end_span(middle)
        assert telemetry.get_current_span_id() == leaf
        telemetry.end_span(leaf)
        assert telemetry.get_current_span_id() == root

    def test_explicit_parent(self, telemetry: Telemetry) -> None:
        telemetry.start_trace("checkout")
        first = telemetry.start_span("first")
        telemetry.start_span("second")

        third = telemetry.start_span("third", parent_span_id=first)

        span = telemetry.recorder.get_span(third or "")
        assert span is not None and span.parent_span_id == first

    def test_unknown_parent_is_usage_error(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        trace_id = telemetry.start_trace("checkout")
        span_id = telemetry.start_span("orphan", parent_span_id=new_span_id())

        span = telemetry.recorder.get_span(span_id or "")
        assert span is not None
        assert span.parent_span_id is None
        assert span.trace_id == trace_id
        assert codes(diagnostics) == ["UNKNOWN_PARENT"]

    def test_parent_trace_wins_over_mismatched_trace(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        trace_id = telemetry.start_trace("checkout")
        parent = telemetry.start_span("parent")

        child = telemetry.start_span("child", parent_span_id=parent, trace_id=new_trace_id())

        span = telemetry.recorder.get_span(child or "")
        assert span is not None and span.trace_id == trace_id
        assert codes(diagnostics) == ["TRACE_MISMATCH"]

    def test_unknown_explicit_trace_records_nothing(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        telemetry.start_trace("checkout")
        current = telemetry.start_span("current")

        span_id = telemetry.start_span("elsewhere", trace_id=new_trace_id())

        assert span_id is not None and is_valid_span_id(span_id)
        assert telemetry.recorder.get_span(span_id) is None
        assert telemetry.get_current_span_id() == current
        assert codes(diagnostics) == ["UNKNOWN_TRACE"]

    def test_span_in_other_known_trace(self, telemetry: Telemetry) -> None:
        other = telemetry.start_trace("batch")
        telemetry.clear_trace_context()
        telemetry.start_trace("request")

        span_id = telemetry.start_span("job", trace_id=other)

        span = telemetry.recorder.get_span(span_id or "")
        assert span is not None
        assert span.trace_id == other
        assert span.parent_span_id is None
        assert telemetry.get_current_trace_id() == other


class TestEndSpan:
    def test_emits_span_envelope(self, telemetry: Telemetry, clock: FixedClock) -> None:
        telemetry.start_trace("checkout")
        span_id = telemetry.start_span("charge", attributes={"amount": "12.50"})
        clock.advance(milliseconds=250)
        telemetry.end_span(span_id, attributes={"http.status_code": 200})

        envelope = emitted(telemetry)[-1]
        assert envelope["signal"] == "span"
        assert envelope["span_id"] == span_id
        assert envelope["status"] == "OK"
        assert envelope["duration_ms"] == 250.0
        assert envelope["attributes"] == {"amount": "12.50", "http.status_code": "200"}

    def test_close_twice_emits_once(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        span_id = telemetry.start_span("op")
        telemetry.end_span(span_id)
        telemetry.end_span(span_id, SpanStatus.ERROR)

        assert emitted_signals(telemetry) == ["span"]
        span = telemetry.recorder.get_span(span_id or "")
        assert span is not None and span.status == SpanStatus.OK
        assert diagnostics.count() == 0

    def test_unknown_span_is_noop(self, telemetry: Telemetry) -> None:
        telemetry.end_span(new_span_id())
        telemetry.end_span(None)
        assert emitted(telemetry) == []

    @pytest.mark.parametrize(("given", "expected"), [("error", SpanStatus.ERROR), (" ok ", SpanStatus.OK)])
    def test_status_strings(self, telemetry: Telemetry, given: str, expected: SpanStatus) -> None:
        span_id = telemetry.start_span("op")
        telemetry.end_span(span_id, given)
        span = telemetry.recorder.get_span(span_id or "")
        assert span is not None and span.status == expected

    def test_unknown_status_recorded_as_unset(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        span_id = telemetry.start_span("op")
        telemetry.end_span(span_id, "MAYBE")

        span = telemetry.recorder.get_span(span_id or "")
        assert span is not None and span.status == SpanStatus.UNSET
        assert codes(diagnostics) == ["INVALID_STATUS"]


class TestEvents:
    def test_event_on_open_span(self, telemetry: Telemetry) -> None:
        trace_id = telemetry.start_trace("checkout")
        span_id = telemetry.start_span("lookup")
        telemetry.add_event(span_id, "cache.miss", {"key": "sku-1"})

        [event] = telemetry.recorder.list_events(span_id or "")
        assert event.name == "cache.miss"
        envelope = emitted(telemetry)[-1]
        assert envelope["signal"] == "event"
        assert envelope["trace_id"] == trace_id
        assert envelope["attributes"] == {"key": "sku-1"}

    def test_event_on_closed_span_ignored(self, telemetry: Telemetry) -> None:
        span_id = telemetry.start_span("lookup")
        telemetry.end_span(span_id)
        telemetry.add_event(span_id, "late")

        assert telemetry.recorder.list_events(span_id or "") == []
        assert emitted_signals(telemetry) == ["span"]


class TestMetrics:
    def test_correlated_to_current_span(self, telemetry: Telemetry) -> None:
        trace_id = telemetry.start_trace("checkout")
        span_id = telemetry.start_span("charge")
        telemetry.log_metric("charge.amount", 12.5, "EUR", {"currency": "EUR"})

        [metric] = telemetry.recorder.list_metrics("charge.amount")
        assert metric.trace_id == trace_id
        assert metric.span_id == span_id
        assert emitted(telemetry)[-1]["value"] == 12.5

    def test_uncorrelated_on_request(self, telemetry: Telemetry) -> None:
        telemetry.start_span("charge")
        telemetry.log_metric("queue.depth", 4, "1", correlate_to_trace=False)
        [metric] = telemetry.recorder.list_metrics("queue.depth")
        assert metric.trace_id is None and metric.span_id is None
        assert metric.value == 4.0

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), True, "12"])
    def test_invalid_value_is_usage_error(self, telemetry: Telemetry, diagnostics: DiagnosticChannel, value: Any) -> None:
        telemetry.log_metric("bad", value, "1")
        assert telemetry.recorder.list_metrics("bad") == []
        assert codes(diagnostics) == ["INVALID_METRIC"]

    def test_undecodable_name_and_span_operation(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        span_id = telemetry.start_span("read \udcff")
        telemetry.log_metric("bytes.\udcff", 10, "By\udcff")
        telemetry.end_span(span_id)

        [metric] = telemetry.recorder.list_metrics("bytes.\ufffd")
        assert metric.unit == "By\ufffd"
        span = telemetry.recorder.get_span(span_id or "")
        assert span is not None and span.operation == "read \ufffd"
        assert emitted_signals(telemetry) == ["metric", "span"]
        assert codes(diagnostics) == []


class TestLogs:
    def test_log_message_correlated(self, telemetry: Telemetry) -> None:
        trace_id = telemetry.start_trace("checkout")
        span_id = telemetry.start_span("charge")
        telemetry.log_message(LogLevel.WARN, "card declined", source="payments.gateway")

        [log] = telemetry.recorder.list_logs(trace_id)
        assert log.span_id == span_id
        assert log.attributes == {semconv.SOURCE: "payments.gateway"}

    @pytest.mark.parametrize(("given", "expected"), [("warning", LogLevel.WARN), ("CRITICAL", LogLevel.FATAL), ("debug", LogLevel.DEBUG)])
    def test_level_strings_and_aliases(self, telemetry: Telemetry, given: str, expected: LogLevel) -> None:
        telemetry.log_message(given, "hello")
        [log] = telemetry.recorder.list_logs()
        assert log.level == expected

    def test_unknown_level_recorded_as_info(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        telemetry.log_message("verbose", "hello")
        [log] = telemetry.recorder.list_logs()
        assert log.level == LogLevel.INFO
        assert codes(diagnostics) == ["INVALID_LEVEL"]

    def test_log_distributed(self, telemetry: Telemetry) -> None:
        foreign = new_trace_id()
        telemetry.log_distributed(foreign, "error", "upstream timeout", system="inventory-api")

        [log] = telemetry.recorder.list_logs(foreign)
        assert log.level == LogLevel.ERROR
        assert log.span_id is None
        assert log.attributes == {semconv.SYSTEM_NAME: "inventory-api"}

    def test_log_distributed_invalid_trace(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        telemetry.log_distributed("not-a-trace", LogLevel.INFO, "hello")
        [log] = telemetry.recorder.list_logs()
        assert log.trace_id is None
        assert codes(diagnostics) == ["INVALID_TRACE_ID"]

    def test_undecodable_text_is_stored_and_queued(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        telemetry.log_message("ERROR", "file not found: /tmp/\udcff.txt", source="loader\udcff")

        [log] = telemetry.recorder.list_logs()
        assert log.message == "file not found: /tmp/\ufffd.txt"
        assert log.attributes == {semconv.SOURCE: "loader\ufffd"}
        [envelope] = emitted(telemetry)
        assert envelope["message"] == "file not found: /tmp/\ufffd.txt"
        assert codes(diagnostics) == []


class TestDistributedTrace:
    def test_continues_incoming_trace(self, telemetry: Telemetry) -> None:
        incoming_trace, incoming_parent = new_trace_id(), new_span_id()

        span_id = telemetry.continue_distributed_trace(incoming_trace, "handle_order", parent_span_id=incoming_parent)

        assert telemetry.get_current_trace_id() == incoming_trace
        assert telemetry.get_current_span_id() == span_id
        span = telemetry.recorder.get_span(span_id or "")
        assert span is not None
        assert span.trace_id == incoming_trace
        assert span.parent_span_id == incoming_parent
        assert telemetry.recorder.get_trace(incoming_trace) is not None

        telemetry.end_span(span_id)
        envelope = emitted(telemetry)[-1]
        assert envelope["parent_span_id"] == incoming_parent

    def test_existing_trace_row_reused(self, telemetry: Telemetry) -> None:
        trace_id = telemetry.start_trace("local")
        telemetry.continue_distributed_trace(trace_id or "", "callback")
        trace = telemetry.recorder.get_trace(trace_id or "")
        assert trace is not None and trace.operation == "local"

    def test_invalid_ids_replaced(self, telemetry: Telemetry, diagnostics: DiagnosticChannel) -> None:
        telemetry.continue_distributed_trace("XYZ", "handle", parent_span_id="short")

        trace_id = telemetry.get_current_trace_id()
        assert trace_id is not None and trace_id != "XYZ" and is_valid_trace_id(trace_id)
        span = telemetry.recorder.get_span(telemetry.get_current_span_id() or "")
        assert span is not None and span.parent_span_id is None
        assert codes(diagnostics) == ["INVALID_TRACE_ID", "INVALID_SPAN_ID"]


class TestSampling:
    @pytest.fixture
    def sampled_telemetry(self, db: TelemetryDB, diagnostics: DiagnosticChannel) -> Telemetry:
        return make_telemetry(
            db,
            diagnostics=diagnostics,
            activation=[
                {"signal": "trace", "pattern": "*"},
                {"signal": "trace", "pattern": "healthcheck", "enabled": False},
            ],
        )

    def test_unsampled_trace_records_nothing(self, sampled_telemetry: Telemetry) -> None:
        trace_id = sampled_telemetry.start_trace("healthcheck")
        span_id = sampled_telemetry.start_span("ping")

        assert trace_id is not None and is_valid_trace_id(trace_id)
        assert span_id is not None and is_valid_span_id(span_id)
        assert sampled_telemetry.recorder.get_trace(trace_id) is None
        assert sampled_telemetry.recorder.get_span(span_id) is None
        assert sampled_telemetry.get_current_span_id() is None

        sampled_telemetry.log_message("info", "ping ok")
        [log] = sampled_telemetry.recorder.list_logs()
        assert log.trace_id is None

        sampled_telemetry.end_span(span_id)
        sampled_telemetry.end_trace(trace_id)
        assert emitted_signals(sampled_telemetry) == ["log"]

    def test_other_operations_still_sampled(self, sampled_telemetry: Telemetry) -> None:
        trace_id = sampled_telemetry.start_trace("checkout")
        assert sampled_telemetry.recorder.get_trace(trace_id or "") is not None

    def test_metric_rules(self, db: TelemetryDB, diagnostics: DiagnosticChannel) -> None:
        telemetry = make_telemetry(db, diagnostics=diagnostics, activation=[{"signal": "metric", "pattern": "business.*"}])
        telemetry.log_metric("business.orders", 1, "1")
        telemetry.log_metric("runtime.gc", 1, "1")
        assert [m.name for m in telemetry.recorder.list_metrics()] == ["business.orders"]


class TestSyncMode:
    def test_success_exports_inline(self, db: TelemetryDB, diagnostics: DiagnosticChannel) -> None:
        exporter = RecordingExporter()
        telemetry = make_telemetry(db, exporter=exporter, diagnostics=diagnostics, mode=DeliveryMode.SYNC)

        telemetry.start_span("op")
        telemetry.end_span(telemetry.get_current_span_id())

        assert exporter.signals == [Signal.SPAN]
        assert telemetry.queue.stats().total == 0
        assert telemetry.flush() is not None and telemetry.flush().claimed == 0

    def test_failure_goes_to_dead_letters(self, db: TelemetryDB, diagnostics: DiagnosticChannel) -> None:
        exporter = RecordingExporter(default=DeliveryResult.failed("HTTP 503", status_code=503))
        telemetry = make_telemetry(db, exporter=exporter, diagnostics=diagnostics, mode=DeliveryMode.SYNC)

        telemetry.log_message("error", "payment failed")

        [record] = telemetry.queue.dead_letters.list_recent()
        assert record.retry_count == 1
        assert record.queue_id is None
        assert record.http_status == 503
        assert record.signal == Signal.LOG
        assert codes(diagnostics) == ["HTTP_503"]


class TestFailureIsolation:
    def test_internal_exception_becomes_diagnostic(
        self, telemetry: Telemetry, diagnostics: DiagnosticChannel, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def explode(span_id: str) -> None:
            raise RuntimeError("store offline")

        monkeypatch.setattr(telemetry.recorder, "get_span", explode)

        assert telemetry.add_event(new_span_id(), "x") is None
        [record] = diagnostics.list_recent()
        assert record.code == "INTERNAL_ERROR"
        assert record.module == "api.add_event"
        assert "store offline" in record.message

    def test_store_failure_still_returns_ids(
        self, telemetry: Telemetry, diagnostics: DiagnosticChannel, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def explode(*args: object, **kwargs: object) -> None:
            raise RuntimeError("disk full")

        monkeypatch.setattr(telemetry.recorder, "insert_trace", explode)

        trace_id = telemetry.start_trace("checkout")

        assert trace_id is not None and is_valid_trace_id(trace_id)
        assert codes(diagnostics) == ["STORE_ERROR"]

    def test_enqueue_failure_is_diagnostic(
        self, telemetry: Telemetry, diagnostics: DiagnosticChannel, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def explode(*args: object, **kwargs: object) -> int:
            raise RuntimeError("queue table locked")

        monkeypatch.setattr(telemetry.queue, "enqueue", explode)
        telemetry.log_message("info", "hello")
        assert codes(diagnostics) == ["ENQUEUE_FAILED"]


class TestContextManagers:
    def test_trace_and_span_blocks(self, telemetry: Telemetry) -> None:
        with telemetry.trace("checkout") as trace_id, telemetry.span("charge") as span_id:
            assert telemetry.get_current_span_id() == span_id
            assert telemetry.get_current_trace_id() == trace_id

        assert telemetry.get_current_trace_id() is None
        assert emitted_signals(telemetry) == ["span", "trace"]

    def test_exception_propagates_and_marks_error(self, telemetry: Telemetry) -> None:
        class PaymentDeclined(Exception):
            pass

        with pytest.raises(PaymentDeclined, match="insufficient funds"):
            with telemetry.trace("checkout"), telemetry.span("charge"):
                raise PaymentDeclined("insufficient funds")

        span_envelope, trace_envelope = emitted(telemetry)
        assert span_envelope["status"] == "ERROR"
        assert span_envelope["attributes"][semconv.ERROR_TYPE] == "PaymentDeclined"
        assert span_envelope["attributes"][semconv.ERROR_MESSAGE] == "insufficient funds"
        assert trace_envelope["attributes"][semconv.ERROR_TYPE] == "PaymentDeclined"

    @pytest.fixture
    def failing_operation(self, monkeypatch: pytest.MonkeyPatch) -> str:
        """An operation name whose trace or span cannot be started."""
        def refuse(value: str) -> str:
            if value == "unstartable":
                raise RuntimeError("cannot start")
            return clean_text(value)

        monkeypatch.setattr("telemark.api.clean_text", refuse)
        return "unstartable"

    def test_failed_nested_trace_leaves_enclosing_trace_open(
        self, telemetry: Telemetry, diagnostics: DiagnosticChannel, failing_operation: str
    ) -> None:
        outer = telemetry.start_trace("request")

        with telemetry.trace(failing_operation) as trace_id:
            assert trace_id is None
            assert telemetry.get_current_trace_id() == outer

        assert telemetry.get_current_trace_id() == outer
        trace = telemetry.recorder.get_trace(outer or "")
        assert trace is not None and trace.end_time is None
        assert emitted_signals(telemetry) == []
        assert codes(diagnostics) == ["INTERNAL_ERROR"]

    def test_failed_nested_trace_reraises_without_closing_enclosing(
        self, telemetry: Telemetry, failing_operation: str
    ) -> None:
        outer = telemetry.start_trace("request")

        with pytest.raises(KeyError):
            with telemetry.trace(failing_operation):
                raise KeyError("sku")

        assert telemetry.get_current_trace_id() == outer
        assert emitted_signals(telemetry) == []

    def test_failed_span_leaves_enclosing_span_current(
        self, telemetry: Telemetry, diagnostics: DiagnosticChannel, failing_operation: str
    ) -> None:
        telemetry.start_trace("request")
        outer = telemetry.start_span("handler")

        with telemetry.span(failing_operation) as span_id:
            assert span_id is None

        assert telemetry.get_current_span_id() == outer
        assert emitted_signals(telemetry) == []
        assert codes(diagnostics) == ["INTERNAL_ERROR"]


class TestLifecycle:
    def test_flush_drains_queue_in_order(self, telemetry: Telemetry, exporter: RecordingExporter) -> None:
        with telemetry.trace("checkout"), telemetry.span("charge"):
            telemetry.log_metric("charge.amount", 10, "EUR")

        batch = telemetry.flush()

        assert batch is not None and batch.delivered == 3
        assert exporter.signals == [Signal.METRIC, Signal.SPAN, Signal.TRACE]
        assert telemetry.queue.stats().pending == 0

    def test_close_is_idempotent(self, db: TelemetryDB, diagnostics: DiagnosticChannel) -> None:
        exporter = RecordingExporter()
        telemetry = make_telemetry(db, exporter=exporter, diagnostics=diagnostics)
        with telemetry:
            pass
        telemetry.close()
        assert exporter.closed
