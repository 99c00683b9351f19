# tests/integration/test_scenarios.py
"""End-to-end scenarios: facade -> store -> queue -> worker -> OTLP bridge.

These wire real components together (file-backed SQLite store, the
plugin-discovered OTLP exporter, an httpx MockTransport standing in for
the collector) rather than the recording double used by unit tests.
"""

import json
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from telemark.api import Telemetry
from telemark.contracts.enums import Signal, SpanStatus
from telemark.core.store.database import TelemetryDB
from telemark.diagnostics.channel import DiagnosticChannel
from tests.fixtures.doubles import make_mock_client, make_settings, make_telemetry

pytestmark = pytest.mark.integration


class Collector:
    """OTLP collector stand-in; answers every request with ``status``."""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        return httpx.Response(self.status)

    def documents(self, path: str) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]


def spans_in(documents: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        span
        for document in documents
        for resource_spans in document["resourceSpans"]
        for scope_spans in resource_spans["scopeSpans"]
        for span in scope_spans["spans"]
    ]


@pytest.fixture
def store(tmp_path: Path) -> Iterator[TelemetryDB]:
    database = TelemetryDB.from_url(f"sqlite:///{tmp_path / 'telemetry.db'}")
    yield database
    database.close()


def open_telemetry(store: TelemetryDB, collector: Collector, **overrides: Any) -> Telemetry:
    """Telemetry with the real OTLP exporter talking to ``collector``."""
    return Telemetry(
        make_settings(**overrides),
        db=store,
        diagnostics=DiagnosticChannel(store, mirror_to_log=False),
        client=make_mock_client(collector),
    )


def test_single_span_trace_is_stored_and_exported(store: TelemetryDB) -> None:
    collector = Collector()
    telemetry = open_telemetry(store, collector)

    trace_id = telemetry.start_trace("checkout")
    span_id = telemetry.start_span("charge_card")
    telemetry.end_span(span_id, SpanStatus.OK)
    telemetry.end_trace()
    batch = telemetry.flush()
    telemetry.close()

    trace = telemetry.recorder.get_trace(trace_id or "")
    assert trace is not None and trace.end_time is not None
    [span] = telemetry.recorder.list_spans(trace_id or "")
    assert span.span_id == span_id
    assert span.status == SpanStatus.OK
    assert span.parent_span_id is None

    assert batch.delivered == 2
    exported = spans_in(collector.documents("/v1/traces"))
    assert {s["name"] for s in exported} == {"checkout", "charge_card"}
    assert {s["traceId"] for s in exported} == {trace_id}
    assert telemetry.queue.stats().pending == 0


def test_nested_spans_share_trace_and_link_parent(store: TelemetryDB) -> None:
    collector = Collector()
    telemetry = open_telemetry(store, collector)

    outer = telemetry.start_span("A")
    inner = telemetry.start_span("B", parent_span_id=outer)
    telemetry.end_span(inner)
    telemetry.end_span(outer)
    telemetry.end_trace()
    telemetry.flush()
    telemetry.close()

    a = telemetry.recorder.get_span(outer or "")
    b = telemetry.recorder.get_span(inner or "")
    assert a is not None and b is not None
    assert b.parent_span_id == a.span_id
    assert b.trace_id == a.trace_id
    assert b.end_time is not None and b.duration_ms is not None and b.duration_ms >= 0

    exported = {s["name"]: s for s in spans_in(collector.documents("/v1/traces"))}
    assert exported["B"]["parentSpanId"] == outer


def test_collector_outage_dead_letters_after_max_attempts(store: TelemetryDB) -> None:
    collector = Collector(status=503)
    telemetry = open_telemetry(store, collector, delivery={"max_attempts": 3})

    for i in range(5):
        telemetry.log_metric("queue.depth", i, "1", correlate_to_trace=False)
    assert telemetry.queue.stats().pending == 5

    batches = [telemetry.worker.process_batch() for _ in range(3)]
    telemetry.close()

    assert [b.failed for b in batches] == [5, 5, 5]
    assert batches[-1].dead_lettered == 5
    assert len(collector.requests) == 15

    entries = telemetry.queue.list_entries(limit=10)
    assert len(entries) == 5
    for entry in entries:
        assert entry.dead_lettered
        assert entry.attempt_count == 3
        [record] = telemetry.queue.dead_letters.for_queue_entry(entry.queue_id)
        assert record.retry_count == 3
        assert record.http_status == 503
        assert record.signal == Signal.METRIC

    # Terminal entries are never claimed again
    assert telemetry.worker.process_batch().claimed == 0


def test_recovered_collector_delivers_remaining_attempts(store: TelemetryDB) -> None:
    collector = Collector(status=503)
    telemetry = open_telemetry(store, collector, delivery={"max_attempts": 3})
    telemetry.log_message("ERROR", "payment gateway timeout")

    assert telemetry.worker.process_batch().failed == 1
    collector.status = 200
    assert telemetry.worker.process_batch().delivered == 1
    telemetry.close()

    assert telemetry.queue.dead_letters.count() == 0
    assert len(collector.documents("/v1/logs")) == 2


class CardDeclined(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def place_order(telemetry: Telemetry | None) -> None:
    if telemetry is not None:
        telemetry.start_span("place_order")
        telemetry.log_metric("order.total", 42.0, "EUR")
    raise CardDeclined("card declined by issuer", "DECLINED_51")


def test_business_exception_unchanged_when_store_is_broken(
    db: TelemetryDB, diagnostics: DiagnosticChannel, monkeypatch: pytest.MonkeyPatch
) -> None:
    telemetry = make_telemetry(db, diagnostics=diagnostics)

    def broken(*args: Any, **kwargs: Any) -> None:
        raise OperationalError("INSERT INTO spans", {}, Exception("database is locked"))

    monkeypatch.setattr(telemetry.recorder, "insert_span", broken)
    monkeypatch.setattr(telemetry.recorder, "insert_metric", broken)

    with pytest.raises(CardDeclined) as without:
        place_order(None)
    with pytest.raises(CardDeclined) as with_telemetry:
        place_order(telemetry)

    assert str(with_telemetry.value) == str(without.value)
    assert with_telemetry.value.code == without.value.code
    assert diagnostics.count(code="STORE_ERROR") == 1
    assert diagnostics.count(code="INTERNAL_ERROR") == 1
    telemetry.close()


def test_closed_store_never_raises_into_caller(db: TelemetryDB) -> None:
    telemetry = make_telemetry(db, diagnostics=DiagnosticChannel(db, mirror_to_log=False))
    db.close()

    assert telemetry.start_trace("checkout") is not None
    assert telemetry.start_span("charge_card") is not None
    telemetry.end_span(None)
    telemetry.log_message("INFO", "still running")
    telemetry.end_trace()

    with pytest.raises(CardDeclined, match="card declined by issuer"):
        place_order(telemetry)


def test_sessions_on_separate_threads_keep_their_own_hierarchy(store: TelemetryDB) -> None:
    """Two sessions interleave step by step; neither adopts the other's spans."""
    telemetry = open_telemetry(store, Collector())
    turns = [threading.Event() for _ in range(4)]
    results: dict[str, dict[str, Any]] = {}
    errors: list[BaseException] = []

    def session(name: str, wait_on: list[int], signal: list[int]) -> None:
        try:
            state: dict[str, Any] = {}
            if wait_on[0] >= 0:
                turns[wait_on[0]].wait(5)
            state["trace"] = telemetry.start_trace(f"{name}-request")
            state["outer"] = telemetry.start_span(f"{name}-outer")
            turns[signal[0]].set()
            turns[wait_on[1]].wait(5)
            state["inner"] = telemetry.start_span(f"{name}-inner")
            state["current_trace"] = telemetry.get_current_trace_id()
            telemetry.end_span(state["inner"])
            state["after_inner"] = telemetry.get_current_span_id()
            telemetry.end_span(state["outer"])
            telemetry.end_trace()
            turns[signal[1]].set()
            results[name] = state
        except BaseException as e:  # surfaced to the main thread below
            errors.append(e)

    # alpha: opens, yields to beta, resumes after beta opened, finishes, lets beta finish
    alpha = threading.Thread(target=session, args=("alpha", [-1, 1], [0, 2]))
    beta = threading.Thread(target=session, args=("beta", [0, 2], [1, 3]))
    alpha.start()
    beta.start()
    alpha.join(10)
    beta.join(10)
    telemetry.close()

    assert not errors
    for name in ("alpha", "beta"):
        state = results[name]
        assert state["current_trace"] == state["trace"]
        assert state["after_inner"] == state["outer"]
        inner = telemetry.recorder.get_span(state["inner"])
        assert inner is not None
        assert inner.parent_span_id == state["outer"]
        assert inner.trace_id == state["trace"]
    assert results["alpha"]["trace"] != results["beta"]["trace"]
