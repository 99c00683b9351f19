"""Producer-facing telemetry API.

``Telemetry`` is the one object application code talks to. It records
traces, spans, events, metrics and logs in the store, builds an envelope
for every completed unit and hands it to delivery (synchronous export or
the durable queue, per ``delivery.mode``).

Failure model:

- Internal steps return ``InternalFault`` values which are routed to the
  diagnostic channel; they never surface to the caller.
- Every public method is wrapped by ``_boundary``, the outermost guard that
  converts anything unexpected into a fault.
- Exceptions raised by application code inside ``trace()``/``span()``
  blocks propagate unchanged.

Usage errors (closing an unknown span, an unknown status string, a
non-finite metric value) are diagnostics too, never exceptions.
"""

from __future__ import annotations

import functools
import math
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, ParamSpec, Self, TypeVar

import httpx
import structlog

from telemark.bridge.factory import create_exporter
from telemark.bridge.protocols import ExporterProtocol
from telemark.contracts import semconv
from telemark.contracts.enums import DeliveryMode, LogLevel, SpanStatus
from telemark.contracts.envelopes import (
    Envelope,
    EventEnvelope,
    LogEnvelope,
    MetricEnvelope,
    SpanEnvelope,
    TraceEnvelope,
    envelope_to_json,
)
from telemark.contracts.results import InternalFault
from telemark.core.activation import ActivationPolicy
from telemark.core.attributes import AttributeSource, clean_text, merge_attributes
from telemark.core.config import TelemarkSettings
from telemark.core.context import ContextStore
from telemark.core.identifiers import is_valid_span_id, is_valid_trace_id, new_span_id, new_trace_id
from telemark.core.store._helpers import now as utc_now
from telemark.core.store.database import TelemetryDB
from telemark.core.store.recorder import StoreRecorder
from telemark.delivery.queue import DeliveryQueue
from telemark.delivery.worker import BatchResult, QueueWorker
from telemark.diagnostics.channel import DiagnosticChannel

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

_LEVEL_ALIASES = {"WARNING": LogLevel.WARN, "CRITICAL": LogLevel.FATAL}


def _boundary(method: Callable[P, R]) -> Callable[P, R | None]:
    """Outermost guard for public Telemetry methods.

    Unexpected exceptions become an InternalFault on the diagnostic channel
    and the method returns None.
    """

    @functools.wraps(method)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | None:
        self = args[0]
        assert isinstance(self, Telemetry)
        try:
            return method(*args, **kwargs)
        except Exception as e:
            ctx = self._context.snapshot()
            self._report(
                InternalFault.from_exception(
                    f"api.{method.__name__}",
                    e,
                    code="INTERNAL_ERROR",
                    trace_id=ctx.trace_id,
                    span_id=ctx.span_id,
                )
            )
            return None

    return wrapper


class Telemetry:
    """In-process telemetry recorder with durable export.

    Args:
        settings: Full configuration; defaults to ``TelemarkSettings()``
        db: Telemetry store (default: opened from ``settings.store.url``)
        exporter: Exporter used for delivery (default: built from settings
            through plugin discovery)
        diagnostics: Diagnostic channel (default: on the store's engine or
            ``settings.diagnostics.url``)
        clock: Returns the current UTC time; injectable for tests
        client: httpx.Client handed to HTTP exporters (tests)

    Raises:
        ExporterConfigurationError: If the configured exporter is unknown or
            its configuration is invalid. Construction is the only place
            the SDK raises.

    Example:
        >>> telemetry = Telemetry(TelemarkSettings(), db=TelemetryDB.in_memory())
        >>> with telemetry.trace("checkout"):
        ...     with telemetry.span("charge_card"):
        ...         telemetry.log_metric("charge.amount", 12.5, "EUR")
    """

    def __init__(
        self,
        settings: TelemarkSettings | None = None,
        *,
        db: TelemetryDB | None = None,
        exporter: ExporterProtocol | None = None,
        diagnostics: DiagnosticChannel | None = None,
        clock: Callable[[], datetime] | None = None,
        exporter_plugins: tuple[Any, ...] = (),
        client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings or TelemarkSettings()
        self._owns_db = db is None
        self._db = db or TelemetryDB.from_url(self._settings.store.url, echo=self._settings.store.echo)
        self._owns_diagnostics = diagnostics is None
        self._diagnostics = diagnostics or DiagnosticChannel(
            self._db,
            url=self._settings.diagnostics.url,
            mirror_to_log=self._settings.diagnostics.mirror_to_log,
            debug=self._settings.debug,
        )
        self._exporter = exporter or create_exporter(
            self._settings, exporter_plugins=exporter_plugins, client=client
        )
        self._clock = clock or utc_now
        self._recorder = StoreRecorder(self._db)
        self._context = ContextStore()
        self._activation = ActivationPolicy(self._settings.activation, clock=self._clock)
        delivery = self._settings.delivery
        self._queue = DeliveryQueue(
            self._db,
            max_attempts=delivery.max_attempts,
            lease_seconds=delivery.claim_lease_seconds,
        )
        self._worker: QueueWorker | None = None
        self._closed = False

    # === Accessors ===

    @property
    def settings(self) -> TelemarkSettings:
        return self._settings

    @property
    def recorder(self) -> StoreRecorder:
        return self._recorder

    @property
    def queue(self) -> DeliveryQueue:
        return self._queue

    @property
    def diagnostics(self) -> DiagnosticChannel:
        return self._diagnostics

    @property
    def exporter(self) -> ExporterProtocol:
        return self._exporter

    @property
    def worker(self) -> QueueWorker:
        """Queue worker bound to this instance's queue and exporter."""
        if self._worker is None:
            self._worker = QueueWorker(
                self._queue,
                self._exporter,
                self._diagnostics,
                batch_size=self._settings.delivery.batch_size,
                dead_letter_policy=self._settings.delivery.dead_letter_policy,
            )
        return self._worker

    # === Internal plumbing ===

    def _report(self, fault: InternalFault | None) -> None:
        if fault is not None:
            self._diagnostics.record_fault(fault)

    def _usage_error(self, module: str, message: str, code: str) -> None:
        ctx = self._context.snapshot()
        self._report(InternalFault(module=module, message=message, code=code, trace_id=ctx.trace_id, span_id=ctx.span_id))

    def _guard(self, module: str, step: Callable[[], Any]) -> InternalFault | None:
        """Run one store step, returning a fault instead of raising."""
        try:
            step()
        except Exception as e:
            ctx = self._context.snapshot()
            return InternalFault.from_exception(module, e, code="STORE_ERROR", trace_id=ctx.trace_id, span_id=ctx.span_id)
        return None

    def _deliver(self, envelope: Envelope) -> InternalFault | None:
        """Hand one envelope to delivery.

        Async mode only enqueues (the worker retries). Sync mode makes one
        attempt; on failure the envelope goes straight to the dead-letter
        store since there is no retry path.
        """
        payload = envelope_to_json(envelope)
        if self._settings.delivery.mode == DeliveryMode.ASYNC:
            self._queue.enqueue(payload, envelope.signal)
            return None

        result = self._exporter.export(payload, envelope.signal)
        if result.success:
            return None
        error = result.error or "delivery failed"
        self._queue.dead_letters.record(payload, envelope.signal, error, 1, http_status=result.status_code)
        code = f"HTTP_{result.status_code}" if result.status_code is not None else "DELIVERY_FAILED"
        return InternalFault(
            module="api.delivery",
            message=f"synchronous delivery of {envelope.signal.value} failed: {error}",
            code=code,
            trace_id=getattr(envelope, "trace_id", None),
            span_id=getattr(envelope, "span_id", None),
        )

    def _emit(self, envelope: Envelope) -> None:
        try:
            fault = self._deliver(envelope)
        except Exception as e:
            fault = InternalFault.from_exception(
                "api.delivery",
                e,
                code="ENQUEUE_FAILED",
                trace_id=getattr(envelope, "trace_id", None),
                span_id=getattr(envelope, "span_id", None),
            )
        self._report(fault)

    def _tenant(self, tenant_id: str | None = None) -> str | None:
        return tenant_id or self._context.get_current_tenant() or self._settings.service.tenant_id

    def _begin_trace(self, operation: str, tenant_id: str | None, attributes: AttributeSource) -> str:
        operation = clean_text(operation)
        trace_id = new_trace_id()
        tenant = tenant_id or self._settings.service.tenant_id
        sampled = self._activation.should_trace(operation, tenant)
        self._context.set_current(trace_id, None, tenant_id=tenant, sampled=sampled)
        if not sampled:
            return trace_id
        attrs = merge_attributes(attributes)
        self._report(
            self._guard(
                "api.start_trace",
                lambda: self._recorder.insert_trace(
                    trace_id,
                    operation,
                    self._settings.service.name,
                    self._clock(),
                    tenant_id=tenant,
                    attributes=attrs,
                ),
            )
        )
        return trace_id

    def _parse_status(self, status: SpanStatus | str) -> SpanStatus:
        if isinstance(status, SpanStatus):
            return status
        try:
            return SpanStatus(str(status).strip().upper())
        except ValueError:
            self._usage_error("api.end_span", f"unknown span status {status!r}; recorded as UNSET", "INVALID_STATUS")
            return SpanStatus.UNSET

    def _parse_level(self, level: LogLevel | str, module: str) -> LogLevel:
        if isinstance(level, LogLevel):
            return level
        normalized = str(level).strip().upper()
        if normalized in _LEVEL_ALIASES:
            return _LEVEL_ALIASES[normalized]
        try:
            return LogLevel(normalized)
        except ValueError:
            self._usage_error(module, f"unknown log level {level!r}; recorded as INFO", "INVALID_LEVEL")
            return LogLevel.INFO

    def _open_ancestor(self, parent_span_id: str | None) -> str | None:
        """Nearest still-open span walking up from ``parent_span_id``."""
        seen: set[str] = set()
        while parent_span_id is not None and parent_span_id not in seen:
            seen.add(parent_span_id)
            parent = self._recorder.get_span(parent_span_id)
            if parent is None:
                return None
            if not parent.is_closed:
                return parent.span_id
            parent_span_id = parent.parent_span_id
        return None

    # === Traces ===

    @_boundary
    def start_trace(
        self,
        operation: str,
        *,
        tenant_id: str | None = None,
        attributes: AttributeSource = None,
    ) -> str:
        """Begin a new trace and make it current (with no current span).

        Returns:
            The new 32-hex-char trace id. Returned even when the trace is
            not sampled or could not be stored.
        """
        return self._begin_trace(operation, tenant_id, attributes)

    @_boundary
    def end_trace(self, trace_id: str | None = None, attributes: AttributeSource = None) -> None:
        """Close a trace (default: the current one).

        Unknown or already-closed traces are a no-op. Ending the current
        trace clears the session context.
        """
        target = trace_id or self._context.get_current_trace()
        if target is None:
            return
        try:
            trace = self._recorder.close_trace(target, self._clock(), merge_attributes(attributes))
        finally:
            if target == self._context.get_current_trace():
                self._context.clear()
        if trace is None or trace.end_time is None:
            return
        self._emit(
            TraceEnvelope(
                trace_id=trace.trace_id,
                operation=trace.operation,
                service_name=trace.service_name,
                start_time=trace.start_time,
                end_time=trace.end_time,
                tenant_id=trace.tenant_id,
                attributes=trace.attributes,
            )
        )

    @_boundary
    def continue_distributed_trace(
        self,
        trace_id: str,
        operation: str,
        *,
        parent_span_id: str | None = None,
        tenant_id: str | None = None,
    ) -> str:
        """Adopt a trace id from another process and start a span in it.

        The local trace row is created when absent. An invalid incoming
        trace id is replaced by a fresh one; an invalid parent span id is
        dropped. Both are recorded as diagnostics.

        Returns:
            The new span id, now current.
        """
        if not is_valid_trace_id(trace_id):
            self._usage_error(
                "api.continue_distributed_trace",
                f"invalid incoming trace id {trace_id!r}; starting a fresh trace",
                "INVALID_TRACE_ID",
            )
            trace_id = new_trace_id()
        if parent_span_id is not None and not is_valid_span_id(parent_span_id):
            self._usage_error(
                "api.continue_distributed_trace",
                f"invalid incoming parent span id {parent_span_id!r}; ignored",
                "INVALID_SPAN_ID",
            )
            parent_span_id = None

        operation = clean_text(operation)
        tenant = tenant_id or self._settings.service.tenant_id
        sampled = self._activation.should_trace(operation, tenant)
        span_id = new_span_id()
        self._context.set_current(trace_id, span_id, tenant_id=tenant, sampled=sampled)
        if not sampled:
            return span_id

        def _record() -> None:
            started = self._clock()
            if self._recorder.get_trace(trace_id) is None:
                self._recorder.insert_trace(
                    trace_id,
                    operation,
                    self._settings.service.name,
                    started,
                    tenant_id=tenant,
                )
            self._recorder.insert_span(
                span_id,
                trace_id,
                operation,
                started,
                parent_span_id=parent_span_id,
                tenant_id=tenant,
            )

        self._report(self._guard("api.continue_distributed_trace", _record))
        return span_id

    # === Spans ===

    @_boundary
    def start_span(
        self,
        operation: str,
        parent_span_id: str | None = None,
        trace_id: str | None = None,
        *,
        attributes: AttributeSource = None,
    ) -> str:
        """Open a span and make it current.

        Resolution:
            - An explicit parent that exists decides the trace (a different
              explicit trace_id is a recorded mismatch).
            - An explicit parent that does not exist is recorded as a usage
              error; the span is created without a parent (in the current
              trace unless trace_id is given).
            - Otherwise the current span is the implicit parent when the span
              joins the current trace.
            - With no trace anywhere a trace is started implicitly, named
              after the span.

        Returns:
            The new 16-hex-char span id.
        """
        operation = clean_text(operation)
        ctx = self._context.snapshot()
        resolved_trace = trace_id
        parent_id: str | None = None

        if parent_span_id is not None:
            parent = self._recorder.get_span(parent_span_id)
            if parent is None:
                self._usage_error(
                    "api.start_span",
                    f"unknown parent span {parent_span_id}; span {operation!r} created without parent",
                    "UNKNOWN_PARENT",
                )
                if trace_id is None:
                    resolved_trace = ctx.trace_id
            else:
                if trace_id is not None and trace_id != parent.trace_id:
                    self._usage_error(
                        "api.start_span",
                        f"trace {trace_id} does not match parent span trace {parent.trace_id}; using parent's",
                        "TRACE_MISMATCH",
                    )
                resolved_trace = parent.trace_id
                parent_id = parent.span_id
        elif trace_id is None or trace_id == ctx.trace_id:
            resolved_trace = ctx.trace_id
            parent_id = ctx.span_id

        if resolved_trace is None:
            resolved_trace = self._begin_trace(operation, None, None)
            ctx = self._context.snapshot()

        span_id = new_span_id()
        if resolved_trace == ctx.trace_id:
            if not ctx.sampled:
                return span_id
            tenant = ctx.tenant_id
        else:
            known = self._recorder.get_trace(resolved_trace)
            if known is None:
                self._usage_error(
                    "api.start_span",
                    f"unknown trace {resolved_trace}; span {operation!r} not recorded",
                    "UNKNOWN_TRACE",
                )
                return span_id
            tenant = known.tenant_id

        attrs = merge_attributes(attributes)
        fault = self._guard(
            "api.start_span",
            lambda: self._recorder.insert_span(
                span_id,
                resolved_trace,
                operation,
                self._clock(),
                parent_span_id=parent_id,
                tenant_id=tenant,
                attributes=attrs,
            ),
        )
        if fault is not None:
            self._report(fault)
            return span_id
        self._context.set_current(resolved_trace, span_id, tenant_id=tenant, sampled=True)
        return span_id

    @_boundary
    def end_span(
        self,
        span_id: str | None,
        status: SpanStatus | str = SpanStatus.OK,
        attributes: AttributeSource = None,
    ) -> None:
        """Close a span with a status.

        Unknown or already-closed spans are a no-op. When the span is the
        current one, its nearest open ancestor becomes current again.
        """
        if span_id is None:
            return
        span_status = self._parse_status(status)
        span = self._recorder.close_span(span_id, self._clock(), span_status, merge_attributes(attributes))
        if span is None:
            logger.debug("end_span ignored: unknown or already closed", span_id=span_id)
            return
        if self._context.get_current_span() == span_id:
            self._context.set_current_span(self._open_ancestor(span.parent_span_id))
        assert span.end_time is not None
        self._emit(
            SpanEnvelope(
                trace_id=span.trace_id,
                span_id=span.span_id,
                operation=span.operation,
                start_time=span.start_time,
                end_time=span.end_time,
                status=span.status,
                parent_span_id=span.parent_span_id,
                duration_ms=span.duration_ms,
                tenant_id=span.tenant_id,
                attributes=span.attributes,
            )
        )

    @_boundary
    def add_event(self, span_id: str | None, name: str, attributes: AttributeSource = None) -> None:
        """Attach a point-in-time event to an open span; otherwise a no-op."""
        if span_id is None:
            return
        span = self._recorder.get_span(span_id)
        if span is None or span.is_closed:
            logger.debug("add_event ignored: span unknown or closed", span_id=span_id, event=name)
            return
        event = self._recorder.insert_event(span_id, clean_text(name), self._clock(), merge_attributes(attributes))
        self._emit(
            EventEnvelope(
                trace_id=span.trace_id,
                span_id=span_id,
                name=event.name,
                timestamp=event.timestamp,
                attributes=event.attributes,
            )
        )

    # === Metrics and logs ===

    @_boundary
    def log_metric(
        self,
        name: str,
        value: float,
        unit: str,
        attributes: AttributeSource = None,
        correlate_to_trace: bool = True,
    ) -> None:
        """Record a numeric measurement, correlated to the current span by default."""
        if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
            self._usage_error("api.log_metric", f"metric {name!r} has invalid value {value!r}", "INVALID_METRIC")
            return
        tenant = self._tenant()
        if not self._activation.should_record_metric(name, tenant):
            return
        ctx = self._context.snapshot()
        correlated = correlate_to_trace and ctx.sampled
        trace_id = ctx.trace_id if correlated else None
        span_id = ctx.span_id if correlated else None
        metric = self._recorder.insert_metric(
            clean_text(name),
            float(value),
            clean_text(unit),
            self._clock(),
            trace_id=trace_id,
            span_id=span_id,
            tenant_id=tenant,
            attributes=merge_attributes(attributes),
        )
        self._emit(
            MetricEnvelope(
                name=metric.name,
                value=metric.value,
                unit=metric.unit,
                timestamp=metric.timestamp,
                trace_id=metric.trace_id,
                span_id=metric.span_id,
                tenant_id=metric.tenant_id,
                attributes=metric.attributes,
            )
        )

    def _record_log(
        self,
        level: LogLevel,
        message: str,
        *,
        trace_id: str | None,
        span_id: str | None,
        tenant_id: str | None,
        attributes: dict[str, str],
    ) -> None:
        record = self._recorder.insert_log(
            level,
            clean_text(message),
            self._clock(),
            trace_id=trace_id,
            span_id=span_id,
            tenant_id=tenant_id,
            attributes=attributes,
        )
        self._emit(
            LogEnvelope(
                level=record.level,
                message=record.message,
                timestamp=record.timestamp,
                trace_id=record.trace_id,
                span_id=record.span_id,
                tenant_id=record.tenant_id,
                attributes=record.attributes,
            )
        )

    @_boundary
    def log_message(
        self,
        level: LogLevel | str,
        text: str,
        attributes: AttributeSource = None,
        *,
        source: str | None = None,
    ) -> None:
        """Record a log line correlated to the current trace and span."""
        log_level = self._parse_level(level, "api.log_message")
        tenant = self._tenant()
        if not self._activation.should_log(log_level, source, tenant):
            return
        ctx = self._context.snapshot()
        correlated = ctx.sampled
        self._record_log(
            log_level,
            text,
            trace_id=ctx.trace_id if correlated else None,
            span_id=ctx.span_id if correlated else None,
            tenant_id=tenant,
            attributes=merge_attributes(attributes, {semconv.SOURCE: source}),
        )

    @_boundary
    def log_distributed(
        self,
        trace_id: str,
        level: LogLevel | str,
        message: str,
        *,
        system: str | None = None,
        attributes: AttributeSource = None,
    ) -> None:
        """Record a log line correlated to an explicit (possibly foreign) trace."""
        log_level = self._parse_level(level, "api.log_distributed")
        if not is_valid_trace_id(trace_id):
            self._usage_error(
                "api.log_distributed",
                f"invalid trace id {trace_id!r}; log recorded uncorrelated",
                "INVALID_TRACE_ID",
            )
            correlated_trace = None
        else:
            correlated_trace = trace_id
        self._record_log(
            log_level,
            message,
            trace_id=correlated_trace,
            span_id=None,
            tenant_id=self._tenant(),
            attributes=merge_attributes(attributes, {semconv.SYSTEM_NAME: system}),
        )

    # === Context ===

    def get_current_trace_id(self) -> str | None:
        return self._context.get_current_trace()

    def get_current_span_id(self) -> str | None:
        return self._context.get_current_span()

    def clear_trace_context(self) -> None:
        self._context.clear()

    @contextmanager
    def trace(self, operation: str, *, tenant_id: str | None = None, attributes: AttributeSource = None) -> Iterator[str | None]:
        """Run a block inside a new trace.

        The block's exception is re-raised untouched after the trace is
        closed with error.type/error.message attributes. If the trace could
        not be started the block still runs and no trace is closed, so an
        enclosing trace stays current.
        """
        trace_id = self.start_trace(operation, tenant_id=tenant_id, attributes=attributes)
        try:
            yield trace_id
        except Exception as exc:
            if trace_id is not None:
                self.end_trace(trace_id, {semconv.ERROR_TYPE: type(exc).__name__, semconv.ERROR_MESSAGE: str(exc)})
            raise
        if trace_id is not None:
            self.end_trace(trace_id)

    @contextmanager
    def span(
        self,
        operation: str,
        *,
        parent_span_id: str | None = None,
        attributes: AttributeSource = None,
    ) -> Iterator[str | None]:
        """Run a block inside a span: OK on normal exit, ERROR if it raises."""
        span_id = self.start_span(operation, parent_span_id, attributes=attributes)
        try:
            yield span_id
        except Exception as exc:
            if span_id is not None:
                self.end_span(
                    span_id,
                    SpanStatus.ERROR,
                    {semconv.ERROR_TYPE: type(exc).__name__, semconv.ERROR_MESSAGE: str(exc)},
                )
            raise
        if span_id is not None:
            self.end_span(span_id, SpanStatus.OK)

    # === Delivery lifecycle ===

    @_boundary
    def flush(self) -> BatchResult:
        """Drain the delivery queue now (async mode). Sync mode has nothing queued."""
        if self._settings.delivery.mode == DeliveryMode.SYNC:
            return BatchResult()
        return self.worker.drain()

    def start_worker(self, interval: float | None = None) -> None:
        """Poll the queue on a background thread at a fixed interval."""
        self.worker.start(interval if interval is not None else self._settings.delivery.poll_interval_seconds)

    def close(self) -> None:
        """Stop the worker and release owned resources. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._worker is not None:
            self._worker.stop()
        self._exporter.close()
        if self._owns_diagnostics:
            self._diagnostics.close()
        if self._owns_db:
            self._db.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
