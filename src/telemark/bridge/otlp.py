"""OTLP/HTTP JSON exporter.

Translates generic envelopes into OTLP/JSON documents and POSTs them to
the collector's per-signal endpoint:

- trace  -> resourceSpans: a root span whose spanId is derived from the
            trace id (kind SERVER)
- span   -> resourceSpans: parentSpanId linkage, status OK=1 / ERROR=2,
            UNSET omitted
- event  -> resourceLogs: log record carrying ``event.name`` and the
            owning trace/span ids
- metric -> resourceMetrics: gauge data point (asDouble) with an exemplar
            carrying trace/span ids when correlated
- log    -> resourceLogs: log record with OTLP severity number

Ids travel unchanged (they are already lowercase hex). Timestamps become
``*UnixNano`` strings, exact to the microsecond.

Pipeline per attempt: extract fields -> build document -> serialize with
the adaptive buffer -> transport (simple or chunked). Every failure comes
back as a DeliveryResult; export() never raises.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from telemark.bridge.buffers import SerializedPayload, serialize_json
from telemark.bridge.errors import ExporterConfigurationError, SerializationError
from telemark.bridge.extraction import FieldExtractor, select_extractor
from telemark.bridge.transport import HttpTransport
from telemark.contracts import semconv
from telemark.contracts.enums import LogLevel, Signal, SignalEndpoint, SpanStatus
from telemark.contracts.envelopes import (
    Envelope,
    EnvelopeError,
    EventEnvelope,
    LogEnvelope,
    MetricEnvelope,
    SpanEnvelope,
    TraceEnvelope,
    envelope_from_fields,
)
from telemark.contracts.results import DeliveryResult
from telemark.core.config import ExporterSettings, ServiceSettings

logger = structlog.get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

SCOPE_NAME = "telemark"

# OTLP enums
SPAN_KIND_INTERNAL = 1
SPAN_KIND_SERVER = 2
STATUS_CODE_OK = 1
STATUS_CODE_ERROR = 2


def to_unix_nano(value: datetime) -> str:
    """Exact nanoseconds since the Unix epoch, as OTLP/JSON's string form."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    micros = (value - _EPOCH) // timedelta(microseconds=1)
    return str(micros * 1000)


def derive_root_span_id(trace_id: str) -> str:
    """Stable 64-bit span id for a trace's root span.

    Deterministic so that re-delivery of the same trace envelope produces
    the same span, which collectors can deduplicate.
    """
    return hashlib.sha256(f"root:{trace_id}".encode()).hexdigest()[:16]


def _instrumentation_scope() -> dict[str, Any]:
    from telemark import __version__

    return {"name": SCOPE_NAME, "version": __version__}


def _kv(key: str, value: str) -> dict[str, Any]:
    return {"key": key, "value": {"stringValue": value}}


def _attributes(attributes: dict[str, str], *extra: tuple[str, str | None]) -> list[dict[str, Any]]:
    merged = dict(attributes)
    for key, value in extra:
        if value is not None:
            merged.setdefault(key, value)
    return [_kv(k, v) for k, v in merged.items()]


class OTLPBridgeExporter:
    """Export envelopes as OTLP/JSON over HTTP.

    Configuration options (all keys of ExporterSettings, plus):
        service: dict of ServiceSettings fields for resource attribution
        client: optional pre-built httpx.Client (tests)

    Example configuration:
        exporter:
          name: otlp
          collector_url: http://otel-collector:4318
          api_key: ${OTEL_API_KEY}
          chunk_threshold_bytes: 32768
          json_parse_mode: auto
    """

    _name = "otlp"

    def __init__(self) -> None:
        self._settings = ExporterSettings()
        self._service = ServiceSettings()
        self._extractor: FieldExtractor = select_extractor(self._settings.json_parse_mode)
        self._transport: HttpTransport | None = None
        self._resource: dict[str, Any] = self._build_resource()
        self._scope: dict[str, Any] = _instrumentation_scope()
        self._exports = 0
        self._failures = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def extractor(self) -> FieldExtractor:
        return self._extractor

    @property
    def settings(self) -> ExporterSettings:
        return self._settings

    def configure(self, config: dict[str, Any]) -> None:
        """Configure endpoints, buffers, transport and resource attribution.

        Raises:
            ExporterConfigurationError: If settings fail validation
        """
        config = dict(config)
        client = config.pop("client", None)
        service = config.pop("service", {})
        if client is not None and not isinstance(client, httpx.Client):
            raise ExporterConfigurationError(self._name, f"'client' must be an httpx.Client, got {type(client).__name__}")
        try:
            self._settings = ExporterSettings(**config)
            self._service = service if isinstance(service, ServiceSettings) else ServiceSettings(**service)
        except ValidationError as e:
            raise ExporterConfigurationError(self._name, f"invalid configuration: {e}") from e

        self._extractor = select_extractor(self._settings.json_parse_mode)
        if self._transport is not None:
            self._transport.close()
        self._transport = HttpTransport(
            timeout=self._settings.timeout_seconds,
            headers=self._settings.headers,
            api_key=self._settings.api_key,
            chunk_size=self._settings.chunk_size_bytes,
            client=client,
        )
        self._resource = self._build_resource()
        logger.debug(
            "OTLP exporter configured",
            collector_url=self._settings.collector_url,
            parse_mode=self._extractor.mode.value,
            chunk_threshold_bytes=self._settings.chunk_threshold_bytes,
        )

    def _build_resource(self, tenant_id: str | None = None) -> dict[str, Any]:
        service = self._service
        attrs = [
            _kv(semconv.SERVICE_NAME, service.name),
            _kv(semconv.SERVICE_VERSION, service.version),
            _kv(semconv.DEPLOYMENT_ENVIRONMENT, service.environment),
        ]
        tenant = tenant_id or service.tenant_id
        if tenant:
            attrs.append(_kv(semconv.TENANT_ID, tenant))
        if service.tenant_name:
            attrs.append(_kv(semconv.TENANT_NAME, service.tenant_name))
        return {"attributes": attrs}

    def _resource_for(self, tenant_id: str | None) -> dict[str, Any]:
        if tenant_id is None or tenant_id == self._service.tenant_id:
            return self._resource
        return self._build_resource(tenant_id)

    # === Envelope -> OTLP document ===

    def _span_document(self, span: dict[str, Any], tenant_id: str | None) -> dict[str, Any]:
        return {
            "resourceSpans": [
                {
                    "resource": self._resource_for(tenant_id),
                    "scopeSpans": [{"scope": self._scope, "spans": [span]}],
                }
            ]
        }

    def _log_document(self, record: dict[str, Any], tenant_id: str | None) -> dict[str, Any]:
        return {
            "resourceLogs": [
                {
                    "resource": self._resource_for(tenant_id),
                    "scopeLogs": [{"scope": self._scope, "logRecords": [record]}],
                }
            ]
        }

    def _trace(self, envelope: TraceEnvelope) -> dict[str, Any]:
        end_time = envelope.end_time or envelope.start_time
        span: dict[str, Any] = {
            "traceId": envelope.trace_id,
            "spanId": derive_root_span_id(envelope.trace_id),
            "name": envelope.operation,
            "kind": SPAN_KIND_SERVER,
            "startTimeUnixNano": to_unix_nano(envelope.start_time),
            "endTimeUnixNano": to_unix_nano(end_time),
            "attributes": _attributes(envelope.attributes, (semconv.SERVICE_NAME, envelope.service_name)),
            "status": {"code": STATUS_CODE_OK},
        }
        # Traces carry no status column; a trace closed on an exception is tagged with error.type
        if semconv.ERROR_TYPE in envelope.attributes:
            span["status"] = {"code": STATUS_CODE_ERROR}
            if envelope.attributes.get(semconv.ERROR_MESSAGE):
                span["status"]["message"] = envelope.attributes[semconv.ERROR_MESSAGE]
        return self._span_document(span, envelope.tenant_id)

    def _span(self, envelope: SpanEnvelope) -> dict[str, Any]:
        span: dict[str, Any] = {
            "traceId": envelope.trace_id,
            "spanId": envelope.span_id,
            "name": envelope.operation,
            "kind": SPAN_KIND_INTERNAL,
            "startTimeUnixNano": to_unix_nano(envelope.start_time),
            "endTimeUnixNano": to_unix_nano(envelope.end_time),
            "attributes": _attributes(envelope.attributes),
        }
        if envelope.parent_span_id:
            span["parentSpanId"] = envelope.parent_span_id
        match envelope.status:
            case SpanStatus.OK:
                span["status"] = {"code": STATUS_CODE_OK}
            case SpanStatus.ERROR:
                status: dict[str, Any] = {"code": STATUS_CODE_ERROR}
                message = envelope.attributes.get(semconv.ERROR_MESSAGE)
                if message:
                    status["message"] = message
                span["status"] = status
            case SpanStatus.UNSET:
                pass
        return self._span_document(span, envelope.tenant_id)

    def _event(self, envelope: EventEnvelope) -> dict[str, Any]:
        timestamp = to_unix_nano(envelope.timestamp)
        record = {
            "timeUnixNano": timestamp,
            "observedTimeUnixNano": timestamp,
            "severityNumber": LogLevel.INFO.severity_number,
            "severityText": LogLevel.INFO.value,
            "body": {"stringValue": envelope.name},
            "attributes": _attributes(envelope.attributes, (semconv.EVENT_NAME, envelope.name)),
            "traceId": envelope.trace_id,
            "spanId": envelope.span_id,
        }
        return self._log_document(record, None)

    def _metric(self, envelope: MetricEnvelope) -> dict[str, Any]:
        timestamp = to_unix_nano(envelope.timestamp)
        point: dict[str, Any] = {
            "asDouble": envelope.value,
            "timeUnixNano": timestamp,
            "attributes": _attributes(envelope.attributes),
        }
        if envelope.trace_id:
            exemplar: dict[str, Any] = {"asDouble": envelope.value, "timeUnixNano": timestamp, "traceId": envelope.trace_id}
            if envelope.span_id:
                exemplar["spanId"] = envelope.span_id
            point["exemplars"] = [exemplar]
        metric = {"name": envelope.name, "unit": envelope.unit, "gauge": {"dataPoints": [point]}}
        return {
            "resourceMetrics": [
                {
                    "resource": self._resource_for(envelope.tenant_id),
                    "scopeMetrics": [{"scope": self._scope, "metrics": [metric]}],
                }
            ]
        }

    def _log(self, envelope: LogEnvelope) -> dict[str, Any]:
        timestamp = to_unix_nano(envelope.timestamp)
        record: dict[str, Any] = {
            "timeUnixNano": timestamp,
            "observedTimeUnixNano": timestamp,
            "severityNumber": envelope.level.severity_number,
            "severityText": envelope.level.value,
            "body": {"stringValue": envelope.message},
            "attributes": _attributes(envelope.attributes),
        }
        if envelope.trace_id:
            record["traceId"] = envelope.trace_id
        if envelope.span_id:
            record["spanId"] = envelope.span_id
        return self._log_document(record, envelope.tenant_id)

    def build_document(self, envelope: Envelope) -> dict[str, Any]:
        match envelope:
            case TraceEnvelope():
                return self._trace(envelope)
            case SpanEnvelope():
                return self._span(envelope)
            case EventEnvelope():
                return self._event(envelope)
            case MetricEnvelope():
                return self._metric(envelope)
            case LogEnvelope():
                return self._log(envelope)

    def build_payload(self, envelope_json: str) -> tuple[SignalEndpoint, SerializedPayload]:
        """Extract, translate and serialize one envelope.

        Raises:
            SerializationError: Malformed envelope or payload over the hard limit
        """
        try:
            envelope = envelope_from_fields(self._extractor.extract(envelope_json))
        except EnvelopeError as e:
            raise SerializationError(str(e)) from e
        document = self.build_document(envelope)
        payload = serialize_json(
            document,
            threshold=self._settings.chunk_threshold_bytes,
            max_size=self._settings.max_payload_bytes,
        )
        return envelope.signal.endpoint, payload

    def export(self, envelope_json: str, signal: Signal) -> DeliveryResult:
        """Deliver one envelope. Never raises."""
        if self._transport is None:
            self.configure({})
        assert self._transport is not None
        try:
            endpoint, payload = self.build_payload(envelope_json)
        except SerializationError as e:
            # Includes PayloadTooLargeError: no retry can shrink the payload
            return self._failed(DeliveryResult.failed(f"serialization failed: {e}", retryable=False), signal)
        except Exception as e:
            return self._failed(DeliveryResult.failed(f"unexpected bridge error: {type(e).__name__}: {e}"), signal)

        if endpoint != signal.endpoint:
            logger.debug("Envelope signal differs from queue signal", queued=signal.value, envelope_endpoint=endpoint.value)

        try:
            result = self._transport.post(self._settings.endpoint_for(endpoint), payload)
        except Exception as e:
            result = DeliveryResult.failed(
                f"unexpected transport error: {type(e).__name__}: {e}",
                strategy=payload.strategy,
                bytes_sent=payload.size,
            )
        if not result.success:
            return self._failed(result, signal)
        self._exports += 1
        return result

    def _failed(self, result: DeliveryResult, signal: Signal) -> DeliveryResult:
        self._failures += 1
        logger.debug("OTLP export failed", signal=signal.value, error=result.error, status_code=result.status_code)
        return result

    @property
    def health_metrics(self) -> dict[str, int]:
        return {"exports": self._exports, "failures": self._failures}

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
