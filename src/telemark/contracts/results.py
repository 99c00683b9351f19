"""Operation outcomes returned across subsystem boundaries.

Internal telemetry functions report failure as values rather than raising:
exporters return a ``DeliveryResult``, and producer-side helpers return an
``InternalFault`` that the public API routes to the diagnostic channel.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass

from telemark.contracts.enums import TransportStrategy


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt through an exporter.

    Fields:
        success: True when the collector accepted the payload (2xx)
        status_code: HTTP status when a response was received
        error: Human-readable failure description (None on success)
        strategy: Transport path used, when the payload got that far
        bytes_sent: Size of the serialized body
        retryable: False for failures that no retry can fix (malformed
            envelope, payload over the hard size limit). The queue still
            spends every attempt on them; this only changes the diagnostic code
    """

    success: bool
    status_code: int | None = None
    error: str | None = None
    strategy: TransportStrategy | None = None
    bytes_sent: int = 0
    retryable: bool = True

    @classmethod
    def ok(cls, *, status_code: int | None = None, strategy: TransportStrategy | None = None, bytes_sent: int = 0) -> DeliveryResult:
        return cls(success=True, status_code=status_code, strategy=strategy, bytes_sent=bytes_sent)

    @classmethod
    def failed(
        cls,
        error: str,
        *,
        status_code: int | None = None,
        strategy: TransportStrategy | None = None,
        bytes_sent: int = 0,
        retryable: bool = True,
    ) -> DeliveryResult:
        return cls(
            success=False,
            status_code=status_code,
            error=error,
            strategy=strategy,
            bytes_sent=bytes_sent,
            retryable=retryable,
        )


@dataclass(frozen=True)
class InternalFault:
    """An internal SDK failure destined for the diagnostic channel.

    Fields:
        module: Originating component (e.g. "api.start_span", "bridge.otlp")
        message: Human-readable description
        code: Optional short machine-readable code
        trace_id: Correlated trace, when known
        span_id: Correlated span, when known
        error_stack: Formatted traceback for unexpected exceptions
    """

    module: str
    message: str
    code: str | None = None
    trace_id: str | None = None
    span_id: str | None = None
    error_stack: str | None = None

    @classmethod
    def from_exception(
        cls,
        module: str,
        exc: BaseException,
        *,
        code: str | None = None,
        trace_id: str | None = None,
        span_id: str | None = None,
    ) -> InternalFault:
        return cls(
            module=module,
            message=f"{type(exc).__name__}: {exc}",
            code=code or type(exc).__name__,
            trace_id=trace_id,
            span_id=span_id,
            error_stack="".join(traceback.format_exception(exc)),
        )
