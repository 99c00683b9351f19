"""Per-session trace context.

Each thread and each asyncio task sees its own current trace/span, so
concurrent requests cannot corrupt each other's span hierarchy. The state
is an immutable ``TraceContext`` held in a ``ContextVar``; every mutation
replaces it wholesale.

The current ids are also bound into ``structlog.contextvars`` so that SDK
log lines emitted while a span is active carry ``trace_id``/``span_id``.
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass

import structlog


@dataclass(frozen=True)
class TraceContext:
    trace_id: str | None = None
    span_id: str | None = None
    tenant_id: str | None = None
    sampled: bool = True

    @property
    def is_empty(self) -> bool:
        return self.trace_id is None


EMPTY_CONTEXT = TraceContext()


class ContextStore:
    """Session-local holder of the active trace and span.

    Example:
        >>> store = ContextStore()
        >>> store.set_current("4bf9...", "00f0...")
        >>> store.get_current_span()
        '00f0...'
        >>> store.clear()
    """

    def __init__(self, name: str = "telemark_trace_context") -> None:
        self._var: ContextVar[TraceContext] = ContextVar(name, default=EMPTY_CONTEXT)

    def snapshot(self) -> TraceContext:
        return self._var.get()

    def set_current(
        self,
        trace_id: str | None,
        span_id: str | None,
        *,
        tenant_id: str | None = None,
        sampled: bool = True,
    ) -> None:
        """Replace the current trace/span for this session."""
        self._var.set(TraceContext(trace_id=trace_id, span_id=span_id, tenant_id=tenant_id, sampled=sampled))
        self._bind_log_context(trace_id, span_id)

    def set_current_span(self, span_id: str | None) -> None:
        """Change only the current span, keeping trace, tenant and sampling."""
        ctx = self._var.get()
        self.set_current(ctx.trace_id, span_id, tenant_id=ctx.tenant_id, sampled=ctx.sampled)

    def get_current_trace(self) -> str | None:
        return self._var.get().trace_id

    def get_current_span(self) -> str | None:
        return self._var.get().span_id

    def get_current_tenant(self) -> str | None:
        return self._var.get().tenant_id

    def is_sampled(self) -> bool:
        return self._var.get().sampled

    def clear(self) -> None:
        """Reset to empty (no active trace or span)."""
        self._var.set(EMPTY_CONTEXT)
        structlog.contextvars.unbind_contextvars("trace_id", "span_id")

    @staticmethod
    def _bind_log_context(trace_id: str | None, span_id: str | None) -> None:
        structlog.contextvars.unbind_contextvars("trace_id", "span_id")
        bound = {k: v for k, v in (("trace_id", trace_id), ("span_id", span_id)) if v is not None}
        if bound:
            structlog.contextvars.bind_contextvars(**bound)
