"""StoreRecorder: raw persistence for producer-side telemetry.

The recorder is plain CRUD over the store tables and raises on database
errors. Deciding what a failure means (usage error, internal fault) is the
job of the public API in ``telemark.api``.
"""

from telemark.core.store._database_ops import DatabaseOps
from telemark.core.store._signal_recording import SignalRecordingMixin
from telemark.core.store._trace_recording import TraceRecordingMixin
from telemark.core.store.database import TelemetryDB
from telemark.core.store.repositories import (
    LogRecordRepository,
    MetricRepository,
    SpanEventRepository,
    SpanRepository,
    TraceRepository,
)


class StoreRecorder(TraceRecordingMixin, SignalRecordingMixin):
    """Records traces, spans, events, metrics and logs.

    Example:
        >>> db = TelemetryDB.in_memory()
        >>> recorder = StoreRecorder(db)
        >>> recorder.insert_trace("4bf9...", "checkout", "shop", now())
    """

    def __init__(self, db: TelemetryDB) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._trace_repo = TraceRepository()
        self._span_repo = SpanRepository()
        self._event_repo = SpanEventRepository()
        self._metric_repo = MetricRepository()
        self._log_repo = LogRecordRepository()

    @property
    def db(self) -> TelemetryDB:
        return self._db
