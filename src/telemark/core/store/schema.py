"""SQLAlchemy table definitions for the telemetry store.

Uses SQLAlchemy Core (not ORM) for explicit control over queries and
compatibility with SQLite and PostgreSQL.

Timestamps are written as aware UTC datetimes. SQLite drops the offset on
storage, so repositories re-attach UTC on read.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

# Shared metadata for all tables
metadata = MetaData()

# === Producer side: traces, spans, events, metrics, logs ===

traces_table = Table(
    "traces",
    metadata,
    Column("trace_id", String(32), primary_key=True),
    Column("operation", String(255), nullable=False),
    Column("service_name", String(255), nullable=False),
    Column("tenant_id", String(64)),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True)),
    Column("attributes_json", Text),
)

Index("ix_traces_start_time", traces_table.c.start_time)

spans_table = Table(
    "spans",
    metadata,
    Column("span_id", String(16), primary_key=True),
    Column("trace_id", String(32), ForeignKey("traces.trace_id"), nullable=False),
    # No FK: a continued distributed trace may name a parent span that lives
    # in another system. Same-trace membership is enforced by the recorder.
    Column("parent_span_id", String(16)),
    Column("operation", String(255), nullable=False),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True)),
    Column("duration_ms", Float),
    Column("status", String(16), nullable=False),
    Column("tenant_id", String(64)),
    Column("attributes_json", Text),
)

Index("ix_spans_trace", spans_table.c.trace_id)
Index("ix_spans_parent", spans_table.c.parent_span_id)

span_events_table = Table(
    "span_events",
    metadata,
    Column("event_id", Integer, primary_key=True, autoincrement=True),
    Column("span_id", String(16), ForeignKey("spans.span_id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("attributes_json", Text),
)

Index("ix_span_events_span", span_events_table.c.span_id)

metrics_table = Table(
    "metrics",
    metadata,
    Column("metric_id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("value", Float, nullable=False),
    Column("unit", String(64), nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("trace_id", String(32)),
    Column("span_id", String(16)),
    Column("tenant_id", String(64)),
    Column("attributes_json", Text),
)

Index("ix_metrics_name_time", metrics_table.c.name, metrics_table.c.timestamp)
Index("ix_metrics_trace", metrics_table.c.trace_id)

logs_table = Table(
    "logs",
    metadata,
    Column("log_id", Integer, primary_key=True, autoincrement=True),
    Column("level", String(8), nullable=False),
    Column("message", Text, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("trace_id", String(32)),
    Column("span_id", String(16)),
    Column("tenant_id", String(64)),
    Column("attributes_json", Text),
)

Index("ix_logs_time", logs_table.c.timestamp)
Index("ix_logs_trace", logs_table.c.trace_id)

# === Delivery side: queue and dead letters ===

delivery_queue_table = Table(
    "delivery_queue",
    metadata,
    Column("queue_id", Integer, primary_key=True, autoincrement=True),
    Column("signal", String(16), nullable=False),
    Column("payload", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("processed", Boolean, nullable=False, default=False),
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("last_attempt_at", DateTime(timezone=True)),
    Column("last_error", Text),
    Column("processed_at", DateTime(timezone=True)),
    # Terminal after retries are exhausted (DeadLetterPolicy.FLAG)
    Column("dead_lettered", Boolean, nullable=False, default=False),
    # Claim lease: which worker run owns the entry, and until when
    Column("claimed_by", String(64)),
    Column("claimed_until", DateTime(timezone=True)),
)

Index(
    "ix_delivery_queue_pending",
    delivery_queue_table.c.processed,
    delivery_queue_table.c.dead_lettered,
    delivery_queue_table.c.attempt_count,
    delivery_queue_table.c.created_at,
)
Index("ix_delivery_queue_processed_at", delivery_queue_table.c.processed_at)

dead_letters_table = Table(
    "dead_letters",
    metadata,
    Column("dead_letter_id", Integer, primary_key=True, autoincrement=True),
    Column("exported_at", DateTime(timezone=True), nullable=False),
    # No FK: DeadLetterPolicy.DELETE removes the queue row
    Column("queue_id", Integer),
    Column("signal", String(16), nullable=False),
    Column("http_status", Integer),
    Column("payload", Text, nullable=False),
    Column("error_message", Text, nullable=False),
    Column("retry_count", Integer, nullable=False),
    Column("last_retry_at", DateTime(timezone=True)),
)

Index("ix_dead_letters_exported_at", dead_letters_table.c.exported_at)

# === Diagnostics ===

diagnostic_errors_table = Table(
    "diagnostic_errors",
    metadata,
    Column("error_id", Integer, primary_key=True, autoincrement=True),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
    Column("message", Text, nullable=False),
    Column("code", String(64)),
    Column("module", String(128), nullable=False),
    Column("trace_id", String(32)),
    Column("span_id", String(16)),
    Column("error_stack", Text),
)

Index("ix_diagnostic_errors_time", diagnostic_errors_table.c.recorded_at)
Index("ix_diagnostic_errors_module", diagnostic_errors_table.c.module)
Index("ix_diagnostic_errors_trace", diagnostic_errors_table.c.trace_id)
