"""Metric and log recording methods for StoreRecorder."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from telemark.contracts.enums import LogLevel
from telemark.contracts.records import LogRecord, Metric
from telemark.core.attributes import attributes_to_json
from telemark.core.store.schema import logs_table, metrics_table

if TYPE_CHECKING:
    from telemark.core.store._database_ops import DatabaseOps
    from telemark.core.store.repositories import LogRecordRepository, MetricRepository


class SignalRecordingMixin:
    """Metric/log CRUD. Mixed into StoreRecorder."""

    _ops: DatabaseOps
    _metric_repo: MetricRepository
    _log_repo: LogRecordRepository

    def insert_metric(
        self,
        name: str,
        value: float,
        unit: str,
        timestamp: datetime,
        *,
        trace_id: str | None = None,
        span_id: str | None = None,
        tenant_id: str | None = None,
        attributes: dict[str, str] | None = None,
    ) -> Metric:
        metric_id = self._ops.execute_insert(
            metrics_table.insert().values(
                name=name,
                value=value,
                unit=unit,
                timestamp=timestamp,
                trace_id=trace_id,
                span_id=span_id,
                tenant_id=tenant_id,
                attributes_json=attributes_to_json(attributes or {}),
            )
        )
        return Metric(
            metric_id=metric_id or 0,
            name=name,
            value=value,
            unit=unit,
            timestamp=timestamp,
            trace_id=trace_id,
            span_id=span_id,
            tenant_id=tenant_id,
            attributes=dict(attributes or {}),
        )

    def list_metrics(self, name: str | None = None) -> list[Metric]:
        query = select(metrics_table).order_by(metrics_table.c.metric_id)
        if name is not None:
            query = query.where(metrics_table.c.name == name)
        return [self._metric_repo.load(row) for row in self._ops.execute_fetchall(query)]

    def insert_log(
        self,
        level: LogLevel,
        message: str,
        timestamp: datetime,
        *,
        trace_id: str | None = None,
        span_id: str | None = None,
        tenant_id: str | None = None,
        attributes: dict[str, str] | None = None,
    ) -> LogRecord:
        log_id = self._ops.execute_insert(
            logs_table.insert().values(
                level=level.value,
                message=message,
                timestamp=timestamp,
                trace_id=trace_id,
                span_id=span_id,
                tenant_id=tenant_id,
                attributes_json=attributes_to_json(attributes or {}),
            )
        )
        return LogRecord(
            log_id=log_id or 0,
            level=level,
            message=message,
            timestamp=timestamp,
            trace_id=trace_id,
            span_id=span_id,
            tenant_id=tenant_id,
            attributes=dict(attributes or {}),
        )

    def list_logs(self, trace_id: str | None = None) -> list[LogRecord]:
        query = select(logs_table).order_by(logs_table.c.log_id)
        if trace_id is not None:
            query = query.where(logs_table.c.trace_id == trace_id)
        return [self._log_repo.load(row) for row in self._ops.execute_fetchall(query)]
