"""Retention cleanup for the delivery queue.

Processed entries are kept for a while for audit, then deleted. Pending
entries and flagged dead-lettered entries are never touched here; the
dead-letter store is append-only and outside retention.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from time import perf_counter
from typing import TYPE_CHECKING

from sqlalchemy import ColumnElement, and_, delete, func, select

from telemark.core.store.schema import delivery_queue_table

if TYPE_CHECKING:
    from telemark.core.store.database import TelemetryDB
    from telemark.diagnostics.channel import DiagnosticChannel

MODULE = "delivery.retention"


@dataclass
class PurgeResult:
    deleted_count: int
    cutoff: datetime
    duration_seconds: float


class RetentionManager:
    """Deletes processed queue entries older than the retention period."""

    def __init__(self, db: "TelemetryDB", diagnostics: "DiagnosticChannel | None" = None) -> None:
        self._db = db
        self._diagnostics = diagnostics

    def _expired(self, cutoff: datetime) -> ColumnElement[bool]:
        return and_(
            delivery_queue_table.c.processed.is_(True),
            delivery_queue_table.c.processed_at < cutoff,
        )

    def count_expired(self, retention_days: int, as_of: datetime | None = None) -> int:
        cutoff = self.cutoff(retention_days, as_of)
        with self._db.connection() as conn:
            query = select(func.count()).select_from(delivery_queue_table).where(self._expired(cutoff))
            return int(conn.execute(query).scalar() or 0)

    @staticmethod
    def cutoff(retention_days: int, as_of: datetime | None = None) -> datetime:
        if retention_days <= 0:
            raise ValueError(f"retention_days must be positive, got {retention_days}")
        return (as_of or datetime.now(UTC)) - timedelta(days=retention_days)

    def purge_processed(self, retention_days: int, as_of: datetime | None = None) -> PurgeResult:
        """Delete processed entries whose processed time is before the cutoff.

        Args:
            retention_days: Days to keep processed entries
            as_of: Reference time for the cutoff (defaults to now)
        """
        start = perf_counter()
        cutoff = self.cutoff(retention_days, as_of)
        with self._db.connection() as conn:
            result = conn.execute(delete(delivery_queue_table).where(self._expired(cutoff)))
            deleted = int(result.rowcount)
        if deleted and self._diagnostics is not None:
            self._diagnostics.record_info(
                f"purged {deleted} processed queue entries older than {retention_days} days",
                MODULE,
                code="RETENTION_PURGE",
            )
        return PurgeResult(deleted_count=deleted, cutoff=cutoff, duration_seconds=perf_counter() - start)
