"""Dead-letter store: terminal snapshots of failed deliveries.

Append-only. Records come from two places: the queue worker when an
entry exhausts its attempts, and synchronous delivery when the one
attempt fails (there is no retry path to fall back on).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Connection, func, select

from telemark.contracts.enums import Signal
from telemark.contracts.records import DeadLetter
from telemark.core.store._database_ops import DatabaseOps
from telemark.core.store._helpers import now
from telemark.core.store.database import TelemetryDB
from telemark.core.store.repositories import DeadLetterRepository
from telemark.core.store.schema import dead_letters_table


class DeadLetterStore:
    def __init__(self, db: TelemetryDB) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._repo = DeadLetterRepository()

    def record(
        self,
        payload: str,
        signal: Signal,
        error_message: str,
        retry_count: int,
        *,
        http_status: int | None = None,
        queue_id: int | None = None,
        last_retry_at: datetime | None = None,
        conn: Connection | None = None,
    ) -> int | None:
        """Append a dead-letter record.

        Args:
            conn: Join an open transaction (the worker uses this so the
                attempt update and the dead-letter insert commit together).
                Without it the record commits on its own.

        Returns:
            The new dead_letter_id
        """
        stmt = dead_letters_table.insert().values(
            exported_at=now(),
            queue_id=queue_id,
            signal=signal.value,
            http_status=http_status,
            payload=payload,
            error_message=error_message or "<no error message>",
            retry_count=retry_count,
            last_retry_at=last_retry_at,
        )
        if conn is not None:
            result = conn.execute(stmt)
            key = result.inserted_primary_key
            return int(key[0]) if key else None
        return self._ops.execute_insert(stmt)

    def list_recent(self, limit: int = 50) -> list[DeadLetter]:
        rows = self._ops.execute_fetchall(
            select(dead_letters_table).order_by(dead_letters_table.c.dead_letter_id.desc()).limit(limit)
        )
        return [self._repo.load(row) for row in rows]

    def for_queue_entry(self, queue_id: int) -> list[DeadLetter]:
        rows = self._ops.execute_fetchall(select(dead_letters_table).where(dead_letters_table.c.queue_id == queue_id))
        return [self._repo.load(row) for row in rows]

    def count(self) -> int:
        return int(self._ops.execute_scalar(select(func.count()).select_from(dead_letters_table)) or 0)
