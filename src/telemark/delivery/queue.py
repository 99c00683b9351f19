"""Durable, at-least-once delivery queue.

State machine per entry:

    PENDING --success--> PROCESSED
    PENDING --failure--> PENDING (attempt_count + 1)
            ... --attempt_count == max_attempts--> DEAD_LETTERED

Claiming
--------
Concurrent worker runs must never process the same entry. ``claim`` picks
candidates, then takes each one with a conditional UPDATE that only
succeeds while no live lease exists::

    UPDATE delivery_queue SET claimed_by = :worker, claimed_until = :lease_end
    WHERE queue_id = :id AND processed = false AND dead_lettered = false
      AND (claimed_until IS NULL OR claimed_until < :now)

Only rows whose UPDATE hit exactly one row belong to the run. A worker that
dies mid-batch leaves leases that expire after ``lease_seconds``, so its
entries are picked up again (at-least-once). On PostgreSQL the candidate
select also uses ``FOR UPDATE SKIP LOCKED``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import ColumnElement, and_, case, delete, func, or_, select, update

from telemark.contracts.enums import DeadLetterPolicy, Signal
from telemark.contracts.records import QueueEntry
from telemark.core.store._database_ops import DatabaseOps
from telemark.core.store._helpers import now as utc_now
from telemark.core.store.database import TelemetryDB
from telemark.core.store.repositories import QueueEntryRepository
from telemark.core.store.schema import delivery_queue_table
from telemark.delivery.dead_letter import DeadLetterStore

logger = structlog.get_logger(__name__)

_q = delivery_queue_table


@dataclass(frozen=True)
class QueueStats:
    pending: int
    processed: int
    dead_lettered: int
    total: int


@dataclass(frozen=True)
class FailureOutcome:
    """What happened to an entry after a failed attempt."""

    attempt_count: int
    dead_lettered: bool
    dead_letter_id: int | None = None


class DeliveryQueue:
    """Durable queue of serialized envelopes.

    Args:
        db: Telemetry store
        max_attempts: Attempts before an entry is dead-lettered
        lease_seconds: How long a claim protects an entry from other runs
    """

    def __init__(self, db: TelemetryDB, *, max_attempts: int = 3, lease_seconds: float = 300.0) -> None:
        if max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive, got {max_attempts}")
        self._db = db
        self._ops = DatabaseOps(db)
        self._repo = QueueEntryRepository()
        self._dead_letters = DeadLetterStore(db)
        self.max_attempts = max_attempts
        self.lease = timedelta(seconds=lease_seconds)

    @property
    def dead_letters(self) -> DeadLetterStore:
        return self._dead_letters

    def enqueue(self, payload: str, signal: Signal) -> int:
        """Durably store one envelope; commits before returning."""
        queue_id = self._ops.execute_insert(
            _q.insert().values(
                signal=signal.value,
                payload=payload,
                created_at=utc_now(),
                processed=False,
                attempt_count=0,
                dead_lettered=False,
            )
        )
        if queue_id is None:
            raise RuntimeError("delivery_queue insert returned no key")
        return queue_id

    def get(self, queue_id: int) -> QueueEntry | None:
        row = self._ops.execute_fetchone(select(_q).where(_q.c.queue_id == queue_id))
        return self._repo.load(row) if row is not None else None

    def _claimable(self, at: datetime) -> ColumnElement[bool]:
        return and_(
            _q.c.processed.is_(False),
            _q.c.dead_lettered.is_(False),
            _q.c.attempt_count < self.max_attempts,
            or_(_q.c.claimed_until.is_(None), _q.c.claimed_until < at),
        )

    def claim(self, limit: int, worker_id: str, *, at: datetime | None = None) -> list[QueueEntry]:
        """Claim up to ``limit`` pending entries for one worker run.

        Oldest entries first. Safe to call concurrently from separate runs.
        """
        at = at or utc_now()
        lease_end = at + self.lease
        candidates = (
            select(_q.c.queue_id).where(self._claimable(at)).order_by(_q.c.created_at, _q.c.queue_id).limit(limit)
        )
        if self._db.is_postgresql:
            candidates = candidates.with_for_update(skip_locked=True)

        claimed_ids: list[int] = []
        with self._db.connection() as conn:
            for (queue_id,) in conn.execute(candidates).fetchall():
                result = conn.execute(
                    update(_q)
                    .where(_q.c.queue_id == queue_id)
                    .where(self._claimable(at))
                    .values(claimed_by=worker_id, claimed_until=lease_end)
                )
                if result.rowcount == 1:
                    claimed_ids.append(queue_id)
            if not claimed_ids:
                return []
            rows = conn.execute(
                select(_q).where(_q.c.queue_id.in_(claimed_ids)).order_by(_q.c.created_at, _q.c.queue_id)
            ).fetchall()
        return [self._repo.load(row) for row in rows]

    def mark_delivered(self, entry: QueueEntry, worker_id: str, *, at: datetime | None = None) -> bool:
        """Terminal success: processed flag and time set, claim released.

        Returns False if the claim was lost (lease expired and another run
        took the entry); the other run then owns the outcome.
        """
        at = at or utc_now()
        affected = self._ops.execute_update(
            update(_q)
            .where(_q.c.queue_id == entry.queue_id)
            .where(_q.c.claimed_by == worker_id)
            .values(
                processed=True,
                processed_at=at,
                last_attempt_at=at,
                attempt_count=_q.c.attempt_count + 1,
                last_error=None,
                claimed_by=None,
                claimed_until=None,
            )
        )
        return affected == 1

    def mark_failed(
        self,
        entry: QueueEntry,
        worker_id: str,
        error: str,
        *,
        http_status: int | None = None,
        policy: DeadLetterPolicy = DeadLetterPolicy.FLAG,
        at: datetime | None = None,
    ) -> FailureOutcome | None:
        """Record a failed attempt; dead-letter the entry when it is exhausted.

        The attempt update, the dead-letter insert and the flag/delete
        commit in one transaction.

        Returns:
            The outcome, or None if the claim was lost.
        """
        at = at or utc_now()
        with self._db.connection() as conn:
            result = conn.execute(
                update(_q)
                .where(_q.c.queue_id == entry.queue_id)
                .where(_q.c.claimed_by == worker_id)
                .values(
                    attempt_count=_q.c.attempt_count + 1,
                    last_attempt_at=at,
                    last_error=error,
                    claimed_by=None,
                    claimed_until=None,
                )
            )
            if result.rowcount != 1:
                return None
            attempts = int(conn.execute(select(_q.c.attempt_count).where(_q.c.queue_id == entry.queue_id)).scalar_one())
            if attempts < self.max_attempts:
                return FailureOutcome(attempt_count=attempts, dead_lettered=False)

            dead_letter_id = self._dead_letters.record(
                entry.payload,
                entry.signal,
                error,
                attempts,
                http_status=http_status,
                queue_id=entry.queue_id,
                last_retry_at=at,
                conn=conn,
            )
            match policy:
                case DeadLetterPolicy.FLAG:
                    conn.execute(update(_q).where(_q.c.queue_id == entry.queue_id).values(dead_lettered=True))
                case DeadLetterPolicy.DELETE:
                    conn.execute(delete(_q).where(_q.c.queue_id == entry.queue_id))
        logger.warning(
            "Queue entry dead-lettered",
            queue_id=entry.queue_id,
            signal=entry.signal.value,
            attempts=attempts,
            policy=policy.value,
        )
        return FailureOutcome(attempt_count=attempts, dead_lettered=True, dead_letter_id=dead_letter_id)

    def stats(self) -> QueueStats:
        query = select(
            func.count().label("total"),
            func.sum(case((and_(_q.c.processed.is_(False), _q.c.dead_lettered.is_(False)), 1), else_=0)).label("pending"),
            func.sum(case((_q.c.processed.is_(True), 1), else_=0)).label("processed"),
            func.sum(case((_q.c.dead_lettered.is_(True), 1), else_=0)).label("dead_lettered"),
        )
        row = self._ops.execute_fetchone(query)
        if row is None:
            return QueueStats(pending=0, processed=0, dead_lettered=0, total=0)
        return QueueStats(
            pending=int(row.pending or 0),
            processed=int(row.processed or 0),
            dead_lettered=int(row.dead_lettered or 0),
            total=int(row.total or 0),
        )

    def list_entries(self, *, include_processed: bool = False, limit: int = 100) -> list[QueueEntry]:
        query = select(_q).order_by(_q.c.created_at, _q.c.queue_id).limit(limit)
        if not include_processed:
            query = query.where(_q.c.processed.is_(False))
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query)]
