"""Queue worker: drains the delivery queue through an exporter.

``process_batch`` is one scheduled run: claim a bounded batch, attempt
each entry, record the outcome. Any external scheduler may call it; runs
may overlap (claims keep them apart).

``start``/``stop`` run it on a background thread with a fixed poll
interval. There is no exponential backoff: an entry is retried on the next
run after it failed, until it reaches max_attempts.

Failure handling:
- Every failed attempt is mirrored to the diagnostic channel
- Aggregate logging every _LOG_INTERVAL failures prevents log flooding
  while a collector is down
- The background loop never dies on an internal fault; the fault goes to
  diagnostics and the loop waits for the next tick
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass

import structlog

from telemark.bridge.protocols import ExporterProtocol
from telemark.contracts.enums import DeadLetterPolicy
from telemark.contracts.records import QueueEntry
from telemark.contracts.results import DeliveryResult, InternalFault
from telemark.delivery.queue import DeliveryQueue
from telemark.diagnostics.channel import DiagnosticChannel

logger = structlog.get_logger(__name__)

MODULE = "delivery.worker"


@dataclass(frozen=True)
class BatchResult:
    claimed: int = 0
    delivered: int = 0
    failed: int = 0
    dead_lettered: int = 0


class QueueWorker:
    """Delivers queued envelopes with retry and dead-lettering.

    Args:
        queue: Durable delivery queue
        exporter: Exporter used for each attempt
        diagnostics: Channel receiving every failure
        batch_size: Entries claimed per run
        dead_letter_policy: Flag or delete exhausted entries
        worker_id: Claim owner id; random when omitted

    Thread Safety:
        process_batch() may run concurrently on several QueueWorker
        instances (or threads) against the same store.
    """

    _LOG_INTERVAL = 100

    def __init__(
        self,
        queue: DeliveryQueue,
        exporter: ExporterProtocol,
        diagnostics: DiagnosticChannel,
        *,
        batch_size: int = 100,
        dead_letter_policy: DeadLetterPolicy = DeadLetterPolicy.FLAG,
        worker_id: str | None = None,
    ) -> None:
        self._queue = queue
        self._exporter = exporter
        self._diagnostics = diagnostics
        self._batch_size = batch_size
        self._policy = dead_letter_policy
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:12]}"

        self._total_failures = 0
        self._total_delivered = 0
        self._stats_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _attempt(self, entry: QueueEntry) -> DeliveryResult:
        try:
            return self._exporter.export(entry.payload, entry.signal)
        except Exception as e:
            # Exporters must not raise; treat a misbehaving one as a failed attempt
            return DeliveryResult.failed(f"exporter {self._exporter.name} raised {type(e).__name__}: {e}")

    def process_batch(self, limit: int | None = None) -> BatchResult:
        """Run one bounded delivery pass over the queue."""
        entries = self._queue.claim(limit or self._batch_size, self.worker_id)
        delivered = failed = dead_lettered = 0

        for entry in entries:
            result = self._attempt(entry)
            if result.success:
                if self._queue.mark_delivered(entry, self.worker_id):
                    delivered += 1
                else:
                    logger.info("Claim lost before delivery was recorded", queue_id=entry.queue_id)
                continue

            failed += 1
            error = result.error or "delivery failed"
            outcome = self._queue.mark_failed(
                entry,
                self.worker_id,
                error,
                http_status=result.status_code,
                policy=self._policy,
            )
            if outcome is None:
                logger.info("Claim lost before failure was recorded", queue_id=entry.queue_id)
                continue
            if result.status_code is not None:
                code = f"HTTP_{result.status_code}"
            elif not result.retryable:
                # Still retried up to max_attempts; the code flags it for operators
                code = "SERIALIZATION_FAILED"
            else:
                code = "DELIVERY_FAILED"
            self._diagnostics.record_error(
                f"delivery of queue entry {entry.queue_id} failed (attempt {outcome.attempt_count}"
                f"/{self._queue.max_attempts}): {error}",
                code,
                MODULE,
            )
            if outcome.dead_lettered:
                dead_lettered += 1
                self._diagnostics.record_error(
                    f"queue entry {entry.queue_id} dead-lettered after {outcome.attempt_count} attempts",
                    "DEAD_LETTERED",
                    MODULE,
                )

        self._update_totals(delivered, failed)
        batch = BatchResult(claimed=len(entries), delivered=delivered, failed=failed, dead_lettered=dead_lettered)
        if entries:
            logger.debug("Delivery batch processed", worker_id=self.worker_id, **batch.__dict__)
        return batch

    def _update_totals(self, delivered: int, failed: int) -> None:
        with self._stats_lock:
            before = self._total_failures
            self._total_failures += failed
            self._total_delivered += delivered
            crossed = self._total_failures // self._LOG_INTERVAL > before // self._LOG_INTERVAL
            total_failures = self._total_failures
        if crossed:
            logger.warning(
                "Delivery failures accumulating",
                total_failures=total_failures,
                exporter=self._exporter.name,
                hint="check collector reachability; entries are retried and dead-lettered per policy",
            )

    def drain(self, max_batches: int = 1000) -> BatchResult:
        """Run batches until a run claims nothing (or max_batches is hit)."""
        claimed = delivered = failed = dead_lettered = 0
        for _ in range(max_batches):
            batch = self.process_batch()
            if batch.claimed == 0:
                break
            claimed += batch.claimed
            delivered += batch.delivered
            failed += batch.failed
            dead_lettered += batch.dead_lettered
        return BatchResult(claimed=claimed, delivered=delivered, failed=failed, dead_lettered=dead_lettered)

    @property
    def health_metrics(self) -> dict[str, int]:
        with self._stats_lock:
            return {"delivered": self._total_delivered, "failures": self._total_failures}

    # === Background polling ===

    def _run_loop(self, interval: float) -> None:
        logger.info("Delivery worker started", worker_id=self.worker_id, interval=interval)
        while not self._stop_event.is_set():
            try:
                self.process_batch()
            except Exception as e:
                self._diagnostics.record_fault(InternalFault.from_exception(MODULE, e, code="WORKER_LOOP"))
            self._stop_event.wait(interval)
        logger.info("Delivery worker stopped", worker_id=self.worker_id)

    def start(self, interval: float) -> None:
        """Start polling on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(interval,),
            name=f"telemark-{self.worker_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        """Signal the loop to stop and wait for the current batch to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.error("Delivery worker did not stop within timeout", worker_id=self.worker_id, timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
