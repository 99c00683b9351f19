"""Durable delivery: queue, worker, dead letters and retention."""

from telemark.delivery.dead_letter import DeadLetterStore
from telemark.delivery.queue import DeliveryQueue, QueueStats
from telemark.delivery.retention import PurgeResult, RetentionManager
from telemark.delivery.worker import BatchResult, QueueWorker

__all__ = [
    "BatchResult",
    "DeadLetterStore",
    "DeliveryQueue",
    "PurgeResult",
    "QueueStats",
    "QueueWorker",
    "RetentionManager",
]
