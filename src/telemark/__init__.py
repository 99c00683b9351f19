"""
telemark: in-process telemetry with a durable export pipeline.

Traces, spans, events, metrics and logs are recorded in a relational store
and delivered at least once to an OTLP collector, with retry,
dead-lettering and an out-of-band diagnostic channel.
"""

__version__ = "0.4.0"

from telemark.api import Telemetry
from telemark.contracts.enums import DeadLetterPolicy, DeliveryMode, LogLevel, SpanStatus
from telemark.core.config import TelemarkSettings, load_settings

__all__ = [
    "DeadLetterPolicy",
    "DeliveryMode",
    "LogLevel",
    "SpanStatus",
    "TelemarkSettings",
    "Telemetry",
    "__version__",
    "load_settings",
]
