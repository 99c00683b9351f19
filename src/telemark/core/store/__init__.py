"""Telemetry store: schema, connection management and recorder."""

from telemark.core.store.database import TelemetryDB
from telemark.core.store.recorder import StoreRecorder

__all__ = ["StoreRecorder", "TelemetryDB"]
