"""Protocol bridge: generic envelopes to wire payloads.

Owns exporter discovery, dual-strategy field extraction, JSON escaping,
adaptive buffers and HTTP transport (simple or chunked).
"""

from telemark.bridge.console import ConsoleExporter
from telemark.bridge.errors import ExporterConfigurationError, SerializationError
from telemark.bridge.factory import create_exporter, discover_exporters
from telemark.bridge.otlp import OTLPBridgeExporter
from telemark.bridge.protocols import ExporterProtocol

__all__ = [
    "ConsoleExporter",
    "ExporterConfigurationError",
    "ExporterProtocol",
    "OTLPBridgeExporter",
    "SerializationError",
    "create_exporter",
    "discover_exporters",
]
