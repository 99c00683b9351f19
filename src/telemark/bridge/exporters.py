"""Built-in exporter registration.

Exporters are discovered via the telemark_get_exporters hook. This plugin
registers the two built-ins:
- OTLPBridgeExporter ("otlp"): OTLP/JSON over HTTP to a collector
- ConsoleExporter ("console"): envelopes to stdout/stderr
"""

from telemark.bridge.console import ConsoleExporter
from telemark.bridge.hookspecs import hookimpl
from telemark.bridge.otlp import OTLPBridgeExporter


class BuiltinExportersPlugin:
    """Plugin that registers built-in exporters."""

    @hookimpl
    def telemark_get_exporters(self) -> list[type]:
        return [OTLPBridgeExporter, ConsoleExporter]
