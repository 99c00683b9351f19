"""pluggy hook specifications for exporters.

Exporters implement these hooks to register themselves. The factory calls
them to discover available exporters.

Usage (implementing an exporter plugin):
    from telemark.bridge.hookspecs import hookimpl

    class MyExporterPlugin:
        @hookimpl
        def telemark_get_exporters(self):
            return [MyExporter]
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from telemark.bridge.protocols import ExporterProtocol

PROJECT_NAME = "telemark"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)

hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class TelemarkExporterSpec:
    """Hook specifications for exporter plugins."""

    @hookspec
    def telemark_get_exporters(self) -> list[type["ExporterProtocol"]]:  # type: ignore[empty-body]
        """Return exporter classes (not instances) implementing ExporterProtocol."""
