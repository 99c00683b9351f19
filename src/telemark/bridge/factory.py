"""Factory functions for creating exporters from configuration.

Glue between TelemarkSettings and a configured ExporterProtocol instance:
1. Discover exporter classes via pluggy hooks
2. Instantiate the one named by ``exporter.name``
3. Configure it with exporter and service settings

Usage:
    from telemark.bridge.factory import create_exporter

    exporter = create_exporter(settings)
    result = exporter.export(envelope_json, Signal.SPAN)
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import httpx
import pluggy
import structlog

from telemark.bridge.errors import ExporterConfigurationError
from telemark.bridge.exporters import BuiltinExportersPlugin
from telemark.bridge.hookspecs import PROJECT_NAME, TelemarkExporterSpec
from telemark.bridge.protocols import ExporterProtocol
from telemark.core.config import TelemarkSettings

logger = structlog.get_logger(__name__)


def _resolve_exporter_name(exporter_class: type[ExporterProtocol]) -> str:
    """Resolve exporter name from class metadata or a temporary instance.

    Raises:
        ExporterConfigurationError: If the name cannot be resolved or is empty.
    """
    class_name = exporter_class.__name__

    # Prefer class-level _name to avoid unnecessary instantiation
    class_dict = exporter_class.__dict__
    if "_name" in class_dict:
        class_name_hint = class_dict["_name"]
        if type(class_name_hint) is str and class_name_hint != "":
            return class_name_hint
        raise ExporterConfigurationError(
            class_name,
            f"Exporter class attribute _name must be a non-empty string, got {class_name_hint!r}",
        )

    try:
        exporter_instance = exporter_class()
    except Exception as e:
        raise ExporterConfigurationError(class_name, f"Failed to instantiate exporter class during discovery: {e}") from e

    resolved_name = exporter_instance.name
    if type(resolved_name) is not str or resolved_name == "":
        raise ExporterConfigurationError(class_name, f"Exporter name must be a non-empty string, got {resolved_name!r}")
    return resolved_name


def discover_exporters(exporter_plugins: Iterable[Any] = ()) -> dict[str, type[ExporterProtocol]]:
    """Discover exporters via pluggy hooks.

    Registers the built-in exporters plus any additional plugin objects,
    then calls ``telemark_get_exporters`` to build the name->class registry.

    Raises:
        ExporterConfigurationError: If plugin registration fails, a hook
            returns something other than an iterable of classes, or two
            exporters share a name.
    """
    plugin_manager = pluggy.PluginManager(PROJECT_NAME)
    plugin_manager.add_hookspecs(TelemarkExporterSpec)

    for plugin in [BuiltinExportersPlugin(), *list(exporter_plugins)]:
        try:
            plugin_manager.register(plugin)
            plugin_manager.check_pending()
        except (pluggy.PluginValidationError, ValueError) as e:
            # PluginValidationError: hook spec mismatch
            # ValueError: duplicate plugin object or name
            if isinstance(e, pluggy.PluginValidationError):
                plugin_manager.unregister(plugin=plugin)
            raise ExporterConfigurationError(
                "exporter_plugins",
                f"Invalid exporter plugin {type(plugin).__name__}: {e}",
            ) from e

    registry: dict[str, type[ExporterProtocol]] = {}
    for hook_impl in plugin_manager.hook.telemark_get_exporters.get_hookimpls():
        plugin_name = type(hook_impl.plugin).__name__
        try:
            exporters = hook_impl.function()
        except Exception as e:
            raise ExporterConfigurationError(
                "exporter_plugins",
                f"Exporter plugin {plugin_name} failed in telemark_get_exporters: {e}",
            ) from e
        if exporters is None or type(exporters) in (str, bytes):
            raise ExporterConfigurationError(
                "exporter_plugins",
                f"telemark_get_exporters in plugin {plugin_name} returned {type(exporters).__name__}; "
                "expected iterable of exporter classes",
            )
        for exporter_class in exporters:
            exporter_name = _resolve_exporter_name(exporter_class)
            if exporter_name in registry:
                raise ExporterConfigurationError(
                    exporter_name,
                    f"Duplicate exporter name '{exporter_name}' discovered: "
                    f"{registry[exporter_name].__name__} and {exporter_class.__name__}",
                )
            registry[exporter_name] = exporter_class
    return registry


def create_exporter(
    settings: TelemarkSettings,
    *,
    exporter_plugins: Iterable[Any] = (),
    client: httpx.Client | None = None,
) -> ExporterProtocol:
    """Create and configure the exporter named in settings.

    Args:
        settings: Full telemark settings
        exporter_plugins: Extra plugin objects providing telemark_get_exporters
        client: Optional httpx.Client handed to HTTP exporters (tests)

    Raises:
        ExporterConfigurationError: Unknown exporter name or invalid config
    """
    registry = discover_exporters(exporter_plugins)
    name = settings.exporter.name
    if name not in registry:
        raise ExporterConfigurationError(
            name,
            f"Unknown exporter '{name}'. Available: {', '.join(sorted(registry))}",
        )

    exporter = registry[name]()
    config: dict[str, Any] = settings.exporter.model_dump()
    config["service"] = settings.service
    if client is not None:
        config["client"] = client
    exporter.configure(config)
    logger.debug("Exporter created", exporter=name)
    return exporter
