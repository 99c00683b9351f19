"""Console exporter for envelopes.

Writes envelopes to stdout or stderr in JSON or human-readable form.
Primarily used for local debugging and tests.
"""

from __future__ import annotations

import sys
from typing import Any, Literal, TextIO, TypeGuard

import structlog

from telemark.bridge.errors import ExporterConfigurationError, SerializationError
from telemark.bridge.extraction import FieldExtractor, NativeExtractor
from telemark.contracts.enums import Signal
from telemark.contracts.results import DeliveryResult

logger = structlog.get_logger(__name__)


def _is_valid_format(v: str) -> TypeGuard[Literal["json", "pretty"]]:
    return v in {"json", "pretty"}


def _is_valid_output(v: str) -> TypeGuard[Literal["stdout", "stderr"]]:
    return v in {"stdout", "stderr"}


class ConsoleExporter:
    """Export envelopes to stdout/stderr.

    Configuration options (exporter.options):
        format: "json" (default, one envelope per line) or "pretty"
        output: "stdout" (default) or "stderr"

    Example configuration:
        exporter:
          name: console
          options:
            format: pretty
            output: stderr
    """

    _name = "console"

    _VALID_FORMATS: frozenset[str] = frozenset({"json", "pretty"})
    _VALID_OUTPUTS: frozenset[str] = frozenset({"stdout", "stderr"})

    def __init__(self) -> None:
        self._format: Literal["json", "pretty"] = "json"
        self._output: Literal["stdout", "stderr"] = "stdout"
        self._stream: TextIO = sys.stdout
        self._extractor: FieldExtractor = NativeExtractor()

    @property
    def name(self) -> str:
        return self._name

    def configure(self, config: dict[str, Any]) -> None:
        """Configure output format and stream.

        Raises:
            ExporterConfigurationError: If configuration values are invalid
        """
        options = config.get("options", {})
        format_value = options.get("format", "json")
        if not isinstance(format_value, str):
            raise ExporterConfigurationError(self._name, f"'format' must be a string, got {type(format_value).__name__}")
        if _is_valid_format(format_value):
            self._format = format_value
        else:
            raise ExporterConfigurationError(
                self._name,
                f"Invalid format '{format_value}'. Must be one of: {', '.join(sorted(self._VALID_FORMATS))}",
            )

        output_value = options.get("output", "stdout")
        if not isinstance(output_value, str):
            raise ExporterConfigurationError(self._name, f"'output' must be a string, got {type(output_value).__name__}")
        if _is_valid_output(output_value):
            self._output = output_value
        else:
            raise ExporterConfigurationError(
                self._name,
                f"Invalid output '{output_value}'. Must be one of: {', '.join(sorted(self._VALID_OUTPUTS))}",
            )
        self._stream = sys.stdout if self._output == "stdout" else sys.stderr
        logger.debug("Console exporter configured", format=self._format, output=self._output)

    def export(self, envelope_json: str, signal: Signal) -> DeliveryResult:
        """Write one envelope. Never raises."""
        try:
            if self._format == "json":
                line = envelope_json
            else:
                line = self._format_pretty(self._extractor.extract(envelope_json), signal)
            self._stream.write(line + "\n")
            self._stream.flush()
        except SerializationError as e:
            return DeliveryResult.failed(f"serialization failed: {e}", retryable=False)
        except Exception as e:
            logger.warning("Console export failed", signal=signal.value, error=str(e), error_type=type(e).__name__)
            return DeliveryResult.failed(f"console write failed: {e}")
        return DeliveryResult.ok(bytes_sent=len(envelope_json.encode("utf-8")))

    @staticmethod
    def _format_pretty(fields: dict[str, Any], signal: Signal) -> str:
        timestamp = fields.get("end_time") or fields.get("timestamp") or fields.get("start_time") or "-"
        title = fields.get("operation") or fields.get("name") or fields.get("message") or ""
        details = [f"{k}={v}" for k, v in fields.items() if k not in ("signal", "attributes") and v is not None]
        attributes = fields.get("attributes") or {}
        details.extend(f"{k}={v}" for k, v in attributes.items())
        return f"[{timestamp}] {signal.value.upper()} {title}: {', '.join(details)}"

    def close(self) -> None:
        # Never close stdout/stderr
        pass
