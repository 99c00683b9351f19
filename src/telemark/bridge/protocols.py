"""Protocol definition for exporters.

Exporters turn one generic envelope into a protocol-specific payload and
deliver it. The recorder and the queue worker depend on this protocol,
never on a concrete backend, so tests can substitute doubles.
"""

from typing import Any, Protocol, runtime_checkable

from telemark.contracts.enums import Signal
from telemark.contracts.results import DeliveryResult


@runtime_checkable
class ExporterProtocol(Protocol):
    """Protocol for telemetry exporters.

    Lifecycle:
        1. Discovery: telemark_get_exporters hook returns exporter classes
        2. Instantiation: factory creates an instance (no-arg constructor)
        3. Configuration: configure() called with exporter settings
        4. Operation: export() called per envelope (must not raise)
        5. Shutdown: close() called once

    Error handling:
        - configure() MUST raise ExporterConfigurationError on invalid config
        - export() MUST NOT raise - failures are returned as DeliveryResult
        - close() MUST be idempotent
    """

    @property
    def name(self) -> str:
        """Exporter name for configuration reference (exporter.name)."""
        ...

    def configure(self, config: dict[str, Any]) -> None:
        """Configure the exporter.

        Raises:
            ExporterConfigurationError: If configuration is invalid
        """
        ...

    def export(self, envelope_json: str, signal: Signal) -> DeliveryResult:
        """Deliver one envelope.

        Thread Safety:
            May be called concurrently from producer threads (sync mode) and
            the queue worker thread.

        Args:
            envelope_json: Generic envelope JSON text
            signal: Signal kind, used to pick the endpoint

        Returns:
            DeliveryResult describing success or failure
        """
        ...

    def close(self) -> None:
        """Release resources. Safe to call multiple times."""
        ...
