"""Protocol-bridge exceptions.

These never cross the exporter boundary during export: ``export()`` turns
them into a failed ``DeliveryResult``. ``ExporterConfigurationError`` is
the one raised to callers, at setup time.
"""


class ExporterConfigurationError(Exception):
    """Raised when an exporter is configured with invalid settings.

    This is raised during exporter setup (configure/discovery), NOT during
    export operations.

    Attributes:
        exporter_name: Name of the exporter that failed
        message: Human-readable error description
    """

    def __init__(self, exporter_name: str, message: str) -> None:
        self.exporter_name = exporter_name
        self.message = message
        super().__init__(f"Exporter '{exporter_name}' failed: {message}")


class SerializationError(Exception):
    """Envelope could not be turned into a wire payload."""


class ExtractionError(SerializationError):
    """Envelope text is not a well-formed flat JSON object."""


class BufferOverflowError(Exception):
    """Write exceeded a fixed buffer's capacity."""


class PayloadTooLargeError(SerializationError):
    """Serialized payload exceeds the hard size limit."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"payload of at least {size} bytes exceeds limit of {limit} bytes")
