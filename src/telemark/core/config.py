"""Configuration schema and loading for telemark.

Settings are frozen pydantic models. ``load_settings`` reads a YAML file
through Dynaconf, applies ``TELEMARK_*`` environment overrides and expands
``${VAR}`` / ``${VAR:-default}`` references before validation.

Example YAML:
    service:
      name: billing-api
      version: 2.4.1
      environment: production
      tenant_id: acme
    store:
      url: postgresql://telemetry:${DB_PASSWORD}@db/telemetry
    exporter:
      collector_url: http://otel-collector:4318
      api_key: ${OTEL_API_KEY:-}
    delivery:
      mode: async
      max_attempts: 5
    activation:
      - signal: trace
        pattern: "billing.*"
        sampling_rate: 0.25
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from telemark.contracts.enums import (
    ActivationSignal,
    DeadLetterPolicy,
    DeliveryMode,
    JsonParseMode,
    LogLevel,
    SignalEndpoint,
)


class ServiceSettings(BaseModel):
    """Resource attribution stamped on every outbound payload."""

    model_config = {"frozen": True}

    name: str = Field(default="unknown_service", min_length=1, description="service.name resource attribute")
    version: str = Field(default="0.0.0", description="service.version resource attribute")
    environment: str = Field(default="development", description="deployment.environment resource attribute")
    tenant_id: str | None = Field(default=None, description="Default tenant for all recorded telemetry")
    tenant_name: str | None = Field(default=None, description="Human-readable tenant name")


class StoreSettings(BaseModel):
    """Telemetry store (traces, spans, queue, dead letters)."""

    model_config = {"frozen": True}

    # NOTE: str rather than Path - Path mangles "postgresql://user@host/db"
    url: str = Field(default="sqlite:///./telemark.db", description="Full SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Echo SQL statements")


class DiagnosticsSettings(BaseModel):
    """Out-of-band diagnostic error channel."""

    model_config = {"frozen": True}

    url: str | None = Field(
        default=None,
        description="Separate database URL for diagnostic records (defaults to the store's engine)",
    )
    mirror_to_log: bool = Field(default=True, description="Also emit each diagnostic record through structlog")


class ExporterSettings(BaseModel):
    """Protocol bridge and HTTP transport configuration."""

    model_config = {"frozen": True}

    name: str = Field(default="otlp", description="Exporter name as registered through telemark_get_exporters")
    collector_url: str = Field(default="http://localhost:4318", description="Collector base URL")
    traces_endpoint: str | None = Field(default=None, description="Override for the traces endpoint")
    metrics_endpoint: str | None = Field(default=None, description="Override for the metrics endpoint")
    logs_endpoint: str | None = Field(default=None, description="Override for the logs endpoint")
    timeout_seconds: float = Field(default=10.0, gt=0, description="Per-request HTTP timeout")
    api_key: str | None = Field(default=None, description="Sent as 'Authorization: Bearer <api_key>'")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers")
    chunk_threshold_bytes: int = Field(
        default=32_768,
        gt=0,
        description="Bodies larger than this use the growable buffer and chunked transfer",
    )
    chunk_size_bytes: int = Field(default=8_192, gt=0, description="Chunk size for chunked transfer")
    max_payload_bytes: int = Field(
        default=16 * 1024 * 1024,
        gt=0,
        description="Hard limit; larger bodies fail serialization",
    )
    json_parse_mode: JsonParseMode = Field(
        default=JsonParseMode.AUTO,
        description="Envelope field extraction: auto, native, or fallback",
    )
    options: dict[str, Any] = Field(default_factory=dict, description="Exporter-specific options")

    @field_validator("collector_url")
    @classmethod
    def validate_collector_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"collector_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_payload_limits(self) -> ExporterSettings:
        if self.max_payload_bytes < self.chunk_threshold_bytes:
            raise ValueError("max_payload_bytes must be >= chunk_threshold_bytes")
        return self

    def endpoint_for(self, endpoint: SignalEndpoint) -> str:
        """Resolve the full URL for one signal endpoint."""
        match endpoint:
            case SignalEndpoint.TRACES:
                override = self.traces_endpoint
            case SignalEndpoint.METRICS:
                override = self.metrics_endpoint
            case SignalEndpoint.LOGS:
                override = self.logs_endpoint
        if override:
            return override
        return f"{self.collector_url}{endpoint.path}"


class DeliverySettings(BaseModel):
    """Delivery mode, retry and dead-letter behaviour."""

    model_config = {"frozen": True}

    mode: DeliveryMode = Field(default=DeliveryMode.ASYNC, description="sync exports inline; async enqueues")
    max_attempts: int = Field(default=3, gt=0, description="Attempts before an entry is dead-lettered")
    batch_size: int = Field(default=100, gt=0, description="Entries claimed per worker run")
    poll_interval_seconds: float = Field(default=60.0, gt=0, description="Background worker poll interval")
    claim_lease_seconds: float = Field(default=300.0, gt=0, description="How long a worker run owns a claimed entry")
    dead_letter_policy: DeadLetterPolicy = Field(
        default=DeadLetterPolicy.FLAG,
        description="flag keeps exhausted entries for audit; delete removes them",
    )
    retention_days: int = Field(default=7, gt=0, description="Processed queue entries older than this are purged")


class ActivationRuleSettings(BaseModel):
    """One activation rule deciding whether a signal is recorded.

    Patterns support '*' wildcards: "*", "billing.*", "billing.charge".
    """

    model_config = {"frozen": True}

    signal: ActivationSignal
    pattern: str = Field(default="*", min_length=1)
    tenant_id: str = Field(default="ALL", description="Tenant id or ALL")
    enabled: bool = True
    enabled_from: datetime | None = None
    enabled_to: datetime | None = None
    min_level: LogLevel | None = Field(default=None, description="Log rules only: minimum level recorded")
    sampling_rate: float = Field(default=1.0, ge=0.0, le=1.0)

    @field_validator("min_level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v

    @model_validator(mode="after")
    def validate_window(self) -> ActivationRuleSettings:
        if self.enabled_from and self.enabled_to and self.enabled_to < self.enabled_from:
            raise ValueError("enabled_to must not be earlier than enabled_from")
        return self


class LoggingSettings(BaseModel):
    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_output: bool = False


class TelemarkSettings(BaseModel):
    """Top-level telemark configuration.

    ``TelemarkSettings()`` with no arguments is valid: local SQLite store,
    collector on localhost:4318, async delivery.
    """

    model_config = {"frozen": True}

    debug: bool = Field(default=False, description="Verbose diagnostics and DEBUG logging")
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    diagnostics: DiagnosticsSettings = Field(default_factory=DiagnosticsSettings)
    exporter: ExporterSettings = Field(default_factory=ExporterSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    activation: list[ActivationRuleSettings] = Field(default_factory=list)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def log_level(self) -> str:
        return "DEBUG" if self.debug else self.logging.level


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """
    import os

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original so validation reports it
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    """Lower-case mapping keys (Dynaconf upper-cases keys from env vars)."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path) -> TelemarkSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (TELEMARK_*) - highest priority
    2. Config file
    3. Defaults from the pydantic schema - lowest priority

    Environment variable format: TELEMARK_EXPORTER__COLLECTOR_URL for
    nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated TelemarkSettings instance

    Raises:
        ValidationError: If configuration fails pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="TELEMARK",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lower_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return TelemarkSettings(**raw_config)
