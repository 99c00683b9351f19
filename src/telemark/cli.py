"""telemark command line interface.

Operational commands for the delivery pipeline: drain the queue once or
on a schedule, purge processed entries, inspect queue state and the
dead-letter store.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from telemark import __version__
from telemark.bridge.errors import ExporterConfigurationError
from telemark.core.config import TelemarkSettings, load_settings

if TYPE_CHECKING:
    from telemark.api import Telemetry
    from telemark.core.store.database import TelemetryDB
    from telemark.diagnostics.channel import DiagnosticChannel

__all__ = ["app"]

_DEFAULT_SETTINGS = Path("settings.yaml")

# --verbose / --json-logs from the callback; they override the settings file
_log_flags: dict[str, bool] = {"verbose": False, "json_logs": False}

app = typer.Typer(
    name="telemark",
    help="telemark: durable telemetry export pipeline.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"telemark version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from a .env file.

    Raises:
        typer.Exit: If an explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)
    return load_dotenv(override=False)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """telemark: durable telemetry export pipeline."""
    from telemark.core.logging import configure_logging

    # Provisional until a command has loaded its settings
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")
    _log_flags.update(verbose=verbose, json_logs=json_logs)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)


# === Helpers ===


def _load_config(settings: str | None) -> TelemarkSettings:
    """Load settings from --settings, ./settings.yaml, or defaults.

    Logging is reconfigured from the loaded settings (see
    ``configure_from_settings``).

    Raises:
        typer.Exit: On a missing explicit file or invalid configuration
    """
    if settings is not None:
        config = _read_settings(Path(settings).expanduser())
    elif _DEFAULT_SETTINGS.exists():
        config = _read_settings(_DEFAULT_SETTINGS)
    else:
        config = TelemarkSettings()

    from telemark.core.logging import configure_from_settings

    configure_from_settings(config, **_log_flags)
    return config


def _read_settings(settings_path: Path) -> TelemarkSettings:
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings_path}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings_path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _open_telemetry(config: TelemarkSettings) -> Telemetry:
    from telemark.api import Telemetry

    try:
        return Telemetry(config)
    except ExporterConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _open_store(config: TelemarkSettings) -> tuple[TelemetryDB, DiagnosticChannel]:
    from telemark.core.store.database import TelemetryDB
    from telemark.diagnostics.channel import DiagnosticChannel

    db = TelemetryDB.from_url(config.store.url, echo=config.store.echo)
    diagnostics = DiagnosticChannel(
        db,
        url=config.diagnostics.url,
        mirror_to_log=config.diagnostics.mirror_to_log,
        debug=config.debug,
    )
    return db, diagnostics


_SETTINGS_OPTION = typer.Option(
    None,
    "--settings",
    "-s",
    help="Path to settings YAML file (default: ./settings.yaml if present).",
)


# === Commands ===


@app.command("process-queue")
def process_queue(
    settings: str | None = _SETTINGS_OPTION,
    limit: int | None = typer.Option(
        None,
        "--limit",
        "-l",
        min=1,
        help="Maximum entries to claim (default: delivery.batch_size).",
    ),
) -> None:
    """Run one delivery pass over the queue.

    Suitable for an external scheduler (cron, systemd timer). Concurrent
    runs are safe: each entry is claimed by exactly one run.
    """
    config = _load_config(settings)
    telemetry = _open_telemetry(config)
    try:
        batch = telemetry.worker.process_batch(limit)
    finally:
        telemetry.close()
    typer.echo(
        f"Claimed {batch.claimed}: {batch.delivered} delivered, {batch.failed} failed, "
        f"{batch.dead_lettered} dead-lettered"
    )


@app.command()
def worker(
    settings: str | None = _SETTINGS_OPTION,
    interval: float | None = typer.Option(
        None,
        "--interval",
        "-i",
        min=0.1,
        help="Poll interval in seconds (default: delivery.poll_interval_seconds).",
    ),
) -> None:
    """Poll the queue continuously until interrupted (Ctrl+C)."""
    config = _load_config(settings)
    telemetry = _open_telemetry(config)
    effective = interval if interval is not None else config.delivery.poll_interval_seconds
    typer.echo(f"Delivery worker polling every {effective}s (Ctrl+C to stop)")
    telemetry.start_worker(effective)
    try:
        while telemetry.worker.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        typer.echo("Stopping worker...")
    finally:
        telemetry.close()
    metrics = telemetry.worker.health_metrics
    typer.echo(f"Delivered {metrics['delivered']}, failed attempts {metrics['failures']}")


@app.command()
def purge(
    settings: str | None = _SETTINGS_OPTION,
    retention_days: int | None = typer.Option(
        None,
        "--retention-days",
        "-r",
        min=1,
        help="Delete processed entries older than this many days (default: delivery.retention_days).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show what would be deleted without deleting.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt.",
    ),
) -> None:
    """Purge processed queue entries past the retention period.

    Pending and dead-lettered entries are never purged.

    Examples:

        # See what would be deleted
        telemark purge --dry-run

        # Delete processed entries older than 30 days
        telemark purge --retention-days 30 --yes
    """
    from telemark.delivery.retention import RetentionManager

    config = _load_config(settings)
    effective_days = retention_days if retention_days is not None else config.delivery.retention_days
    db, diagnostics = _open_store(config)
    try:
        manager = RetentionManager(db, diagnostics)
        expired = manager.count_expired(effective_days)
        if expired == 0:
            typer.echo(f"No processed entries older than {effective_days} days.")
            return
        if dry_run:
            typer.echo(f"Would delete {expired} processed entries older than {effective_days} days.")
            return
        if not yes:
            typer.confirm(f"Delete {expired} processed entries older than {effective_days} days?", abort=True)
        result = manager.purge_processed(effective_days)
        typer.echo(f"Deleted {result.deleted_count} entries in {result.duration_seconds:.2f}s.")
    finally:
        diagnostics.close()
        db.close()


@app.command()
def status(
    settings: str | None = _SETTINGS_OPTION,
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json'.",
    ),
) -> None:
    """Show delivery queue, dead-letter and diagnostic counts."""
    from telemark.delivery.queue import DeliveryQueue

    config = _load_config(settings)
    db, diagnostics = _open_store(config)
    try:
        queue = DeliveryQueue(db, max_attempts=config.delivery.max_attempts)
        stats = queue.stats()
        dead_letters = queue.dead_letters.count()
        diagnostic_count = diagnostics.count()
    finally:
        diagnostics.close()
        db.close()

    if output_format == "json":
        typer.echo(
            json.dumps(
                {
                    "pending": stats.pending,
                    "processed": stats.processed,
                    "dead_lettered": stats.dead_lettered,
                    "total": stats.total,
                    "dead_letter_records": dead_letters,
                    "diagnostic_errors": diagnostic_count,
                }
            )
        )
        return
    typer.echo(f"Queue:        {stats.pending} pending, {stats.processed} processed, {stats.dead_lettered} dead-lettered")
    typer.echo(f"Dead letters: {dead_letters}")
    typer.echo(f"Diagnostics:  {diagnostic_count}")


@app.command("dead-letters")
def dead_letters(
    settings: str | None = _SETTINGS_OPTION,
    limit: int = typer.Option(20, "--limit", "-l", min=1, help="Number of records to show."),
) -> None:
    """List the most recent dead-letter records."""
    from telemark.delivery.dead_letter import DeadLetterStore

    config = _load_config(settings)
    db, diagnostics = _open_store(config)
    try:
        records = DeadLetterStore(db).list_recent(limit)
    finally:
        diagnostics.close()
        db.close()

    if not records:
        typer.echo("No dead letters.")
        return
    for record in records:
        status_code = record.http_status if record.http_status is not None else "-"
        typer.echo(
            f"#{record.dead_letter_id} {record.exported_at.isoformat()} {record.signal.value} "
            f"http={status_code} retries={record.retry_count} queue_id={record.queue_id}: {record.error_message}"
        )


if __name__ == "__main__":
    app()
