"""Out-of-band diagnostic channel for the SDK's own failures.

Every record is written on a fresh connection from the channel's own
engine and committed before ``record_error`` returns. It never joins a
transaction the application holds open on its own connection, so rolling
that transaction back cannot erase the evidence.

By default the channel shares the telemetry store's engine (a separate
pooled connection). ``diagnostics.url`` points it at a different database
entirely.

The channel is the last line of defence: it never raises. If even the
diagnostic write fails, the failure is logged at CRITICAL through structlog.
"""

from __future__ import annotations

import threading
from typing import Self

import structlog
from sqlalchemy import func, select

from telemark.contracts.records import DiagnosticError
from telemark.contracts.results import InternalFault
from telemark.core.store._helpers import now
from telemark.core.store.database import TelemetryDB
from telemark.core.store.repositories import DiagnosticErrorRepository
from telemark.core.store.schema import diagnostic_errors_table

logger = structlog.get_logger(__name__)

_MAX_MESSAGE_LENGTH = 4000


class DiagnosticChannel:
    """Append-only sink for internal telemetry failures.

    Args:
        db: Telemetry store whose engine is used when no separate URL is given
        url: Optional separate database URL for diagnostic records
        mirror_to_log: Also emit each record through structlog
        debug: Include stack traces in the mirrored log lines

    Thread Safety:
        record_error() may be called from any thread. Each call uses its own
        connection; the table is append-only so writers never contend on
        the same row.
    """

    def __init__(
        self,
        db: TelemetryDB | None = None,
        *,
        url: str | None = None,
        mirror_to_log: bool = True,
        debug: bool = False,
    ) -> None:
        if db is None and url is None:
            raise ValueError("DiagnosticChannel requires a TelemetryDB or a url")
        self._owns_db = url is not None
        if url is not None:
            self._db = TelemetryDB.from_url(url, create_tables=False)
            diagnostic_errors_table.create(self._db.engine, checkfirst=True)
        else:
            assert db is not None
            self._db = db
        self._mirror_to_log = mirror_to_log
        self._debug = debug
        self._repo = DiagnosticErrorRepository()
        self._write_failures = 0
        self._lock = threading.Lock()

    @property
    def write_failures(self) -> int:
        """Number of records that could not be persisted."""
        return self._write_failures

    def record_error(
        self,
        message: str,
        code: str | None = None,
        module: str = "telemark",
        trace_id: str | None = None,
        span_id: str | None = None,
        *,
        error_stack: str | None = None,
    ) -> None:
        """Persist one diagnostic record in its own committed transaction.

        Never raises.
        """
        text = (message or "<no message>")[:_MAX_MESSAGE_LENGTH]
        if self._mirror_to_log:
            logger.warning(
                "Telemetry internal error",
                diagnostic_module=module,
                code=code,
                detail=text,
                correlated_trace_id=trace_id,
                correlated_span_id=span_id,
            )
            if self._debug and error_stack:
                logger.debug("Telemetry internal error stack", diagnostic_module=module, stack=error_stack)
        try:
            with self._db.connection() as conn:
                conn.execute(
                    diagnostic_errors_table.insert().values(
                        recorded_at=now(),
                        message=text,
                        code=code,
                        module=module,
                        trace_id=trace_id,
                        span_id=span_id,
                        error_stack=error_stack,
                    )
                )
        except Exception as e:
            with self._lock:
                self._write_failures += 1
            logger.critical(
                "Diagnostic channel write failed",
                diagnostic_module=module,
                detail=text,
                error=str(e),
                error_type=type(e).__name__,
            )

    def record_fault(self, fault: InternalFault) -> None:
        self.record_error(
            fault.message,
            fault.code,
            fault.module,
            fault.trace_id,
            fault.span_id,
            error_stack=fault.error_stack,
        )

    def record_info(self, message: str, module: str, *, code: str = "INFO") -> None:
        """Operational note (e.g. retention purge counts), stored alongside errors."""
        self.record_error(message, code, module)

    def list_recent(self, limit: int = 50, *, module: str | None = None) -> list[DiagnosticError]:
        query = select(diagnostic_errors_table).order_by(diagnostic_errors_table.c.error_id.desc()).limit(limit)
        if module is not None:
            query = query.where(diagnostic_errors_table.c.module == module)
        with self._db.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [self._repo.load(row) for row in rows]

    def count(self, *, module: str | None = None, code: str | None = None) -> int:
        query = select(func.count()).select_from(diagnostic_errors_table)
        if module is not None:
            query = query.where(diagnostic_errors_table.c.module == module)
        if code is not None:
            query = query.where(diagnostic_errors_table.c.code == code)
        with self._db.connection() as conn:
            return int(conn.execute(query).scalar() or 0)

    def close(self) -> None:
        if self._owns_db:
            self._db.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
