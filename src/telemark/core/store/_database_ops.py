"""Database operation helpers to reduce boilerplate in the recorder.

Consolidates the repeated `with self._db.connection() as conn:` pattern.
"""

from typing import TYPE_CHECKING, Any

from sqlalchemy import Executable
from sqlalchemy.engine import Row

if TYPE_CHECKING:
    from telemark.core.store.database import TelemetryDB


class DatabaseOps:
    """Helper for common database operations.

    Each call runs in its own short transaction.
    """

    def __init__(self, db: "TelemetryDB") -> None:
        self._db = db

    def execute_fetchone(self, query: Executable) -> Row[Any] | None:
        """Execute query and return single row or None."""
        with self._db.connection() as conn:
            result = conn.execute(query)
            return result.fetchone()

    def execute_fetchall(self, query: Executable) -> list[Row[Any]]:
        """Execute query and return all rows."""
        with self._db.connection() as conn:
            result = conn.execute(query)
            return list(result.fetchall())

    def execute_scalar(self, query: Executable) -> Any:
        """Execute query and return the first column of the first row."""
        with self._db.connection() as conn:
            return conn.execute(query).scalar()

    def execute_insert(self, stmt: Executable) -> int | None:
        """Execute insert statement and return the new integer key, if any.

        Raises:
            ValueError: If zero rows are affected
        """
        with self._db.connection() as conn:
            result = conn.execute(stmt)
            if result.rowcount == 0:
                raise ValueError("execute_insert: zero rows affected (missing parent row or constraint violation)")
            key = result.inserted_primary_key
            if key and isinstance(key[0], int):
                return key[0]
            return None

    def execute_update(self, stmt: Executable) -> int:
        """Execute update (or delete) statement and return rows affected.

        Zero rows is a legitimate outcome here: conditional updates are
        how no-op closes and lost claims are detected.
        """
        with self._db.connection() as conn:
            result = conn.execute(stmt)
            return int(result.rowcount)
