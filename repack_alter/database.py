"""A thin session over a database connection, with error and transaction tracking."""

from __future__ import annotations

import enum
from typing import Any, Iterable, Optional, Protocol, Sequence

SQLSTATE_INVALID_SCHEMA_NAME = "3F000"
SQLSTATE_UNDEFINED_FUNCTION = "42883"
SQLSTATE_LOCK_NOT_AVAILABLE = "55P03"


class DatabaseError(Exception):
    """A statement failed; sqlstate holds the server's error code if known."""

    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.sqlstate = sqlstate


class Connection(Protocol):
    """What a session needs from a connection using $n placeholders."""

    def execute(
        self, sql: str, params: Sequence[Optional[str]]
    ) -> Optional[Iterable[Sequence[Any]]]: ...

    def close(self) -> None: ...


class _TxState(enum.Enum):
    IDLE = enum.auto()
    ACTIVE = enum.auto()
    FAILED = enum.auto()


def _statement_kind(sql: str) -> str:
    words = sql.split(None, 2)
    if not words:
        return ""
    first = words[0].upper()
    if first == "ROLLBACK" and len(words) > 1 and words[1].upper() == "TO":
        return "ROLLBACK TO"
    return first


class Session:
    """One database connection as used by the repack client."""

    def __init__(
        self, connection: Connection, server_version: int, is_superuser: bool
    ) -> None:
        self.connection = connection
        self.server_version = server_version
        self.is_superuser = is_superuser
        self._state = _TxState.IDLE
        self._closed = False

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_transaction(self) -> bool:
        """True inside a transaction block, failed or not."""
        return self._state is not _TxState.IDLE

    @property
    def transaction_failed(self) -> bool:
        """True when the current transaction block has seen an error."""
        return self._state is _TxState.FAILED

    def execute(
        self, sql: str, params: Sequence[Optional[str]] | None = None
    ) -> list[tuple[Any, ...]]:
        """Run a statement and return its rows."""
        if self._closed:
            raise DatabaseError("connection is closed")
        kind = _statement_kind(sql)
        try:
            result = self.connection.execute(sql, list(params or ()))
        except DatabaseError:
            self._on_failure()
            raise
        except Exception as exc:
            self._on_failure()
            sqlstate = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
            raise DatabaseError(str(exc), sqlstate) from exc
        self._on_success(kind)
        return [tuple(row) for row in result] if result is not None else []

    def command(
        self, sql: str, params: Sequence[Optional[str]] | None = None
    ) -> None:
        """Run a statement whose result is not needed."""
        self.execute(sql, params)

    def rollback(self) -> None:
        """Abandon the current transaction, ignoring any error."""
        if self._closed:
            return
        try:
            self.command("ROLLBACK")
        except DatabaseError:
            pass
        self._state = _TxState.IDLE

    def close(self) -> None:
        """Close the connection; closing twice does nothing."""
        if self._closed:
            return
        self._closed = True
        self._state = _TxState.IDLE
        self.connection.close()

    def backend_pid(self) -> int:
        """Process id of the server backend serving this session."""
        rows = self.execute("SELECT pg_backend_pid()")
        return int(rows[0][0])

    def _on_failure(self) -> None:
        if self._state is _TxState.ACTIVE:
            self._state = _TxState.FAILED

    def _on_success(self, kind: str) -> None:
        if kind in ("BEGIN", "START"):
            self._state = _TxState.ACTIVE
        elif kind in ("COMMIT", "END", "ABORT", "ROLLBACK"):
            self._state = _TxState.IDLE
        elif kind == "ROLLBACK TO" and self._state is _TxState.FAILED:
            self._state = _TxState.ACTIVE