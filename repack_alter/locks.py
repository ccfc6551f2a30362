"""Advisory and table locks taken while repacking, and removal of competing DDL."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from repack_alter.database import (
    SQLSTATE_LOCK_NOT_AVAILABLE,
    DatabaseError,
    Session,
)
from repack_alter.sql import REPACK_LOCK_PREFIX, CompetingLockAction, competing_locks_query

log = logging.getLogger(__name__)

_SAVEPOINT = "SAVEPOINT repack_sp1"
_ROLLBACK_TO_SAVEPOINT = "ROLLBACK TO SAVEPOINT repack_sp1"
_RELEASE_SAVEPOINT = "RELEASE SAVEPOINT repack_sp1"
_RESET_LOCK_TIMEOUT = "RESET lock_timeout"

_TERMINATE_CONFLICTED = (
    "SELECT pg_terminate_backend(pid) FROM pg_locks"
    " WHERE locktype = 'relation'"
    "   AND relation = $1 AND pid <> pg_backend_pid()"
)
_CANCEL_CONFLICTED = (
    "SELECT pg_cancel_backend(pid) FROM pg_locks"
    " WHERE locktype = 'relation'"
    "   AND relation = $1 AND pid <> pg_backend_pid()"
)


@dataclass
class LockSettings:
    """How long to wait for locks and whether other backends may be killed."""

    wait_timeout: int = 60
    no_kill_backend: bool = False
    clock: Callable[[], float] = field(default=time.monotonic)


def _lock_wait_msec(attempt: int) -> int:
    return min(1000, attempt * 100)


def _is_true(value: object) -> bool:
    return value is True or value == "t"


def advisory_lock(session: Session, relid: int | str) -> bool:
    """Take the advisory lock that keeps other repacks off the table.

    Raises DatabaseError when the lock is held elsewhere or the query fails.
    """
    # A table OID is unsigned; shift it into signed 4-byte integer range.
    rows = session.execute(
        "SELECT pg_try_advisory_lock($1, CAST(-2147483648 + $2::bigint AS integer))",
        [REPACK_LOCK_PREFIX, str(relid)],
    )
    if not rows or not _is_true(rows[0][0]):
        raise DatabaseError(
            "Another pg_repack command may be running on the table. "
            "Please try again later."
        )
    return True


def advisory_unlock(session: Session, relid: int | str) -> None:
    """Release the advisory lock taken by advisory_lock."""
    session.execute(
        "SELECT pg_advisory_unlock($1, CAST(-2147483648 + $2::bigint AS integer))",
        [REPACK_LOCK_PREFIX, str(relid)],
    )


def kill_ddl(
    session: Session, relid: int | str, terminate: bool, no_kill_backend: bool
) -> bool:
    """Cancel (or terminate) backends waiting for an exclusive lock on relid.

    Returns False when competing backends remain or could not be removed.
    """
    relid = int(relid)
    competing = session.execute(
        competing_locks_query(CompetingLockAction.COUNT, relid))
    if not competing:
        log.debug("No competing DDL to cancel.")
        return True

    if no_kill_backend:
        log.warning(
            "%d unsafe queries remain but do not cancel them and skip to repack it",
            len(competing),
        )
        return False

    try:
        canceled = session.execute(
            competing_locks_query(CompetingLockAction.CANCEL, relid))
    except DatabaseError as exc:
        log.warning("Error canceling unsafe queries: %s", exc.message)
        return False

    if canceled and terminate and session.server_version >= 80400:
        log.warning(
            "Canceled %d unsafe queries. Terminating any remaining PIDs.",
            len(canceled),
        )
        try:
            session.execute(
                competing_locks_query(CompetingLockAction.TERMINATE, relid))
        except DatabaseError as exc:
            log.warning("Error killing unsafe queries: %s", exc.message)
            return False
    elif canceled:
        log.info("Canceled %d unsafe queries", len(canceled))
    return True


def _finish_lock_attempts(session: Session) -> None:
    if session.in_transaction and not session.transaction_failed:
        session.command(_RELEASE_SAVEPOINT)


def lock_exclusive(
    session: Session,
    relid: int | str,
    lock_query: str,
    start_xact: bool,
    settings: LockSettings,
) -> bool:
    """Take an ACCESS EXCLUSIVE lock with lock_query, retrying on conflicts.

    After wait_timeout seconds conflicting backends are cancelled, after
    twice that they are terminated, unless no_kill_backend is set, in which
    case the attempt is abandoned.
    """
    start = settings.clock()
    relid_text = str(relid)
    ok = True

    if start_xact:
        session.command("BEGIN ISOLATION LEVEL READ COMMITTED")
    session.command(_SAVEPOINT)

    attempt = 0
    while True:
        attempt += 1
        duration = settings.clock() - start
        if duration > settings.wait_timeout:
            if settings.no_kill_backend:
                log.warning("timed out, do not cancel conflicting backends")
                ok = False
                session.command(_ROLLBACK_TO_SAVEPOINT)
                break
            if session.server_version >= 80400 and duration > settings.wait_timeout * 2:
                log.warning("terminating conflicted backends")
                cancel_query = _TERMINATE_CONFLICTED
            else:
                log.warning("canceling conflicted backends")
                cancel_query = _CANCEL_CONFLICTED
            session.command(cancel_query, [relid_text])

        session.command(f"SET LOCAL lock_timeout = {_lock_wait_msec(attempt)}")
        try:
            session.execute(lock_query)
        except DatabaseError as exc:
            if exc.sqlstate == SQLSTATE_LOCK_NOT_AVAILABLE:
                session.command(_ROLLBACK_TO_SAVEPOINT)
                continue
            log.warning("%s", exc.message)
            ok = False
        break

    _finish_lock_attempts(session)
    if not ok and start_xact:
        session.rollback()
    session.command(_RESET_LOCK_TIMEOUT)
    return ok


def lock_access_share(
    session: Session, relid: int | str, target_name: str, settings: LockSettings
) -> bool:
    """Take an ACCESS SHARE lock inside the open transaction, removing DDL in the way."""
    start = settings.clock()
    ok = True
    session.command(_SAVEPOINT)

    attempt = 0
    while True:
        attempt += 1
        duration = settings.clock() - start
        # Waiting DDL must be deadlocked already, so it is removed at once.
        ok = kill_ddl(
            session, relid, duration > settings.wait_timeout * 2,
            settings.no_kill_backend,
        )
        if not ok:
            break

        session.command(f"SET LOCAL lock_timeout = {_lock_wait_msec(attempt)}")
        try:
            session.execute(f"LOCK TABLE {target_name} IN ACCESS SHARE MODE")
        except DatabaseError as exc:
            if exc.sqlstate == SQLSTATE_LOCK_NOT_AVAILABLE:
                session.command(_ROLLBACK_TO_SAVEPOINT)
                continue
            log.warning("%s", exc.message)
            ok = False
        break

    _finish_lock_attempts(session)
    session.command(_RESET_LOCK_TIMEOUT)
    return ok