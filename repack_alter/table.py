"""Repacking of a single table: copy, index rebuild, log replay and swap."""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Sequence

from repack_alter.database import DatabaseError, Session
from repack_alter.locks import (
    LockSettings,
    advisory_lock,
    advisory_unlock,
    kill_ddl,
    lock_access_share,
    lock_exclusive,
)
from repack_alter.models import INVALID_OID, IndexStatus, RepackIndex, RepackTable
from repack_alter.options import PROGRAM_NAME, RepackOptions
from repack_alter.sql import XID_ALIVE, xid_snapshot_query

log = logging.getLogger(__name__)

POLL_TIMEOUT = 3


def _oid(value: Any) -> int:
    return INVALID_OID if value is None else int(value)


def _pg_array(value: Any) -> str:
    if isinstance(value, str):
        return value
    return "{" + ",".join(str(item) for item in value) + "}"


def apply_log(session: Session, table: RepackTable, count: int) -> int:
    """Replay up to count logged changes into the temp table (0: all)."""
    rows = session.execute(
        "SELECT repack_alter.repack_apply($1, $2, $3, $4, $5, $6)",
        [table.sql_peek, table.sql_insert, table.sql_delete,
         table.sql_update, table.sql_pop, str(count)],
    )
    return int(rows[0][0])


def _next_unprocessed(indexes: Sequence[RepackIndex]) -> RepackIndex | None:
    return next(
        (index for index in indexes if index.status is IndexStatus.UNPROCESSED),
        None,
    )


def rebuild_indexes(
    session: Session, table: RepackTable, workers: Sequence[Session]
) -> bool:
    """Build the table's indexes on the temp table, in parallel over workers.

    Returns False when a worker fails to build an index.
    """
    indexes = table.indexes
    num_workers = min(len(workers), len(indexes))
    log.debug("Have %d indexes and num_workers=%d", len(indexes), num_workers)

    if num_workers <= 1:
        for index in indexes:
            session.command(index.create_index)
            index.status = IndexStatus.FINISHED
        return True

    with ThreadPoolExecutor(max_workers=num_workers) as pool:
        running: dict[Future, RepackIndex] = {}

        def start(index: RepackIndex, worker_idx: int) -> None:
            index.status = IndexStatus.INPROGRESS
            index.worker_idx = worker_idx
            log.info("Worker %d to build index: %s", worker_idx, index.create_index)
            running[pool.submit(workers[worker_idx].command,
                                index.create_index)] = index

        for worker_idx, index in enumerate(indexes[:num_workers]):
            start(index, worker_idx)

        while running:
            done, _ = wait(running, timeout=POLL_TIMEOUT,
                           return_when=FIRST_COMPLETED)
            for future in done:
                index = running.pop(future)
                try:
                    future.result()
                except DatabaseError as exc:
                    log.warning("Error with create index: %s", exc.message)
                    return False
                log.info("Command finished in worker %d: %s",
                         index.worker_idx, index.create_index)
                index.status = IndexStatus.FINISHED
                following = _next_unprocessed(indexes)
                if following is not None and index.worker_idx is not None:
                    start(following, index.worker_idx)
    return True


class TableRepacker:
    """Repacks tables using a main session, a second session and index workers."""

    def __init__(
        self,
        session: Session,
        session2: Session,
        options: RepackOptions,
        workers: Sequence[Session] = (),
    ) -> None:
        self.session = session
        self.session2 = session2
        self.options = options
        self.workers = list(workers)
        self.temp_obj_num = 0
        self.lock_settings = LockSettings(
            wait_timeout=options.wait_timeout,
            no_kill_backend=options.no_kill_backend,
        )
        self._table_init = False

    def run(self, table: RepackTable) -> bool:
        """Repack one table; True when the table was swapped in place."""
        log.info('repacking table "%s"', table.target_name)
        self._log_table(table)
        if self.options.dry_run:
            return False

        self._table_init = False
        try:
            ok = self._repack(table)
        except BaseException:
            self.session.rollback()
            self.session2.rollback()
            if self._table_init or self.temp_obj_num:
                try:
                    self.cleanup(table)
                except Exception as exc:  # keep the original error
                    log.warning("cleanup failed: %s", exc)
            raise

        self.session.rollback()
        self.session2.rollback()
        if not ok and self._table_init:
            self.cleanup(table)
        return ok

    def cleanup(self, table: RepackTable) -> None:
        """Drop the temporary objects created for table."""
        relid = str(table.target_oid)
        self.session.command("BEGIN ISOLATION LEVEL READ COMMITTED")
        if not lock_exclusive(self.session, relid, table.lock_table, False,
                              self.lock_settings):
            self.session.rollback()
            raise DatabaseError(
                f"lock_exclusive() failed in connection for "
                f"{table.target_name} during cleanup")
        self.session.command("SELECT repack_alter.repack_drop($1, $2)",
                             [relid, str(self.temp_obj_num)])
        self.session.command("COMMIT")
        self.temp_obj_num = 0

    def _log_table(self, table: RepackTable) -> None:
        for name in ("target_name", "target_oid", "target_toast", "target_tidx",
                     "pkid", "ckid", "create_pktype", "create_log",
                     "create_trigger", "enable_trigger", "create_table",
                     "dest_tablespace", "copy_data", "alter_col_storage",
                     "drop_columns", "delete_log", "lock_table", "sql_peek",
                     "sql_insert", "sql_delete", "sql_update", "sql_pop"):
            value = getattr(table, name)
            log.debug("%-18s: %s", name,
                      "(skipped)" if value is None else value)

    def _load_indexes(self, table: RepackTable, relid: str) -> bool:
        options = self.options
        invalid = self.session.execute(
            "SELECT pg_get_indexdef(indexrelid)"
            " FROM pg_index WHERE indrelid = $1 AND NOT indisvalid",
            [relid],
        )
        for (indexdef,) in invalid:
            if not options.no_error_on_invalid_index:
                log.warning("Invalid index: %s", indexdef)
                return False
            log.warning("skipping invalid index: %s", indexdef)

        rows = self.session.execute(
            "SELECT indexrelid,"
            " repack_alter.repack_indexdef(indexrelid, indrelid, $2, FALSE) "
            " FROM pg_index WHERE indrelid = $1 AND indisvalid",
            [relid, options.tablespace if options.moveidx else None],
        )
        table.indexes = [RepackIndex(_oid(row[0]), row[1]) for row in rows]
        for position, index in enumerate(table.indexes):
            log.debug("index[%d]: %u %s", position, index.target_oid,
                      index.create_index)
        return True

    def _setup(self, table: RepackTable, relid: str) -> bool:
        session, options = self.session, self.options
        advisory_lock(session, relid)

        if not lock_exclusive(session, relid, table.lock_table, True,
                              self.lock_settings):
            if options.no_kill_backend:
                log.info("Skipping repack %s due to timeout", table.target_name)
            else:
                log.warning("lock_exclusive() failed for %s", table.target_name)
            return False

        if not self._load_indexes(table, relid):
            return False

        if session.execute("SELECT repack_alter.conflicted_triggers($1)", [relid]):
            log.warning(
                'the table "%s" already has a trigger called "repack_trigger"; '
                "it was probably left by an interrupted earlier run. Please drop "
                "the trigger or drop and recreate the extension to remove the "
                "leftover temporary objects.",
                table.target_name,
            )
            return False

        session.command(table.create_pktype)
        self.temp_obj_num += 1
        session.command(table.create_log)
        self.temp_obj_num += 1
        session.command(table.create_trigger)
        self.temp_obj_num += 1
        session.command(table.enable_trigger)
        session.command(
            f"SELECT repack_alter.disable_autovacuum('repack_alter.log_{table.target_oid}')")
        return True

    def _hand_over_lock(self, table: RepackTable, relid: str) -> bool:
        """Queue the second session's lock, then commit the main session."""
        session = self.session
        pool = ThreadPoolExecutor(max_workers=1)
        lock_sql = f"LOCK TABLE {table.target_name} IN SHARE UPDATE EXCLUSIVE MODE"
        log.debug("%s", lock_sql)
        pending = pool.submit(self.session2.command, lock_sql)
        try:
            if not kill_ddl(session, relid, True, self.options.no_kill_backend):
                if self.options.no_kill_backend:
                    log.info("Skipping repack %s due to timeout.", table.target_name)
                else:
                    log.warning("kill_ddl() failed.")
                return False
            session.command("COMMIT")
            self._table_init = True
            try:
                pending.result()
            except DatabaseError as exc:
                log.warning("Error with LOCK TABLE: %s", exc.message)
                return False
            return True
        finally:
            if not pending.done():
                session.rollback()
            pool.shutdown(wait=True)

    def _copy(self, table: RepackTable, relid: str, backend_pid: int) -> str | None:
        session = self.session
        session.command("BEGIN ISOLATION LEVEL SERIALIZABLE")
        session.command(
            "SELECT set_config('work_mem', current_setting('maintenance_work_mem'), true)")
        if self.options.effective_order_by == "":
            session.command("SET LOCAL synchronize_seqscans = off")

        rows = session.execute(xid_snapshot_query(session.server_version),
                               [str(backend_pid), PROGRAM_NAME])
        vxid = _pg_array(rows[0][0])

        session.command(table.delete_log)
        if not lock_access_share(session, relid, table.target_name,
                                 self.lock_settings):
            return None

        session.command(table.create_table, [relid, table.dest_tablespace])
        if table.alter_col_storage:
            session.command(table.alter_col_storage)
        session.command(table.copy_data)
        self.temp_obj_num += 1
        if table.drop_columns:
            session.command(table.drop_columns)
        session.command(
            f"SELECT repack_alter.disable_autovacuum('repack_alter.table_{table.target_oid}')")
        session.command("COMMIT")

        rows = session.execute(
            f"SELECT 'repack_alter.table_{table.target_oid}'::regclass::oid")
        table.temp_oid = _oid(rows[0][0])
        return vxid

    def _replay(self, table: RepackTable, vxid: str) -> None:
        appname = os.environ.get("PGAPPNAME")
        while True:
            applied = apply_log(self.session, table, self.options.apply_count)
            if applied > self.options.switch_threshold:
                continue
            alive = self.session.execute(XID_ALIVE, [vxid])
            if not alive:
                return
            if appname != "pg_regress":
                log.info("Waiting for %d transactions to finish. First PID: %s",
                         len(alive), alive[0][0])
            time.sleep(1)

    def _swap(self, table: RepackTable, relid: str) -> bool:
        session2 = self.session2
        if not lock_exclusive(session2, relid, table.lock_table, False,
                              self.lock_settings):
            log.warning("lock_exclusive() failed in conn2 for %s", table.target_name)
            return False
        temp_lock = (f"LOCK TABLE repack_alter.table_{table.target_oid}"
                     " IN ACCESS EXCLUSIVE MODE")
        if not lock_exclusive(session2, str(table.temp_oid), temp_lock, False,
                              self.lock_settings):
            log.warning("lock_exclusive() failed in conn2 for table_%d",
                        table.target_oid)
            return False
        apply_log(session2, table, 0)
        session2.command("SELECT repack_alter.repack_swap($1)", [relid])
        session2.command("COMMIT")
        return True

    def _drop(self, table: RepackTable, relid: str) -> bool:
        session = self.session
        session.command("BEGIN ISOLATION LEVEL READ COMMITTED")
        if not lock_exclusive(session, relid, table.lock_table, False,
                              self.lock_settings):
            log.warning("lock_exclusive() failed in connection for %s",
                        table.target_name)
            return False
        session.command("SELECT repack_alter.repack_drop($1, $2)",
                        [relid, str(self.temp_obj_num)])
        if self.options.alter_clause:
            alter_sql = f"ALTER TABLE {table.target_name} {self.options.alter_clause}"
            log.info("Applying ALTER to original table: %s", alter_sql)
            session.command(alter_sql)
            log.info("ALTER applied successfully to original table")
        session.command("COMMIT")
        self.temp_obj_num = 0
        return True

    def _repack(self, table: RepackTable) -> bool:
        relid = str(table.target_oid)
        if not self._setup(table, relid):
            return False

        self.session2.command("BEGIN ISOLATION LEVEL READ COMMITTED")
        backend_pid = self.session2.backend_pid()
        if not self._hand_over_lock(table, relid):
            return False

        vxid = self._copy(table, relid, backend_pid)
        if vxid is None:
            return False
        if not rebuild_indexes(self.session, table, self.workers):
            return False

        self._replay(table, vxid)
        if not self._swap(table, relid):
            return False
        if not self._drop(table, relid):
            return False

        if self.options.analyze:
            self.session.command("BEGIN ISOLATION LEVEL READ COMMITTED")
            self.session.command(f"ANALYZE {table.target_name}")
            self.session.command("COMMIT")

        advisory_unlock(self.session, relid)
        return True