"""Top-level driver: checks, database selection and the command entry point."""

from __future__ import annotations

import logging
import sys
from typing import Callable, Optional, Sequence

from repack_alter.database import (
    SQLSTATE_INVALID_SCHEMA_NAME,
    SQLSTATE_UNDEFINED_FUNCTION,
    DatabaseError,
    Session,
)
from repack_alter.indexes import repack_all_indexes
from repack_alter.models import RepackTable
from repack_alter.options import (
    PROGRAM_NAME,
    PROGRAM_VERSION,
    OptionError,
    RepackOptions,
    check_option_conflicts,
    help_text,
    parse_args,
)
from repack_alter.sql import relation_exists_query, target_tables_query
from repack_alter.table import TableRepacker

log = logging.getLogger(__name__)

Connector = Callable[[Optional[str]], Session]


class RepackError(Exception):
    """A database could not be repacked."""


class Repacker:
    """Runs a repack as the options describe, opening sessions with connect."""

    def __init__(self, options: RepackOptions, connect: Connector) -> None:
        self.options = options
        self.connect = connect

    def _is_superuser(self, session: Session) -> bool:
        return self.options.no_superuser_check or bool(session.is_superuser)

    def check_tablespace(self) -> None:
        """Raise RepackError unless the requested tablespace exists."""
        options = self.options
        if options.tablespace is None:
            if options.moveidx:
                raise RepackError(
                    "cannot specify --moveidx (-S) without --tablespace (-s)")
            return
        with self.connect(options.dbname) as session:
            try:
                rows = session.execute(
                    "select spcname from pg_tablespace where spcname = $1",
                    [options.tablespace])
            except DatabaseError as exc:
                raise RepackError(
                    f"error checking the namespace: {exc.message}") from exc
        if not rows:
            raise RepackError(
                f'the tablespace "{options.tablespace}" doesn\'t exist')

    def preliminary_checks(self, session: Session) -> None:
        """Check privileges and the installed extension, then prepare the session."""
        if not self._is_superuser(session):
            raise RepackError(f"You must be a superuser to use {PROGRAM_NAME}")

        try:
            rows = session.execute(
                "select repack_alter.version(), repack_alter.version_sql()")
        except DatabaseError as exc:
            if exc.sqlstate in (SQLSTATE_INVALID_SCHEMA_NAME,
                                SQLSTATE_UNDEFINED_FUNCTION):
                raise RepackError(
                    f"{PROGRAM_NAME} {PROGRAM_VERSION} is not installed "
                    "in the database") from exc
            raise RepackError(exc.message) from exc

        expected = f"pgrepack_alter {PROGRAM_VERSION}"
        library, extension = rows[0][0], rows[0][1]
        if library != expected:
            raise RepackError(
                f"program '{expected}' does not match database library '{library}'")
        if extension != expected:
            raise RepackError(
                f"extension '{expected}' required, found '{extension}';"
                " please drop and re-create the extension")

        session.command("SET statement_timeout = 0")
        session.command("SET search_path = pg_catalog, pg_temp, public")
        session.command("SET client_min_messages = warning")

    def requested_relations_exist(self, session: Session) -> bool:
        """Raise RepackError naming requested tables that cannot be repacked."""
        options = self.options
        if not (options.tables or options.parent_tables):
            return True
        # to_regclass(text) is not available on older servers.
        if session.server_version < 90600:
            return True
        sql, params = relation_exists_query(options.tables, options.parent_tables)
        try:
            rows = session.execute(sql, params)
        except DatabaseError as exc:
            raise RepackError(exc.message) from exc
        if not rows:
            return True
        names = ", ".join(f'"{row[0]}"' for row in rows)
        if len(rows) > 1:
            raise RepackError(f"relations do not exist: {names}")
        raise RepackError(f"ERROR:  relation {names} does not exist")

    def repack_one_database(self, dbname: str | None) -> None:
        """Repack the selected tables of one database."""
        options = self.options
        sessions: list[Session] = []
        try:
            session = self.connect(dbname)
            sessions.append(session)
            session2 = self.connect(dbname)
            sessions.append(session2)
            workers: list[Session] = []
            if options.jobs > 1:
                for _ in range(options.jobs):
                    worker = self.connect(dbname)
                    sessions.append(worker)
                    workers.append(worker)

            self.preliminary_checks(session)
            self.requested_relations_exist(session)

            sql, params = target_tables_query(
                options.tablespace, options.tables, options.parent_tables,
                options.schemas, options.exclude_extensions)
            try:
                rows = session.execute(sql, params)
            except DatabaseError as exc:
                raise RepackError(exc.message) from exc

            repacker = TableRepacker(session, session2, options, workers)
            order_by = options.effective_order_by
            for row in rows:
                try:
                    table = RepackTable.from_row(row, order_by)
                except ValueError as exc:
                    log.warning("%s", exc)
                    continue
                repacker.run(table)
        finally:
            for opened in sessions:
                opened.close()

    def repack_all_databases(self) -> None:
        """Repack every database that accepts connections."""
        with self.connect("postgres") as session:
            if not self._is_superuser(session):
                raise RepackError(f"You must be a superuser to use {PROGRAM_NAME}")
            rows = session.execute(
                "SELECT datname FROM pg_database WHERE datallowconn ORDER BY 1;")

        for row in rows:
            dbname = row[0]
            log.info('repacking database "%s"', dbname)
            if self.options.dry_run:
                continue
            try:
                self.repack_one_database(dbname)
            except RepackError as exc:
                log.info('database "%s" skipped: %s', dbname, exc)

    def run(self) -> list[str]:
        """Carry out the requested repack; return the option warnings raised."""
        options = self.options
        warnings = check_option_conflicts(options)
        self.check_tablespace()
        if options.dry_run:
            log.info("Dry run enabled, not executing repack")
        for warning in warnings:
            log.warning("%s", warning)

        if options.repack_indexes:
            with self.connect(options.dbname) as session:
                self.preliminary_checks(session)
                self.requested_relations_exist(session)
                repack_all_indexes(session, options)
        elif options.alldb:
            self.repack_all_databases()
        else:
            try:
                self.repack_one_database(options.dbname)
            except RepackError as exc:
                raise RepackError(
                    f"{PROGRAM_NAME} failed with error: {exc}") from exc
        return warnings


def main(
    argv: Sequence[str] | None = None, connect: Connector | None = None
) -> int:
    """Command entry point; returns the exit status."""
    try:
        options = parse_args(argv)
        if options.show_help:
            print(help_text(True), end="")
            return 0
        check_option_conflicts(options)
    except OptionError as exc:
        print(f"{PROGRAM_NAME}: {exc}", file=sys.stderr)
        return 1

    if connect is None:
        print(f"{PROGRAM_NAME}: no database connection available", file=sys.stderr)
        return 1

    logging.basicConfig(format="%(levelname)s: %(message)s", level=logging.INFO)
    try:
        Repacker(options, connect).run()
    except (OptionError, RepackError, DatabaseError) as exc:
        print(f"{PROGRAM_NAME}: {exc}", file=sys.stderr)
        return 1
    return 0