"""Rebuilding the indexes of tables without rewriting the tables themselves."""

from __future__ import annotations

import logging
from typing import Any, Iterator, Sequence

from repack_alter.database import DatabaseError, Session
from repack_alter.locks import LockSettings, advisory_lock, lock_exclusive
from repack_alter.models import INVALID_OID
from repack_alter.options import RepackOptions
from repack_alter.sql import drop_work_index_sql, index_details_query

log = logging.getLogger(__name__)

_CHILD_TABLES_QUERY = (
    "SELECT quote_ident(n.nspname) || '.' || quote_ident(c.relname)"
    " FROM pg_class c JOIN pg_namespace n on n.oid = c.relnamespace"
    " WHERE c.oid = ANY (repack_alter.get_table_and_inheritors($1::regclass))"
    "   AND c.relkind = 'r'"
    " ORDER BY n.nspname, c.relname"
)


def _oid(value: Any) -> int:
    return INVALID_OID if value is None else int(value)


def _is_true(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value.startswith("t"))


def _drop_work_indexes(session: Session, details: Sequence[Sequence[Any]]) -> None:
    schema_name = details[0][5]
    for row in details:
        session.command(drop_work_index_sql(schema_name, _oid(row[1])))


def _build_work_index(
    session: Session,
    row: Sequence[Any],
    relid: str,
    schema_name: str,
    options: RepackOptions,
) -> bool:
    """Build the work index for one row of index details; True when built."""
    idx_name, index_oid, isvalid = row[0], _oid(row[1]), row[2]
    if not _is_true(isvalid):
        log.warning("skipping invalid index: %s.%s", schema_name, idx_name)
        return False

    log.info('repacking index "%s"', idx_name)
    try:
        existing = session.execute(
            "SELECT pgc.relname, nsp.nspname "
            "FROM pg_class pgc INNER JOIN pg_namespace nsp "
            "ON nsp.oid = pgc.relnamespace "
            f"WHERE pgc.relname = 'index_{index_oid}' "
            "AND nsp.nspname = $1",
            [schema_name],
        )
    except DatabaseError as exc:
        log.warning("%s", exc.message)
        return False
    if existing:
        log.warning(
            'Cannot create index "%s"."index_%d", already exists. An invalid '
            "index may have been left behind by a previous pg_repack on the "
            'table which was interrupted. Please use DROP INDEX "%s"."index_%d" '
            "to remove this index and try again.",
            schema_name, index_oid, schema_name, index_oid,
        )
        return False

    if options.dry_run:
        return False

    definition = session.execute(
        "SELECT repack_alter.repack_indexdef($1, $2, $3, true)",
        [str(index_oid), relid, options.tablespace],
    )
    if not definition:
        log.warning("unable to generate SQL to CREATE work index for %s", idx_name)
        return False

    try:
        session.execute(definition[0][0])
    except DatabaseError as exc:
        log.warning('Error creating index "%s"."index_%d": %s',
                    schema_name, index_oid, exc.message)
        return False
    return True


def _swap_indexes(
    session: Session,
    details: Sequence[Sequence[Any]],
    relid: str,
    table_name: str,
    repacked: Sequence[bool],
    settings: LockSettings,
) -> bool:
    lock_sql = f"LOCK TABLE {table_name} IN ACCESS EXCLUSIVE MODE"
    if not lock_exclusive(session, relid, lock_sql, True, settings):
        log.warning("lock_exclusive() failed in connection for %s", table_name)
        return False
    for row, built in zip(details, repacked):
        index_oid = _oid(row[1])
        if built:
            session.command("SELECT repack_alter.repack_index_swap($1)",
                            [str(index_oid)])
        else:
            log.info("Skipping index swap for index_%d", index_oid)
    session.command("COMMIT")
    return True


def repack_table_indexes(
    session: Session, index_details: Sequence[Sequence[Any]], options: RepackOptions
) -> bool:
    """Rebuild the indexes described by index_details, all of one table.

    Each row holds the index name, index OID, validity, table OID,
    qualified table name and schema name. Returns True when the new
    indexes were swapped in (or on a dry run).
    """
    details = list(index_details)
    if not details:
        raise ValueError("no index details given")
    first = details[0]
    relid = str(_oid(first[3]))
    table_name = first[4]
    schema_name = first[5]
    settings = LockSettings(wait_timeout=options.wait_timeout,
                            no_kill_backend=options.no_kill_backend)

    advisory_lock(session, relid)
    try:
        repacked = [
            _build_work_index(session, row, relid, schema_name, options)
            for row in details
        ]
        if options.dry_run:
            return True
        if not any(repacked):
            log.warning(
                'Skipping index swapping for "%s", since no new indexes built',
                table_name)
            return False
        swapped = _swap_indexes(session, details, relid, table_name,
                                repacked, settings)
    except BaseException:
        session.rollback()
        try:
            _drop_work_indexes(session, details)
        except DatabaseError as exc:
            log.warning("cleanup of work indexes failed: %s", exc.message)
        raise

    _drop_work_indexes(session, details)
    return swapped


def _inheritors(session: Session, parent_tables: Sequence[str]) -> Iterator[str]:
    for parent in parent_tables:
        try:
            rows = session.execute(_CHILD_TABLES_QUERY, [parent])
        except DatabaseError as exc:
            log.warning("%s", exc.message)
            continue
        if not rows:
            log.warning('relation "%s" does not exist', parent)
            continue
        yield from (row[0] for row in rows)


def repack_all_indexes(session: Session, options: RepackOptions) -> bool:
    """Rebuild the requested indexes, or all indexes of the requested tables."""
    by_index = bool(options.indexes)
    if by_index:
        names = list(options.indexes)
    elif options.tables or options.parent_tables:
        names = [*options.tables, *_inheritors(session, options.parent_tables)]
    else:
        raise ValueError("no index, table or parent table requested")

    sql = index_details_query(by_index)
    for name in names:
        try:
            details = session.execute(sql, [name])
        except DatabaseError as exc:
            log.warning("%s", exc.message)
            continue
        if not details:
            if by_index:
                log.warning('"%s" is not a valid index', name)
            else:
                log.warning('"%s" does not have any indexes', name)
            continue
        if not by_index:
            log.info('repacking indexes of "%s"', name)
        if not repack_table_indexes(session, details, options):
            log.warning('repack failed for "%s"', name)
    return True