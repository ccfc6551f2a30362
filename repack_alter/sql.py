"""SQL text and parameter lists built by the repack client."""

from __future__ import annotations

import enum
from typing import Sequence

REPACK_LOCK_PREFIX = "16185446"

_SESSION_FILTERS = (
    "(l.virtualxid, l.virtualtransaction) <> ('1/1', '-1/0')",
)
_DATABASE_FILTER = (
    "((d.datname IS NULL OR d.datname = current_database()) OR l.database = 0)"
)


def _xid_snapshot(pid_column: str, query_column: str, has_appname: bool) -> str:
    """Build the snapshot query for one generation of pg_stat_activity."""
    conditions = [
        "l.locktype = 'virtualxid'",
        "l.pid NOT IN (pg_backend_pid(), $1)",
        *_SESSION_FILTERS,
    ]
    if has_appname:
        conditions.append("(a.application_name IS NULL OR a.application_name <> $2)")
    conditions.append(rf"a.{query_column} !~* E'^\\s*vacuum\\s+'")
    conditions.append(f"a.{query_column} !~ E'^autovacuum: '")
    conditions.append(_DATABASE_FILTER)
    if not has_appname:
        # Without application_name, $2 still has to be consumed.
        conditions.append("($2::text IS NOT NULL)")
    return (
        "SELECT coalesce(array_agg(l.virtualtransaction), '{}')"
        " FROM pg_locks AS l"
        f" LEFT JOIN pg_stat_activity AS a ON l.pid = a.{pid_column}"
        " LEFT JOIN pg_database AS d ON a.datid = d.oid"
        " WHERE " + " AND ".join(conditions)
    )


_XID_SNAPSHOTS = (
    (90200, _xid_snapshot("pid", "query", True)),
    (90000, _xid_snapshot("procpid", "current_query", True)),
    (0, _xid_snapshot("procpid", "current_query", False)),
)

XID_ALIVE = " ".join((
    "SELECT pid FROM pg_locks",
    "WHERE locktype = 'virtualxid'",
    "AND pid <> pg_backend_pid()",
    "AND virtualtransaction = ANY($1)",
))


class CompetingLockAction(enum.Enum):
    """What to do with backends waiting for an ACCESS EXCLUSIVE lock."""

    COUNT = "pid"
    CANCEL = "pg_cancel_backend(pid)"
    TERMINATE = "pg_terminate_backend(pid)"


def xid_snapshot_query(server_version: int) -> str:
    """Query listing virtual transactions active now, for a server version."""
    for minimum, query in _XID_SNAPSHOTS:
        if server_version >= minimum:
            return query
    return _XID_SNAPSHOTS[-1][1]


def competing_locks_query(action: CompetingLockAction, relid: int) -> str:
    """Query acting on backends waiting for an exclusive lock on relid."""
    conditions = (
        "locktype = 'relation'",
        "granted = false",
        f"relation = {int(relid)}",
        "mode = 'AccessExclusiveLock'",
        "pid <> pg_backend_pid()",
    )
    return f"SELECT {action.value} FROM pg_locks WHERE " + " AND ".join(conditions)


def relation_exists_query(
    tables: Sequence[str], parent_tables: Sequence[str]
) -> tuple[str, list[str]]:
    """Query returning those requested relations that cannot be repacked."""
    params = [*tables, *parent_tables]
    if not params:
        raise ValueError("no relations requested")
    kinds = ["r"] * len(tables) + ["p"] * len(parent_tables)
    values = ",".join(
        f"(${number}, '{kind}')" for number, kind in enumerate(kinds, start=1)
    )
    # A relation is fine when it is a repackable table, or a declaratively
    # partitioned table given as a parent.
    known_table = (
        "SELECT FROM repack_alter.tables WHERE relid = to_regclass(given_t.r)"
    )
    partitioned = (
        "SELECT FROM pg_catalog.pg_class c"
        " WHERE c.oid = to_regclass(given_t.r)"
        " AND c.relkind = given_t.kind AND given_t.kind = 'p'"
    )
    sql = (
        f"SELECT r FROM (VALUES {values}) AS given_t(r, kind)"
        f" WHERE NOT EXISTS ({known_table}) AND NOT EXISTS ({partitioned})"
    )
    return sql, params


def target_tables_query(
    tablespace: str | None,
    tables: Sequence[str],
    parent_tables: Sequence[str],
    schemas: Sequence[str],
    excluded_extensions: Sequence[str],
) -> tuple[str, list[str | None]]:
    """Query selecting the tables to repack, with its parameters."""
    if schemas and (tables or parent_tables):
        raise ValueError("schemas cannot be combined with tables")

    params: list[str | None] = [tablespace]

    def placeholder(value: str) -> str:
        params.append(value)
        return f"${len(params)}"

    if tables or parent_tables:
        groups = []
        if tables:
            groups.append("(" + " OR ".join(
                f"relid = {placeholder(name)}::regclass" for name in tables
            ) + ")")
        if parent_tables:
            groups.append("(" + " OR ".join(
                "relid = ANY(repack_alter.get_table_and_inheritors("
                f"{placeholder(name)}::regclass))"
                for name in parent_tables
            ) + ")")
        where = " OR ".join(groups)
    elif schemas:
        where = "schemaname IN (" + ", ".join(
            placeholder(name) for name in schemas
        ) + ")"
    else:
        where = "pkid IS NOT NULL"

    if excluded_extensions:
        matches = " OR ".join(
            f"e.extname = {placeholder(name)}" for name in excluded_extensions
        )
        where += (
            " AND t.relid NOT IN (SELECT d.objid::regclass"
            " FROM pg_depend d JOIN pg_extension e ON d.refobjid = e.oid"
            f" WHERE d.classid = 'pg_class'::regclass AND ({matches}))"
        )

    sql = (
        "SELECT t.*, coalesce(v.tablespace, t.tablespace_orig) AS tablespace_dest"
        " FROM repack_alter.tables t, (VALUES ($1::text)) AS v (tablespace)"
        f" WHERE {where}"
        " ORDER BY t.relname, t.schemaname"
    )
    return sql, params


def copy_data_sql(
    copy_data: str, cluster_key: str | None, order_by: str | None
) -> str:
    """Complete the copy statement with the ordering to use.

    order_by None means cluster order if the table has a cluster key,
    an empty string means no ordering, anything else is used verbatim.
    """
    ordering = cluster_key if order_by is None else order_by
    if not ordering:
        return copy_data
    return f"{copy_data} ORDER BY {ordering}"


def index_details_query(by_index: bool) -> str:
    """Query listing index details, keyed by an index name or a table name."""
    if by_index:
        table_name, key = "repack_alter.oid2text(idx.indrelid)", "idx.indexrelid"
    else:
        table_name, key = "$1::text", "idx.indrelid"
    columns = ", ".join((
        "repack_alter.oid2text(i.oid)",
        "idx.indexrelid",
        "idx.indisvalid",
        "idx.indrelid",
        table_name,
        "n.nspname",
    ))
    return (
        f"SELECT {columns}"
        " FROM pg_index idx"
        " JOIN pg_class i ON i.oid = idx.indexrelid"
        " JOIN pg_namespace n ON n.oid = i.relnamespace"
        f" WHERE {key} = $1::regclass"
        " ORDER BY indisvalid DESC, i.relname, n.nspname"
    )


def drop_work_index_sql(schema_name: str, index_oid: int) -> str:
    """Statement dropping the work index built for index_oid."""
    return f'DROP INDEX CONCURRENTLY IF EXISTS "{schema_name}"."index_{int(index_oid)}"'