"""Descriptions of the tables and indexes a repack works on."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Sequence

from repack_alter.sql import copy_data_sql

INVALID_OID = 0

# Number of leading columns of a target-table row that describe one table.
_TABLE_COLUMNS = 25


def _oid(value: Any) -> int:
    """Convert a column value to an OID, NULL becoming INVALID_OID."""
    return INVALID_OID if value is None else int(value)


class IndexStatus(enum.Enum):
    """Progress of one index build."""

    UNPROCESSED = enum.auto()
    INPROGRESS = enum.auto()
    FINISHED = enum.auto()


@dataclass
class RepackIndex:
    """An index of the target table and the statement rebuilding it."""

    target_oid: int
    create_index: str
    status: IndexStatus = IndexStatus.UNPROCESSED
    worker_idx: int | None = None


@dataclass
class RepackTable:
    """Everything needed to repack one table, as the extension describes it."""

    target_name: str
    target_oid: int
    target_toast: int
    target_tidx: int
    pkid: int
    ckid: int
    create_pktype: str | None
    create_log: str | None
    create_trigger: str | None
    enable_trigger: str | None
    create_table: str | None
    dest_tablespace: str | None
    copy_data: str
    alter_col_storage: str | None
    drop_columns: str | None
    delete_log: str | None
    lock_table: str | None
    sql_peek: str | None
    sql_insert: str | None
    sql_delete: str | None
    sql_update: str | None
    sql_pop: str | None
    temp_oid: int = INVALID_OID
    indexes: list[RepackIndex] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Sequence[Any], order_by: str | None) -> RepackTable:
        """Build a table from a row of the target-tables query.

        The copy statement is completed with the ordering that order_by
        selects. Raises ValueError when the table has no usable key.
        """
        if len(row) < _TABLE_COLUMNS:
            raise ValueError(
                f"expected at least {_TABLE_COLUMNS} columns, got {len(row)}")
        (
            target_name, target_oid, target_toast, target_tidx, _schemaname,
            pkid, ckid, create_pktype, create_log, create_trigger,
            enable_trigger, create_table, _tablespace_orig, copy_data,
            alter_col_storage, drop_columns, delete_log, lock_table, ckey,
            sql_peek, sql_insert, sql_delete, sql_update, sql_pop,
            dest_tablespace,
        ) = row[:_TABLE_COLUMNS]

        if _oid(pkid) == INVALID_OID:
            raise ValueError(
                f'relation "{target_name}" must have a primary key '
                "or not-null unique keys")

        return cls(
            target_name=target_name,
            target_oid=_oid(target_oid),
            target_toast=_oid(target_toast),
            target_tidx=_oid(target_tidx),
            pkid=_oid(pkid),
            ckid=_oid(ckid),
            create_pktype=create_pktype,
            create_log=create_log,
            create_trigger=create_trigger,
            enable_trigger=enable_trigger,
            create_table=create_table,
            dest_tablespace=dest_tablespace,
            copy_data=copy_data_sql(copy_data, ckey, order_by),
            alter_col_storage=alter_col_storage,
            drop_columns=drop_columns,
            delete_log=delete_log,
            lock_table=lock_table,
            sql_peek=sql_peek,
            sql_insert=sql_insert,
            sql_delete=sql_delete,
            sql_update=sql_update,
            sql_pop=sql_pop,
        )