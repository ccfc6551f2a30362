import pytest

from repack_alter.models import (
    INVALID_OID,
    IndexStatus,
    RepackIndex,
    RepackTable,
)


def make_row(**overrides):
    columns = {
        "relname": "public.tbl",
        "relid": "16400",
        "reltoastrelid": "16403",
        "reltoastidxid": "16405",
        "schemaname": "public",
        "pkid": "16410",
        "ckid": None,
        "create_pktype": "CREATE TYPE pk",
        "create_log": "CREATE TABLE log",
        "create_trigger": "CREATE TRIGGER repack_trigger",
        "enable_trigger": "ALTER TABLE ENABLE ALWAYS TRIGGER",
        "create_table": "CREATE TABLE tmp",
        "tablespace_orig": "pg_default",
        "copy_data": "INSERT INTO tmp SELECT * FROM tbl",
        "alter_col_storage": None,
        "drop_columns": None,
        "delete_log": "DELETE FROM log",
        "lock_table": "LOCK TABLE tbl",
        "ckey": None,
        "sql_peek": "peek",
        "sql_insert": "insert",
        "sql_delete": "delete",
        "sql_update": "update",
        "sql_pop": "pop",
        "tablespace_dest": "fast_space",
    }
    columns.update(overrides)
    return tuple(columns.values())


def test_from_row_maps_columns():
    table = RepackTable.from_row(make_row(), None)
    assert table.target_name == "public.tbl"
    assert table.target_oid == 16400
    assert table.target_toast == 16403
    assert table.target_tidx == 16405
    assert table.pkid == 16410
    assert table.lock_table == "LOCK TABLE tbl"
    assert table.sql_pop == "pop"
    assert table.dest_tablespace == "fast_space"


def test_null_oids_become_invalid():
    table = RepackTable.from_row(make_row(reltoastrelid=None), None)
    assert table.target_toast == INVALID_OID
    assert table.ckid == INVALID_OID


def test_temp_oid_and_indexes_start_empty():
    table = RepackTable.from_row(make_row(), None)
    assert table.temp_oid == INVALID_OID
    assert table.indexes == []


def test_missing_primary_key_is_rejected():
    with pytest.raises(ValueError, match="must have a primary key"):
        RepackTable.from_row(make_row(pkid=None), None)


def test_zero_primary_key_is_rejected():
    with pytest.raises(ValueError, match='"public.tbl"'):
        RepackTable.from_row(make_row(pkid="0"), None)


def test_cluster_key_orders_copy_by_default():
    table = RepackTable.from_row(make_row(ckey="a, b"), None)
    assert table.copy_data == "INSERT INTO tmp SELECT * FROM tbl ORDER BY a, b"


def test_empty_order_by_disables_ordering():
    table = RepackTable.from_row(make_row(ckey="a, b"), "")
    assert table.copy_data == "INSERT INTO tmp SELECT * FROM tbl"


def test_user_order_by_wins():
    table = RepackTable.from_row(make_row(ckey="a"), "c DESC")
    assert table.copy_data.endswith(" ORDER BY c DESC")


def test_no_cluster_key_no_ordering():
    table = RepackTable.from_row(make_row(), None)
    assert table.copy_data == "INSERT INTO tmp SELECT * FROM tbl"


def test_short_row_is_rejected():
    with pytest.raises(ValueError):
        RepackTable.from_row(make_row()[:10], None)


def test_index_defaults():
    index = RepackIndex(target_oid=17000, create_index="CREATE INDEX x")
    assert index.status is IndexStatus.UNPROCESSED
    assert index.worker_idx is None