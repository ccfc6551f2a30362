import logging

import pytest

from repack_alter.database import DatabaseError, Session
from repack_alter.options import OptionError, RepackOptions
from repack_alter.runner import RepackError, Repacker, main

VERSION_ROW = [("pgrepack_alter 1.0.0", "pgrepack_alter 1.0.0")]
TABLE_ROW = (
    "public.tbl", "16400", None, None, "public", "16410", None,
    "create_pktype", "create_log", "create_trigger", "enable_trigger",
    "create_table", None, "INSERT INTO x SELECT", None, None, "delete_log",
    "lock_table", None, "peek", "insert", "delete", "update", "pop", None,
)


class FakeConnection:
    def __init__(self, rules=()):
        self.rules = list(rules)
        self.calls = []
        self.closed = False

    def execute(self, sql, params):
        self.calls.append((sql, list(params)))
        for needle, outcome in self.rules:
            if needle in sql:
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
        return []

    def close(self):
        self.closed = True


class FakeServer:
    def __init__(self, rules=(), superuser=True, version=170000):
        self.rules = list(rules)
        self.superuser = superuser
        self.version = version
        self.dbnames = []
        self.connections = []

    def connect(self, dbname):
        self.dbnames.append(dbname)
        conn = FakeConnection(self.rules)
        self.connections.append(conn)
        return Session(conn, self.version, self.superuser)

    def calls(self):
        return [call for conn in self.connections for call in conn.calls]


def session_for(rules, superuser=True, version=170000):
    return FakeServer(rules, superuser, version).connect("db")


def test_preliminary_checks_require_superuser():
    repacker = Repacker(RepackOptions(), FakeServer().connect)
    session = session_for([("version_sql", VERSION_ROW)], superuser=False)
    with pytest.raises(RepackError, match="You must be a superuser to use pg_repack_alter"):
        repacker.preliminary_checks(session)


def test_preliminary_checks_prepare_session():
    repacker = Repacker(RepackOptions(no_superuser_check=True), FakeServer().connect)
    session = session_for([("version_sql", VERSION_ROW)], superuser=False)
    repacker.preliminary_checks(session)
    statements = [sql for sql, _ in session.connection.calls]
    assert "SET statement_timeout = 0" in statements
    assert "SET search_path = pg_catalog, pg_temp, public" in statements


def test_library_version_mismatch():
    repacker = Repacker(RepackOptions(), FakeServer().connect)
    rows = [("pgrepack_alter 0.9", "pgrepack_alter 1.0.0")]
    with pytest.raises(RepackError) as info:
        repacker.preliminary_checks(session_for([("version_sql", rows)]))
    assert str(info.value) == (
        "program 'pgrepack_alter 1.0.0' does not match database library "
        "'pgrepack_alter 0.9'")


def test_extension_version_mismatch():
    repacker = Repacker(RepackOptions(), FakeServer().connect)
    rows = [("pgrepack_alter 1.0.0", "pgrepack_alter 0.9")]
    with pytest.raises(RepackError, match="extension 'pgrepack_alter 1.0.0' required"):
        repacker.preliminary_checks(session_for([("version_sql", rows)]))


@pytest.mark.parametrize("sqlstate", ["3F000", "42883"])
def test_extension_not_installed(sqlstate):
    repacker = Repacker(RepackOptions(), FakeServer().connect)
    rules = [("version_sql", DatabaseError("missing", sqlstate))]
    with pytest.raises(RepackError) as info:
        repacker.preliminary_checks(session_for(rules))
    assert str(info.value) == "pg_repack_alter 1.0.0 is not installed in the database"


def test_other_version_query_error_is_passed_on():
    repacker = Repacker(RepackOptions(), FakeServer().connect)
    rules = [("version_sql", DatabaseError("permission denied", "42501"))]
    with pytest.raises(RepackError, match="permission denied"):
        repacker.preliminary_checks(session_for(rules))


def test_missing_relations_are_listed():
    repacker = Repacker(RepackOptions(tables=["a", "b"]), FakeServer().connect)
    session = session_for([("given_t", [("a",), ("b",)])])
    with pytest.raises(RepackError) as info:
        repacker.requested_relations_exist(session)
    assert str(info.value) == 'relations do not exist: "a", "b"'


def test_single_missing_relation():
    repacker = Repacker(RepackOptions(tables=["a"]), FakeServer().connect)
    session = session_for([("given_t", [("a",)])])
    with pytest.raises(RepackError) as info:
        repacker.requested_relations_exist(session)
    assert str(info.value) == 'ERROR:  relation "a" does not exist'


def test_relation_check_skipped_on_old_server():
    repacker = Repacker(RepackOptions(tables=["a"]), FakeServer().connect)
    session = session_for([("given_t", [("a",)])], version=90500)
    assert repacker.requested_relations_exist(session) is True
    assert session.connection.calls == []


def test_missing_tablespace():
    server = FakeServer([("pg_tablespace", [])])
    repacker = Repacker(RepackOptions(tablespace="ts"), server.connect)
    with pytest.raises(RepackError, match="the tablespace \"ts\" doesn't exist"):
        repacker.check_tablespace()
    assert all(conn.closed for conn in server.connections)


def test_existing_tablespace():
    server = FakeServer([("pg_tablespace", [("ts",)])])
    Repacker(RepackOptions(tablespace="ts"), server.connect).check_tablespace()
    assert [p for _, p in server.calls()] == [["ts"]]


def test_moveidx_without_tablespace():
    repacker = Repacker(RepackOptions(moveidx=True), FakeServer().connect)
    with pytest.raises(RepackError, match="--moveidx"):
        repacker.check_tablespace()


def test_repack_one_database_dry_run(caplog):
    caplog.set_level(logging.INFO)
    server = FakeServer([("version_sql", VERSION_ROW),
                         ("FROM repack_alter.tables t", [TABLE_ROW])])
    options = RepackOptions(dbname="db", tables=["public.tbl"], dry_run=True)
    Repacker(options, server.connect).repack_one_database("db")
    target = [p for sql, p in server.calls() if "FROM repack_alter.tables t" in sql]
    assert target == [[None, "public.tbl"]]
    assert 'repacking table "public.tbl"' in caplog.text
    assert all(conn.closed for conn in server.connections)
    assert set(server.dbnames) == {"db"}


def test_table_without_key_is_skipped(caplog):
    caplog.set_level(logging.INFO)
    row = TABLE_ROW[:5] + (None,) + TABLE_ROW[6:]
    server = FakeServer([("version_sql", VERSION_ROW),
                         ("FROM repack_alter.tables t", [row])])
    Repacker(RepackOptions(dry_run=True), server.connect).repack_one_database("db")
    assert "must have a primary key" in caplog.text
    assert "repacking table" not in caplog.text


def test_all_databases_dry_run_connects_only_once():
    server = FakeServer([("datallowconn", [("db1",), ("db2",)])])
    Repacker(RepackOptions(alldb=True, dry_run=True), server.connect).repack_all_databases()
    assert server.dbnames == ["postgres"]


def test_all_databases_skips_failures(caplog):
    caplog.set_level(logging.INFO)
    rows = [("pgrepack_alter 0.9", "pgrepack_alter 0.9")]
    server = FakeServer([("datallowconn", [("db1",), ("db2",)]), ("version_sql", rows)])
    Repacker(RepackOptions(alldb=True), server.connect).repack_all_databases()
    assert server.dbnames[0] == "postgres"
    assert "db1" in server.dbnames and "db2" in server.dbnames
    assert 'database "db1" skipped' in caplog.text
    assert all(conn.closed for conn in server.connections)


def test_all_databases_require_superuser():
    server = FakeServer(superuser=False)
    with pytest.raises(RepackError, match="superuser"):
        Repacker(RepackOptions(alldb=True), server.connect).repack_all_databases()


def test_run_index_mode_returns_warnings():
    server = FakeServer([("version_sql", VERSION_ROW)])
    options = RepackOptions(dbname="db", indexes=["public.idx"], jobs=2)
    warnings = Repacker(options, server.connect).run()
    assert warnings == ["option -j (--jobs) has no effect, repacking indexes "
                        "does not use parallel jobs"]
    detail = [p for sql, p in server.calls() if "WHERE idx.indexrelid" in sql]
    assert detail == [["public.idx"]]


def test_run_wraps_database_failure():
    server = FakeServer([("version_sql", DatabaseError("gone", "3F000"))])
    with pytest.raises(RepackError, match="pg_repack_alter failed with error"):
        Repacker(RepackOptions(dbname="db"), server.connect).run()


def test_run_rejects_conflicting_options():
    with pytest.raises(OptionError, match="switch_threshold"):
        Repacker(RepackOptions(apply_count=10, switch_threshold=10),
                 FakeServer().connect).run()


def test_main_help(capsys):
    assert main(["--help"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("pg_repack_alter re-organizes a PostgreSQL database.")
    assert "--alter=CLAUSE" in out


def test_main_option_conflict(capsys):
    code = main(["-a", "--alter", "ADD COLUMN c int", "-t", "x"])
    assert code == 1
    assert "cannot specify --alter and --all (-a)" in capsys.readouterr().err


def test_main_without_connection(capsys):
    assert main(["db"]) == 1
    assert "no database connection" in capsys.readouterr().err


def test_main_missing_tablespace(capsys):
    server = FakeServer([("pg_tablespace", [])])
    assert main(["--tablespace", "ts", "db"], connect=server.connect) == 1
    assert "the tablespace \"ts\" doesn't exist" in capsys.readouterr().err


def test_main_dry_run_succeeds():
    server = FakeServer([("version_sql", VERSION_ROW)])
    assert main(["-N", "-t", "public.tbl", "db"], connect=server.connect) == 0
    assert set(server.dbnames) == {"db"}