import pytest

from repack_alter.options import (
    INVALID_ALTER_MESSAGE,
    OptionError,
    RepackOptions,
    check_option_conflicts,
    help_text,
    parse_args,
    validate_alter_clause,
)


def test_defaults():
    options = parse_args([])
    assert options.dbname is None
    assert options.wait_timeout == 60
    assert options.apply_count == 1000
    assert options.switch_threshold == 100
    assert options.analyze is True
    assert options.tables == []


def test_short_and_long_options():
    options = parse_args(
        ["-t", "a", "--table", "b", "-Z", "-T", "5", "-j", "3", "mydb", "-N"]
    )
    assert options.tables == ["a", "b"]
    assert options.analyze is False
    assert options.wait_timeout == 5
    assert options.jobs == 3
    assert options.dbname == "mydb"
    assert options.dry_run is True


def test_long_only_options():
    options = parse_args(
        ["--apply-count", "50", "--switch-threshold", "10",
         "--alter", "ADD COLUMN x int", "--no-error-on-invalid-index"]
    )
    assert options.apply_count == 50
    assert options.switch_threshold == 10
    assert options.alter_clause == "ADD COLUMN x int"
    assert options.no_error_on_invalid_index is True


def test_too_many_arguments():
    with pytest.raises(OptionError, match="too many arguments"):
        parse_args(["db1", "db2"])


def test_unknown_option_raises():
    with pytest.raises(OptionError):
        parse_args(["--bogus"])


def test_bad_integer_raises():
    with pytest.raises(OptionError):
        parse_args(["-j", "many"])


@pytest.mark.parametrize(
    "clause, expected",
    [
        ("ALTER COLUMN c SET DATA TYPE bigint", True),
        ("alter column c set default 1", True),
        ("Alter Column c Set Storage external", True),
        ("ADD COLUMN c int", True),
        ("add column c int default 0", True),
        ("ALTER COLUMN c DROP NOT NULL", False),
        ("DROP COLUMN c", False),
        ("", False),
        (None, False),
    ],
)
def test_validate_alter_clause(clause, expected):
    assert validate_alter_clause(clause) is expected


def test_effective_order_by():
    assert parse_args(["-n", "-o", "x"]).effective_order_by == ""
    assert parse_args(["-o", "x"]).effective_order_by == "x"
    assert parse_args([]).effective_order_by is None


def test_switch_threshold_must_be_below_apply_count():
    options = RepackOptions(apply_count=10, switch_threshold=10)
    with pytest.raises(OptionError, match="switch_threshold must be less than apply_count"):
        check_option_conflicts(options)


def test_invalid_alter_clause_rejected():
    options = RepackOptions(alter_clause="DROP COLUMN c", tables=["t"])
    with pytest.raises(OptionError) as info:
        check_option_conflicts(options)
    assert str(info.value) == INVALID_ALTER_MESSAGE


def test_moveidx_requires_tablespace():
    with pytest.raises(OptionError, match="without --tablespace"):
        check_option_conflicts(RepackOptions(moveidx=True))


def test_alter_requires_table():
    with pytest.raises(OptionError, match="--alter requires --table"):
        check_option_conflicts(RepackOptions(alter_clause="ADD COLUMN c int"))


@pytest.mark.parametrize(
    "extra, message",
    [
        ({"alldb": True}, "--all"),
        ({"jobs": 2}, "--jobs"),
        ({"analyze": False}, "--no-analyze"),
        ({"apply_count": 2000}, "--apply-count"),
        ({"order_by": "a"}, "--order-by"),
    ],
)
def test_alter_conflicts(extra, message):
    options = RepackOptions(alter_clause="ADD COLUMN c int", tables=["t"], **extra)
    with pytest.raises(OptionError, match=message):
        check_option_conflicts(options)


def test_alter_with_table_is_accepted():
    options = RepackOptions(alter_clause="ADD COLUMN c int", tables=["t"], dry_run=True)
    assert check_option_conflicts(options) == []


def test_index_and_table_conflict():
    with pytest.raises(OptionError, match="--index \\(-i\\) and --table"):
        check_option_conflicts(RepackOptions(indexes=["i"], tables=["t"]))


def test_only_indexes_requires_tables():
    with pytest.raises(OptionError, match="cannot repack all indexes"):
        check_option_conflicts(RepackOptions(only_indexes=True))


def test_index_mode_warns_once():
    options = RepackOptions(indexes=["i"], order_by="a", jobs=4)
    warnings = check_option_conflicts(options)
    assert len(warnings) == 1
    assert "--order-by" in warnings[0]


def test_schema_and_table_conflict():
    with pytest.raises(OptionError, match="schema.table notation"):
        check_option_conflicts(RepackOptions(schemas=["s"], tables=["t"]))


def test_all_with_schema_conflict():
    with pytest.raises(OptionError, match="schema\\(s\\) in all databases"):
        check_option_conflicts(RepackOptions(alldb=True, schemas=["s"]))


def test_help_text():
    short = help_text(False)
    full = help_text(True)
    assert "Options:" not in short
    assert full.startswith(short)
    assert "--alter=CLAUSE" in full
    assert "--exclude-extension" in full