"""Command-line options for the repack tool and their validation."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from typing import NoReturn, Sequence

PROGRAM_NAME = "pg_repack_alter"
PROGRAM_VERSION = "1.0.0"

APPLY_COUNT_DEFAULT = 1000
SWITCH_THRESHOLD_DEFAULT = 100
WAIT_TIMEOUT_DEFAULT = 60

INVALID_ALTER_MESSAGE = (
    "Invalid ALTER clause. Only the following operations are allowed (case-insensitive):\n"
    "  - ALTER COLUMN [colname] SET DATA TYPE [datatype]\n"
    "  - ALTER COLUMN [colname] SET DEFAULT [expression]\n"
    "  - ALTER COLUMN [colname] SET STORAGE [storage_type]\n"
    "  - ADD COLUMN [colname] [datatype] [DEFAULT value]"
)


class OptionError(ValueError):
    """Raised when the command line is invalid or options conflict."""


@dataclass
class RepackOptions:
    """Everything the command line can set."""

    dbname: str | None = None
    alldb: bool = False
    tables: list[str] = field(default_factory=list)
    parent_tables: list[str] = field(default_factory=list)
    schemas: list[str] = field(default_factory=list)
    no_order: bool = False
    dry_run: bool = False
    order_by: str | None = None
    tablespace: str | None = None
    moveidx: bool = False
    indexes: list[str] = field(default_factory=list)
    only_indexes: bool = False
    wait_timeout: int = WAIT_TIMEOUT_DEFAULT
    analyze: bool = True
    jobs: int = 0
    no_kill_backend: bool = False
    no_superuser_check: bool = False
    exclude_extensions: list[str] = field(default_factory=list)
    no_error_on_invalid_index: bool = False
    error_on_invalid_index: bool = False
    apply_count: int = APPLY_COUNT_DEFAULT
    switch_threshold: int = SWITCH_THRESHOLD_DEFAULT
    alter_clause: str | None = None
    show_help: bool = False

    @property
    def repack_indexes(self) -> bool:
        """True when only indexes are to be rebuilt."""
        return bool(self.indexes) or self.only_indexes

    @property
    def effective_order_by(self) -> str | None:
        """ORDER BY for table copies: empty string means no ordering at all."""
        return "" if self.no_order else self.order_by


def validate_alter_clause(clause: str | None) -> bool:
    """Return whether an ALTER TABLE clause uses only permitted operations."""
    if not clause:
        return False
    lowered = clause.lower()
    if "alter column" in lowered:
        return any(
            sub in lowered
            for sub in ("set data type", "set default", "set storage")
        )
    # ADD COLUMN is accepted with or without a DEFAULT.
    return "add column" in lowered


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise OptionError(message)


def _build_parser() -> _Parser:
    parser = _Parser(prog=PROGRAM_NAME, add_help=False)
    add = parser.add_argument
    add("-a", "--all", dest="alldb", action="store_true")
    add("-t", "--table", dest="tables", action="append", default=[])
    add("-I", "--parent-table", dest="parent_tables", action="append", default=[])
    add("-c", "--schema", dest="schemas", action="append", default=[])
    add("-n", "--no-order", dest="no_order", action="store_true")
    add("-N", "--dry-run", dest="dry_run", action="store_true")
    add("-o", "--order-by", dest="order_by")
    add("-s", "--tablespace", dest="tablespace")
    add("-S", "--moveidx", dest="moveidx", action="store_true")
    add("-i", "--index", dest="indexes", action="append", default=[])
    add("-x", "--only-indexes", dest="only_indexes", action="store_true")
    add("-T", "--wait-timeout", dest="wait_timeout", type=int,
        default=WAIT_TIMEOUT_DEFAULT)
    add("-Z", "--no-analyze", dest="analyze", action="store_false")
    add("-j", "--jobs", dest="jobs", type=int, default=0)
    add("-D", "--no-kill-backend", dest="no_kill_backend", action="store_true")
    add("-k", "--no-superuser-check", dest="no_superuser_check", action="store_true")
    add("-C", "--exclude-extension", dest="exclude_extensions", action="append",
        default=[])
    add("--no-error-on-invalid-index", dest="no_error_on_invalid_index",
        action="store_true")
    add("--error-on-invalid-index", dest="error_on_invalid_index",
        action="store_true")
    add("--apply-count", dest="apply_count", type=int, default=APPLY_COUNT_DEFAULT)
    add("--switch-threshold", dest="switch_threshold", type=int,
        default=SWITCH_THRESHOLD_DEFAULT)
    add("--alter", dest="alter_clause")
    add("--help", dest="show_help", action="store_true")
    add("dbname", nargs="*")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> RepackOptions:
    """Parse a command line into RepackOptions."""
    if argv is None:
        argv = sys.argv[1:]
    namespace = _build_parser().parse_intermixed_args(list(argv))
    values = vars(namespace)
    positional = values.pop("dbname")
    if len(positional) > 1:
        raise OptionError("too many arguments")
    return RepackOptions(dbname=positional[0] if positional else None, **values)


_ALTER_CONFLICTS = (
    (lambda o: o.alldb, "cannot specify --alter and --all (-a)"),
    (lambda o: o.schemas, "cannot specify --alter and --schema (-c)"),
    (lambda o: o.indexes, "cannot specify --alter and --index (-i)"),
    (lambda o: o.only_indexes, "cannot specify --alter and --only-indexes (-x)"),
    (lambda o: o.parent_tables, "cannot specify --alter and --parent-table (-I)"),
    (lambda o: not o.tables, "--alter requires --table (-t)"),
    (lambda o: o.tablespace, "cannot specify --alter and --tablespace (-s)"),
    (lambda o: o.moveidx, "cannot specify --alter and --moveidx (-S)"),
    (lambda o: o.order_by, "cannot specify --alter and --order-by (-o)"),
    (lambda o: o.no_order, "cannot specify --alter and --no-order (-n)"),
    (lambda o: o.jobs > 0, "cannot specify --alter and --jobs (-j)"),
    (lambda o: o.exclude_extensions,
     "cannot specify --alter and --exclude-extension (-C)"),
    (lambda o: not o.analyze, "cannot specify --alter and --no-analyze (-Z)"),
    (lambda o: o.no_kill_backend, "cannot specify --alter and --no-kill-backend (-D)"),
    (lambda o: o.no_superuser_check,
     "cannot specify --alter and --no-superuser-check (-k)"),
    (lambda o: o.apply_count != APPLY_COUNT_DEFAULT,
     "cannot specify --alter and --apply-count"),
    (lambda o: o.switch_threshold != SWITCH_THRESHOLD_DEFAULT,
     "cannot specify --alter and --switch-threshold"),
)


def _index_mode_warning(options: RepackOptions) -> str | None:
    if options.order_by:
        return "option -o (--order-by) has no effect while repacking indexes"
    if options.no_order:
        return "option -n (--no-order) has no effect while repacking indexes"
    if not options.analyze:
        return ("ANALYZE is not performed after repacking indexes, "
                "-z (--no-analyze) has no effect")
    if options.jobs:
        return ("option -j (--jobs) has no effect, repacking indexes "
                "does not use parallel jobs")
    return None


def check_option_conflicts(options: RepackOptions) -> list[str]:
    """Raise OptionError on conflicting options; return warnings to report."""
    if options.switch_threshold >= options.apply_count:
        raise OptionError("switch_threshold must be less than apply_count")

    if options.alter_clause is not None and not validate_alter_clause(
        options.alter_clause
    ):
        raise OptionError(INVALID_ALTER_MESSAGE)

    if options.tablespace is None and options.moveidx:
        raise OptionError(
            "cannot specify --moveidx (-S) without --tablespace (-s)")

    if options.alter_clause is not None:
        for conflicts, message in _ALTER_CONFLICTS:
            if conflicts(options):
                raise OptionError(message)

    warnings: list[str] = []
    if options.repack_indexes:
        if options.indexes and options.tables:
            raise OptionError("cannot specify --index (-i) and --table (-t)")
        if options.indexes and options.parent_tables:
            raise OptionError("cannot specify --index (-i) and --parent-table (-I)")
        if options.indexes and options.only_indexes:
            raise OptionError("cannot specify --index (-i) and --only-indexes (-x)")
        if options.indexes and options.exclude_extensions:
            raise OptionError(
                "cannot specify --index (-i) and --exclude-extension (-C)")
        if options.only_indexes and not (options.tables or options.parent_tables):
            raise OptionError(
                "cannot repack all indexes of database, specify the table(s)"
                "via --table (-t) or --parent-table (-I)")
        if options.only_indexes and options.exclude_extensions:
            raise OptionError(
                "cannot specify --only-indexes (-x) and --exclude-extension (-C)")
        if options.alldb:
            raise OptionError("cannot repack specific index(es) in all databases")
        warning = _index_mode_warning(options)
        if warning:
            warnings.append(warning)
        return warnings

    if options.schemas and (options.tables or options.parent_tables):
        raise OptionError(
            "cannot repack specific table(s) in schema, "
            "use schema.table notation instead")
    if options.exclude_extensions and options.tables:
        raise OptionError(
            "cannot specify --table (-t) and --exclude-extension (-C)")
    if options.exclude_extensions and options.parent_tables:
        raise OptionError(
            "cannot specify --parent-table (-I) and --exclude-extension (-C)")
    if options.alldb:
        if options.tables or options.parent_tables:
            raise OptionError("cannot repack specific table(s) in all databases")
        if options.schemas:
            raise OptionError("cannot repack specific schema(s) in all databases")
    return warnings


_OPTION_HELP = """\
Options:
  -a, --all                          repack all databases
  -t, --table=TABLE                  repack specific table only
  -I, --parent-table=TABLE           repack specific parent table and its inheritors
  -c, --schema=SCHEMA                repack tables in specific schema only
  -s, --tablespace=TBLSPC            move repacked tables to a new tablespace
  -S, --moveidx                      move repacked indexes to TBLSPC too
  -o, --order-by=COLUMNS             order by columns instead of cluster keys
  -n, --no-order                     do vacuum full instead of cluster
  -N, --dry-run                      print what would have been repacked
  -j, --jobs=NUM                     Use this many parallel jobs for each table
  -i, --index=INDEX                  move only the specified index
  -x, --only-indexes                 move only indexes of the specified table
  -T, --wait-timeout=SECS            timeout to cancel other backends on conflict
  -D, --no-kill-backend              don't kill other backends when timed out
  -Z, --no-analyze                   don't analyze at end
  -k, --no-superuser-check           skip superuser checks in client
  -C, --exclude-extension            don't repack tables which belong to specific extension
      --no-error-on-invalid-index    repack even though invalid index is found
      --error-on-invalid-index       don't repack when invalid index is found, deprecated, as this is the default behavior now
      --apply-count                  number of tuples to apply in one transaction during replay
      --switch-threshold             switch tables when that many tuples are left to catchup
      --alter=CLAUSE                 ALTER TABLE clause to apply (only with --table, --dry-run, --wait-timeout)
"""


def help_text(details: bool) -> str:
    """Return the usage text, with the option list when details is true."""
    text = (
        f"{PROGRAM_NAME} re-organizes a PostgreSQL database.\n\n"
        "Usage:\n"
        f"  {PROGRAM_NAME} [OPTION]... [DBNAME]\n"
    )
    if details:
        text += _OPTION_HELP
    return text