# repack_alter

`repack_alter` rebuilds PostgreSQL tables and indexes while the database stays
online, in the way `CLUSTER` or `VACUUM FULL` would, but it holds an exclusive
lock only briefly: at the start and at the final swap. Once a table has been
repacked it can also apply a restricted `ALTER TABLE` clause to it.

The database must have the `repack_alter` extension installed. The
extension's functions `repack_alter.version()` and
`repack_alter.version_sql()` must both report `pgrepack_alter 1.0.0`.
Unless `--no-superuser-check` is given, the session must belong to a
superuser.

## What it does not do

- It has no PostgreSQL driver. You supply a `connect` callable that returns
  `repack_alter.database.Session` objects wrapping the connections of
  whichever driver you use (see below).
- Because of that, the `repack-alter` command on its own can show its usage
  text and check a command line for mistakes, but it cannot connect to a
  database: with a valid command line it reports
  `no database connection available` and exits with status 1. To do real
  work, call `repack_alter.runner.main(argv, connect)` or use `Repacker`
  from Python.
- It does not install the server-side extension.

## How a table is repacked

For each selected table, `repack_alter.table.TableRepacker`:

1. takes an advisory lock on the table, so that two runs cannot work on the
   same table at once (a held lock raises `DatabaseError`);
2. takes an exclusive lock, refuses tables with invalid indexes (unless
   `--no-error-on-invalid-index`) or with a leftover `repack_trigger`, and
   installs a trigger that records changes in a log table;
3. has a second session queue a `SHARE UPDATE EXCLUSIVE` lock, cancels any
   DDL waiting for the table, and commits;
4. copies the rows into a work table, ordered by the cluster key, by the
   columns given with `--order-by`, or in no order with `--no-order`;
5. builds the indexes on the work table, spread over several worker
   sessions when `--jobs` is greater than 1;
6. replays the log in batches of `--apply-count` rows until a batch applies
   no more than `--switch-threshold` rows and the transactions that were
   open at copy time have finished, then swaps the tables;
7. drops the temporary objects, applies the `--alter` clause if one was
   given, and, unless `--no-analyze`, runs `ANALYZE`.

If a step fails after the temporary objects were committed, they are dropped
again.

When it waits for an exclusive lock longer than `--wait-timeout` seconds, it
cancels the sessions that block it, and after twice that time terminates
them; with `--no-kill-backend` it gives up on the table instead.

With `--index` or `--only-indexes` only indexes are rebuilt
(`repack_alter.indexes`): a work index is built next to each valid index,
then the indexes are swapped under an exclusive lock and the work indexes are
dropped.

## Command line

```
repack-alter [OPTION]... [DBNAME]
repack-alter --help
```

The usage text names the program `pg_repack_alter`.

| Option | Meaning |
| --- | --- |
| `-a`, `--all` | repack all databases that accept connections |
| `-t`, `--table=TABLE` | repack specific table only (repeatable) |
| `-I`, `--parent-table=TABLE` | repack a parent table and its inheritors (repeatable) |
| `-c`, `--schema=SCHEMA` | repack tables in specific schema only (repeatable) |
| `-s`, `--tablespace=TBLSPC` | move repacked tables to a new tablespace |
| `-S`, `--moveidx` | move repacked indexes to TBLSPC too |
| `-o`, `--order-by=COLUMNS` | order by columns instead of cluster keys |
| `-n`, `--no-order` | do vacuum full instead of cluster |
| `-N`, `--dry-run` | print what would have been repacked |
| `-j`, `--jobs=NUM` | use this many parallel jobs for each table |
| `-i`, `--index=INDEX` | move only the specified index (repeatable) |
| `-x`, `--only-indexes` | move only indexes of the specified table |
| `-T`, `--wait-timeout=SECS` | timeout to cancel other backends on conflict (default 60) |
| `-D`, `--no-kill-backend` | don't kill other backends when timed out |
| `-Z`, `--no-analyze` | don't analyze at end |
| `-k`, `--no-superuser-check` | skip superuser checks in client |
| `-C`, `--exclude-extension` | don't repack tables which belong to an extension (repeatable) |
| `--no-error-on-invalid-index` | repack even though an invalid index is found |
| `--error-on-invalid-index` | don't repack when an invalid index is found (the default) |
| `--apply-count` | rows to apply in one transaction during replay (default 1000) |
| `--switch-threshold` | switch tables when that many rows are left (default 100) |
| `--alter=CLAUSE` | `ALTER TABLE` clause to apply after repacking |
| `--help` | show the usage text |

`--switch-threshold` must be less than `--apply-count`, and `--moveidx`
needs `--tablespace`. Contradictory options, such as `--index` with
`--table`, `--only-indexes` without `--table` or `--parent-table`, or
`--all` with `--schema`, are rejected before any work starts. A few options
that have no effect when only indexes are rebuilt (`--order-by`,
`--no-order`, `--no-analyze`, `--jobs`) produce a warning instead.

Option mistakes are printed as `pg_repack_alter: <message>` on standard
error and give exit status 1.

### The `--alter` option

The clause is accepted, in any letter case, when it contains `alter column`
together with `set data type`, `set default` or `set storage`, or when it
contains `add column`. That is, it is meant for:

- `ALTER COLUMN colname SET DATA TYPE datatype`
- `ALTER COLUMN colname SET DEFAULT expression`
- `ALTER COLUMN colname SET STORAGE storage_type`
- `ADD COLUMN colname datatype [DEFAULT value]`

`--alter` requires `--table`. Besides it, only `--dry-run`,
`--wait-timeout` and the two invalid-index options may be given; every other
option is rejected. The clause runs as `ALTER TABLE <table> <clause>` in the
same transaction that drops the temporary objects.

## Using it from Python

`connect(dbname)` is called with a database name (or `None`) and must return
a `repack_alter.database.Session`. A session wraps any object with an
`execute(sql, params)` method that takes SQL with `$1`-style placeholders and
a list of string or `None` parameters, and returns the result rows (or
`None` when there are none), and a `close()` method. Errors raised by
`execute` are turned into `DatabaseError`; an error's `sqlstate` (or
`pgcode`) attribute is kept, and is how lock timeouts (`55P03`) are
recognised.

```python
from repack_alter.database import Session
from repack_alter.options import parse_args
from repack_alter.runner import Repacker, RepackError, main


def connect(dbname):
    raw = open_driver_connection(dbname)  # your driver, adapted as above
    return Session(raw, server_version=160000, is_superuser=True)


options = parse_args(["--table", "public.orders", "--dry-run", "mydb"])
warnings = Repacker(options, connect).run()

status = main(["--table", "public.orders", "mydb"], connect)
```

`Repacker.run()` checks the options, the tablespace, the extension version
and that the requested relations exist, then repacks. It returns the option
warnings and raises `OptionError`, `RepackError` or `DatabaseError` on
failure. A table without a primary key or not-null unique key is skipped
with a warning. With `--all`, a database that fails is skipped and the run
goes on.

`main(argv, connect)` does the same as the command: it parses `argv`
(default `sys.argv[1:]`), sets up logging at INFO level, prints errors to
standard error and returns the exit status. Progress and warnings are
reported through the standard `logging` module, under the `repack_alter`
loggers.

Other pieces that can be used on their own:

- `repack_alter.options`: `parse_args`, `check_option_conflicts`,
  `validate_alter_clause` and `help_text(details)`.
- `repack_alter.sql`: the SQL the tool runs, e.g. `target_tables_query`,
  `copy_data_sql` and `xid_snapshot_query`.
- `repack_alter.locks`: `advisory_lock`, `lock_exclusive`,
  `lock_access_share` and `kill_ddl`.
- `repack_alter.models`: `RepackTable.from_row`, which reads one row of the
  extension's `repack_alter.tables` view.

## Tests

```
pip install -e ".[test]"
pytest
```