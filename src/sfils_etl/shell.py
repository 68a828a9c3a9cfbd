"""sfils_etl.shell

Read-only query shell over the loaded patron tables.

Grammar (one command per line):
  exit | quit                 leave the shell
  help                        example queries
  benchmark                   time a fixed set of queries
  <table> | <json filter>     filtered SELECT, e.g. patrons|{"within_sf_county": true}
  SELECT ... / WITH ...       raw SQL, run in a READ ONLY transaction

At most ``row_limit`` rows are printed per query.  Bad input is reported and
the loop continues.
"""

from __future__ import annotations

import re
import sys
import time
from typing import Any, Iterable, Iterator, Protocol, Sequence, TextIO

import click
from psycopg import sql

from sfils_etl.filters import compile_filter, parse_filter
from sfils_etl.shared import QueryError

DEFAULT_ROW_LIMIT = 100
RULE = "-" * 80

_RAW_SQL_RE = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)

HELP_TEXT = """
=== Some example queries you can try ===
patrons|{}                                            first 100 patrons
patrons|{"within_sf_county": true}                    patrons in SF county
patrons|{"age_range": "25 to 34 years"}               patrons by age range
patrons|{"email": {"$regex": "gmail\\\\.com$"}}         gmail users
patrons|{"active_year": {"$in": ["2022", "2023"]}}    active in 2022 or 2023
patron_types|{}                                       all patron types
libraries|{}                                          all libraries
SELECT age_range, COUNT(*) FROM patrons GROUP BY age_range ORDER BY 2 DESC
SELECT * FROM patrons WHERE email LIKE '%@gmail.com' LIMIT 5

Type 'benchmark' to run performance tests
"""

BENCHMARK_QUERIES = (
    ("count all patrons", "SELECT COUNT(*) FROM patrons"),
    (
        "count by patron type",
        "SELECT pt.description, COUNT(*) FROM patrons p "
        "JOIN patron_types pt ON p.patron_type_code = pt.code "
        "GROUP BY pt.description",
    ),
    (
        "count by age range",
        "SELECT age_range, COUNT(*) FROM patrons GROUP BY age_range",
    ),
    (
        "count by library",
        "SELECT l.name, COUNT(*) FROM patrons p "
        "JOIN libraries l ON p.home_library_code = l.code GROUP BY l.name",
    ),
    ("find SF patrons", "SELECT COUNT(*) FROM patrons WHERE within_sf_county"),
    ("active in 2023", "SELECT COUNT(*) FROM patrons WHERE active_year = '2023'"),
)


class QueryStore(Protocol):
    def find(
        self, table: str, where: sql.Composable, params: Sequence[Any], limit: int
    ) -> tuple[list[str], list[tuple[Any, ...]]]: ...

    def fetch_sql(
        self, statement: str, limit: int | None = None
    ) -> tuple[list[str], list[tuple[Any, ...]]]: ...


def format_value(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class QueryShell:
    def __init__(self, store: QueryStore, row_limit: int = DEFAULT_ROW_LIMIT) -> None:
        self.store = store
        self.row_limit = row_limit

    def run(self, lines: Iterable[str]) -> None:
        click.echo("\n=== program interface ===")
        click.echo('query format: table_name|{"column": "value"}  or a SELECT statement')
        click.echo("type 'exit' or 'quit' to quit")
        click.echo("type 'help' for example queries")
        click.echo()
        for line in lines:
            if not self.handle(line):
                return

    def handle(self, line: str) -> bool:
        """Run one command.  Returns False when the shell should stop."""
        command = line.strip()
        if not command:
            return True
        if command in ("exit", "quit"):
            click.echo("bye")
            return False
        if command == "help":
            click.echo(HELP_TEXT)
            return True
        if command == "benchmark":
            self.benchmark()
            return True

        try:
            if "|" in command and not _RAW_SQL_RE.match(command):
                table, _, filter_text = command.partition("|")
                doc = parse_filter(filter_text)
                where, params = compile_filter(table.strip(), doc)
                columns, rows = self.store.find(
                    table.strip(), where, params, self.row_limit
                )
            elif _RAW_SQL_RE.match(command):
                columns, rows = self.store.fetch_sql(command, self.row_limit)
            else:
                click.echo("format error: use table_name|{filter}")
                return True
        except QueryError as exc:
            click.echo(f"query error: {exc}")
            return True

        self.print_rows(columns, rows)
        return True

    def print_rows(self, columns: list[str], rows: list[tuple[Any, ...]]) -> None:
        click.echo(RULE)
        click.echo(" | ".join(columns))
        click.echo(RULE)
        for row in rows:
            click.echo(" | ".join(format_value(v) for v in row))
        click.echo(RULE)
        click.echo(f"{len(rows)} rows returned\n")

    def benchmark(self) -> None:
        click.echo("\n=== performance test ===")
        for name, statement in BENCHMARK_QUERIES:
            start = time.perf_counter()
            try:
                _, rows = self.store.fetch_sql(statement)
            except QueryError as exc:
                click.echo(f"{name}: error - {exc}")
                continue
            elapsed_ms = (time.perf_counter() - start) * 1000
            click.echo(f"{name}: {elapsed_ms:.1f} ms ({len(rows)} rows)")
        click.echo("\nbenchmark done")


def prompt_lines(stream: TextIO | None = None) -> Iterator[str]:
    """Yield lines typed at a '> ' prompt until EOF."""
    stream = stream if stream is not None else sys.stdin
    while True:
        click.echo("> ", nl=False)
        line = stream.readline()
        if not line:
            click.echo()
            return
        yield line
