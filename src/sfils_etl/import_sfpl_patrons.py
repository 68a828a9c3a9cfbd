"""sfils_etl.import_sfpl_patrons

CLI entrypoint: reload the SFPL patron spreadsheet into PostgreSQL, then open
the query shell.

Every invocation runs connect → schema reset → indexes → load → report →
shell.  The load is a full reload, so running it twice on the same file
leaves the database in the same state.

Usage:
    sfils-etl \\
        --db-dsn "$DB_DSN" \\
        --input-path data/sfpl.xlsx

    # normalizer only, no database
    sfils-etl --input-path data/sfpl.xlsx --validate-only

Exit status: 0 after 'exit'/'quit' (or end of input) in the shell, 1 when the
database can't be reached, the input can't be opened or the schema reset
fails.
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime

import click
import psycopg

from sfils_etl.config import (
    DB_DSN_ENV,
    DEFAULT_DB_DSN,
    DEFAULT_INPUT_PATH,
    DEFAULT_REJECTS_PATH,
    DEFAULT_REPORTS_DIR,
    Settings,
    resolve_settings,
)
from sfils_etl.loader import (
    DEFAULT_BATCH_SIZE,
    LoadConfig,
    LoadCounters,
    Loader,
    build_load_report,
    validate_rows,
)
from sfils_etl.shared import RejectWriter, StructuralFailure, write_run_report
from sfils_etl.shell import QueryShell, prompt_lines
from sfils_etl.spreadsheet import open_rows
from sfils_etl.store import PostgresStore, connect


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--db-dsn",
    envvar=DB_DSN_ENV,
    default=None,
    help=f"PostgreSQL DSN  [env var: {DB_DSN_ENV}; default: {DEFAULT_DB_DSN}]",
)
@click.option(
    "--input-path",
    default=DEFAULT_INPUT_PATH,
    show_default=True,
    type=click.Path(dir_okay=False),
    help="Patron spreadsheet (.xlsx or .csv); row 0 is the header",
)
@click.option(
    "--batch-size",
    default=DEFAULT_BATCH_SIZE,
    type=click.IntRange(min=1),
    show_default=True,
    help="Patron records per bulk insert",
)
@click.option("--rejects-path", default=DEFAULT_REJECTS_PATH, show_default=True)
@click.option("--reports-dir", default=DEFAULT_REPORTS_DIR, show_default=True)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--validate-only",
    is_flag=True,
    default=False,
    help="Run the normalizer and report; no database connection",
)
@click.option("--no-shell", is_flag=True, default=False, help="Exit after the load")
@click.option("--verbose", is_flag=True, default=False, help="Log at INFO level")
def main(
    db_dsn: str | None,
    input_path: str,
    batch_size: int,
    rejects_path: str,
    reports_dir: str,
    run_id: str | None,
    validate_only: bool,
    no_shell: bool,
    verbose: bool,
) -> None:
    """Reload SFPL patron data and open the query shell."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    mode = "validate_only" if validate_only else "reload"
    settings = resolve_settings(
        db_dsn, input_path, batch_size, rejects_path, reports_dir, run_id
    )
    counters = LoadCounters()
    rejects = RejectWriter(settings.rejects_path)

    click.echo(f"[{run_id}] Starting {mode} run input={settings.input_path}")

    conn: psycopg.Connection | None = None
    try:
        if validate_only:
            _run_validate_only(settings, counters, rejects)
        else:
            if settings.using_default_dsn:
                click.echo(
                    f"[{run_id}] warning: {DB_DSN_ENV} not set, "
                    f"using default connection string {DEFAULT_DB_DSN}",
                    err=True,
                )
            conn = _run_reload(settings, counters, rejects)
    except StructuralFailure as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    finally:
        rejects.close()

    click.echo(build_load_report(counters, validate_only=validate_only))
    if rejects.written:
        click.echo(f"[{run_id}] Rejected rows: {settings.rejects_path}")
    report_path = write_run_report(
        run_id, started_at, mode, settings.reports_dir,
        {"input_path": str(settings.input_path)},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if conn is None:
        return
    try:
        if not no_shell:
            QueryShell(PostgresStore(conn)).run(prompt_lines())
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------

def _run_reload(
    settings: Settings,
    counters: LoadCounters,
    rejects: RejectWriter,
) -> psycopg.Connection:
    """Connect and run one full reload.  Returns the open connection."""
    conn = connect(settings.db_dsn)
    click.echo(f"[{settings.run_id}] Database ready")
    try:
        with open_rows(settings.input_path) as sheet:
            rejects.header = sheet.header or None
            # the whole file is read before the schema reset
            rows = list(sheet.rows)
            loader = Loader(
                PostgresStore(conn),
                LoadConfig(batch_size=settings.batch_size, run_id=settings.run_id),
                counters=counters,
                rejects=rejects,
            )
            loader.run(rows)
    except BaseException:
        conn.close()
        raise
    return conn


def _run_validate_only(
    settings: Settings,
    counters: LoadCounters,
    rejects: RejectWriter,
) -> None:
    with open_rows(settings.input_path) as sheet:
        rejects.header = sheet.header or None
        validate_rows(sheet.rows, counters, rejects)


if __name__ == "__main__":
    main()
