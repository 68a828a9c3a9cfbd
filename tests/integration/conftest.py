"""Integration test fixtures.

Each test gets an ephemeral PostgreSQL database from pytest-postgresql.  No
schema is applied up front: the loader's own reset step creates the tables.
Tests are skipped when PostgreSQL binaries are not installed.
"""

from __future__ import annotations

import shutil

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")

HAVE_POSTGRES = bool(shutil.which("pg_ctl") or shutil.which("pg_config"))


@pytest.fixture(scope="function")
def db_conn(request):
    """Yield (autocommit connection, dsn) for an empty database."""
    if not HAVE_POSTGRES:
        pytest.skip("PostgreSQL binaries not found")
    postgresql = request.getfixturevalue("postgresql")
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        yield conn, dsn
    finally:
        conn.close()
