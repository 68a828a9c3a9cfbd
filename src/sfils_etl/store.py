"""sfils_etl.store

PostgreSQL implementation of the loader's store boundary, plus the read
helpers the query shell needs.

The connection runs in autocommit mode and every write is wrapped in its own
``conn.transaction()`` block: a reference upsert is durable as soon as it
returns, and a bulk insert either lands completely or not at all.
"""

from __future__ import annotations

from typing import Any, Sequence

import psycopg
from psycopg import sql

from sfils_etl.models import (
    LIBRARIES,
    NOTIFICATION_TYPES,
    PATRON_TYPES,
    PATRONS,
)
from sfils_etl.shared import (
    BatchWriteFailure,
    QueryError,
    StoreWriteError,
    StructuralFailure,
)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

TABLE_DDL = {
    PATRON_TYPES: """
        CREATE TABLE patron_types (
          code        text NOT NULL,
          description text NOT NULL
        )
    """,
    LIBRARIES: """
        CREATE TABLE libraries (
          code text NOT NULL,
          name text NOT NULL
        )
    """,
    NOTIFICATION_TYPES: """
        CREATE TABLE notification_types (
          code        text NOT NULL,
          description text NOT NULL
        )
    """,
    PATRONS: """
        CREATE TABLE patrons (
          id                            bigserial PRIMARY KEY,
          patron_type_code              text NOT NULL,
          patron_type_description       text NOT NULL,
          checkout_total                integer NOT NULL DEFAULT 0,
          renewal_total                 integer NOT NULL DEFAULT 0,
          age_range                     text,
          home_library_code             text NOT NULL,
          home_library_name             text NOT NULL,
          active_month                  integer CHECK (active_month BETWEEN 1 AND 12),
          active_year                   text,
          notification_type_code        text NOT NULL,
          notification_type_description text NOT NULL,
          email                         text,
          within_sf_county              boolean NOT NULL DEFAULT false,
          year_registered               text
        )
    """,
}


def connect(db_dsn: str, connect_timeout: int = 10) -> psycopg.Connection:
    """Open an autocommit connection or raise StructuralFailure."""
    try:
        conn = psycopg.connect(db_dsn, autocommit=True, connect_timeout=connect_timeout)
        conn.execute("SELECT 1")
    except psycopg.Error as exc:
        raise StructuralFailure(f"couldn't connect to database: {exc}") from exc
    return conn


class PostgresStore:
    """Store backed by a psycopg connection (autocommit)."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def _check_open(self) -> None:
        if self.conn.closed:
            raise StructuralFailure("database connection is closed")

    # ------------------------------------------------------------------
    # Schema primitives
    # ------------------------------------------------------------------

    def drop_if_exists(self, table: str) -> None:
        self._check_open()
        with self.conn.transaction():
            self.conn.execute(
                sql.SQL("DROP TABLE IF EXISTS {}").format(sql.Identifier(table))
            )

    def create_table(self, table: str) -> None:
        self._check_open()
        with self.conn.transaction():
            self.conn.execute(TABLE_DDL[table])

    def create_unique_index(self, table: str, field: str) -> None:
        self._check_open()
        with self.conn.transaction():
            self.conn.execute(
                sql.SQL("CREATE UNIQUE INDEX {} ON {} ({})").format(
                    sql.Identifier(f"{table}_{field}_key"),
                    sql.Identifier(table),
                    sql.Identifier(field),
                )
            )

    def create_index(self, table: str, field: str) -> None:
        self._check_open()
        with self.conn.transaction():
            self.conn.execute(
                sql.SQL("CREATE INDEX {} ON {} ({})").format(
                    sql.Identifier(f"{table}_{field}_idx"),
                    sql.Identifier(table),
                    sql.Identifier(field),
                )
            )

    def add_reference(
        self, table: str, field: str, ref_table: str, ref_field: str
    ) -> None:
        self._check_open()
        with self.conn.transaction():
            self.conn.execute(
                sql.SQL(
                    "ALTER TABLE {} ADD CONSTRAINT {} "
                    "FOREIGN KEY ({}) REFERENCES {} ({})"
                ).format(
                    sql.Identifier(table),
                    sql.Identifier(f"{table}_{field}_fkey"),
                    sql.Identifier(field),
                    sql.Identifier(ref_table),
                    sql.Identifier(ref_field),
                )
            )

    # ------------------------------------------------------------------
    # Write primitives
    # ------------------------------------------------------------------

    def upsert_if_absent(
        self, table: str, key_field: str, record: dict[str, Any]
    ) -> bool:
        """INSERT ... ON CONFLICT DO NOTHING.  Returns True when a row was added."""
        self._check_open()
        columns = list(record)
        query = sql.SQL(
            "INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) DO NOTHING"
        ).format(
            sql.Identifier(table),
            sql.SQL(", ").join(map(sql.Identifier, columns)),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            sql.Identifier(key_field),
        )
        try:
            with self.conn.transaction():
                cur = self.conn.execute(query, [record[c] for c in columns])
                return cur.rowcount == 1
        except psycopg.OperationalError as exc:
            if self.conn.closed:
                raise StructuralFailure(f"lost database connection: {exc}") from exc
            raise StoreWriteError(str(exc)) from exc
        except psycopg.Error as exc:
            raise StoreWriteError(str(exc)) from exc

    def bulk_insert(self, table: str, records: Sequence[dict[str, Any]]) -> int:
        """Insert all records in one transaction.  Returns the number inserted."""
        self._check_open()
        if not records:
            return 0
        columns = list(records[0])
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            sql.Identifier(table),
            sql.SQL(", ").join(map(sql.Identifier, columns)),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    cur.executemany(query, [[r[c] for c in columns] for r in records])
        except psycopg.OperationalError as exc:
            if self.conn.closed:
                raise StructuralFailure(f"lost database connection: {exc}") from exc
            raise BatchWriteFailure(str(exc)) from exc
        except psycopg.Error as exc:
            raise BatchWriteFailure(str(exc)) from exc
        return len(records)

    # ------------------------------------------------------------------
    # Read helpers (query shell)
    # ------------------------------------------------------------------

    def find(
        self,
        table: str,
        where: sql.Composable,
        params: Sequence[Any],
        limit: int,
    ) -> tuple[list[str], list[tuple[Any, ...]]]:
        query = sql.SQL("SELECT * FROM {} WHERE {} ORDER BY 1 LIMIT {}").format(
            sql.Identifier(table), where, sql.Literal(limit)
        )
        return self._read(query, params, limit)

    def fetch_sql(
        self, statement: str, limit: int | None = None
    ) -> tuple[list[str], list[tuple[Any, ...]]]:
        """Run a raw statement in a READ ONLY transaction."""
        return self._read(statement, (), limit, read_only=True)

    def _read(
        self,
        query: Any,
        params: Sequence[Any],
        limit: int | None,
        read_only: bool = False,
    ) -> tuple[list[str], list[tuple[Any, ...]]]:
        self._check_open()
        try:
            with self.conn.transaction():
                if read_only:
                    self.conn.execute("SET TRANSACTION READ ONLY")
                with self.conn.cursor() as cur:
                    cur.execute(query, params or None)
                    if cur.description is None:
                        return [], []
                    columns = [d.name for d in cur.description]
                    rows = cur.fetchmany(limit) if limit is not None else cur.fetchall()
        except psycopg.Error as exc:
            raise QueryError(str(exc).strip()) from exc
        return columns, rows
