"""Integration tests for the reload protocol against PostgreSQL.

These tests run against an ephemeral PostgreSQL database via the db_conn
fixture in conftest.py.
"""

from __future__ import annotations

import psycopg
import pytest

from sfils_etl.loader import LoadConfig, Loader
from sfils_etl.shared import BatchWriteFailure, StructuralFailure
from sfils_etl.store import PostgresStore, connect

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def row(pt_code="ADULT", pt_desc="Adult", lib_code="M", lib_name="Main Library",
        nt_code="z", nt_desc="email", email="reader@example.com", month="March",
        checkouts="10", sf="TRUE"):
    return [
        pt_code, pt_desc, checkouts, "2", "25 to 34 years", lib_code, lib_name,
        month, "2023", nt_code, nt_desc, email, sf, "2015",
    ]


def reload(conn, rows, batch_size=1000):
    loader = Loader(PostgresStore(conn), LoadConfig(batch_size=batch_size, run_id="it"))
    return loader.run(rows)


def snapshot(conn):
    return {
        "patron_types": conn.execute(
            "SELECT code, description FROM patron_types ORDER BY code").fetchall(),
        "libraries": conn.execute(
            "SELECT code, name FROM libraries ORDER BY code").fetchall(),
        "notification_types": conn.execute(
            "SELECT code, description FROM notification_types ORDER BY code").fetchall(),
        "patrons": conn.execute(
            "SELECT patron_type_code, home_library_code, email, active_month, "
            "within_sf_county, checkout_total FROM patrons ORDER BY id").fetchall(),
    }


# ---------------------------------------------------------------------------
# Test: end-to-end load
# ---------------------------------------------------------------------------

class TestReload:
    def test_end_to_end(self, db_conn):
        conn, _ = db_conn
        rows = [
            row(pt_desc="Adult"),
            row(pt_desc="Adult Patron", email="True", month="", sf="FALSE"),
            ["ADULT", "Adult", "1", "0", "0 to 9 years", "X", "Excelsior", "", "", "z"],
        ]
        counters = reload(conn, rows)

        assert counters.summary_line() == "3 total rows processed, 2 successful, 1 failed"
        snap = snapshot(conn)
        assert snap["patron_types"] == [("ADULT", "Adult")]
        assert snap["libraries"] == [("M", "Main Library")]
        assert snap["patrons"] == [
            ("ADULT", "M", "reader@example.com", 3, True, 10),
            ("ADULT", "M", None, None, False, 10),
        ]

    def test_existing_tables_dropped(self, db_conn):
        conn, _ = db_conn
        conn.execute("CREATE TABLE patrons (junk text)")
        conn.execute("INSERT INTO patrons VALUES ('stale')")
        reload(conn, [row()])
        assert conn.execute("SELECT count(*) FROM patrons").fetchone()[0] == 1

    def test_indexes_and_constraints_exist(self, db_conn):
        conn, _ = db_conn
        reload(conn, [])
        indexes = {
            r[0] for r in conn.execute(
                "SELECT indexname FROM pg_indexes WHERE schemaname = 'public'"
            ).fetchall()
        }
        assert {"patron_types_code_key", "libraries_code_key",
                "notification_types_code_key", "patrons_email_idx"} <= indexes
        fkeys = conn.execute(
            "SELECT count(*) FROM pg_constraint WHERE contype = 'f' "
            "AND conrelid = 'patrons'::regclass"
        ).fetchone()[0]
        assert fkeys == 3

    def test_batches_across_threshold(self, db_conn):
        conn, _ = db_conn
        rows = [row(email=f"r{i}@example.com", lib_code=f"L{i % 3}") for i in range(7)]
        counters = reload(conn, rows, batch_size=3)
        assert counters.batches_flushed == 3
        assert conn.execute("SELECT count(*) FROM patrons").fetchone()[0] == 7
        assert conn.execute("SELECT count(*) FROM libraries").fetchone()[0] == 3


# ---------------------------------------------------------------------------
# Test: idempotence
# ---------------------------------------------------------------------------

class TestIdempotence:
    def test_second_run_same_state(self, db_conn):
        conn, _ = db_conn
        rows = [row(), row(pt_code="JUV", pt_desc="Juvenile", lib_code="B",
                           lib_name="Bayview"), row()[:4]]
        reload(conn, rows)
        first = snapshot(conn)
        reload(conn, rows)
        assert snapshot(conn) == first

    def test_first_seen_description_kept(self, db_conn):
        conn, _ = db_conn
        reload(conn, [row(lib_name="Main"), row(lib_name="Main (renamed)")])
        assert snapshot(conn)["libraries"] == [("M", "Main")]


# ---------------------------------------------------------------------------
# Test: store primitives
# ---------------------------------------------------------------------------

class TestPostgresStore:
    def test_upsert_if_absent(self, db_conn):
        conn, _ = db_conn
        reload(conn, [])
        store = PostgresStore(conn)
        assert store.upsert_if_absent("libraries", "code", {"code": "M", "name": "Main"})
        assert not store.upsert_if_absent("libraries", "code", {"code": "M", "name": "Other"})

    def test_bulk_insert_is_all_or_nothing(self, db_conn):
        conn, _ = db_conn
        reload(conn, [row()])
        record = {
            "patron_type_code": "ADULT", "patron_type_description": "Adult",
            "checkout_total": 0, "renewal_total": 0, "age_range": None,
            "home_library_code": "M", "home_library_name": "Main",
            "active_month": None, "active_year": None,
            "notification_type_code": "z", "notification_type_description": "email",
            "email": None, "within_sf_county": False, "year_registered": None,
        }
        bad = dict(record, home_library_code="NOPE")
        with pytest.raises(BatchWriteFailure):
            PostgresStore(conn).bulk_insert("patrons", [record, bad])
        assert conn.execute("SELECT count(*) FROM patrons").fetchone()[0] == 1

    def test_closed_connection_is_structural(self, db_conn):
        _, dsn = db_conn
        conn = psycopg.connect(dsn, autocommit=True)
        conn.close()
        loader = Loader(PostgresStore(conn), LoadConfig())
        with pytest.raises(StructuralFailure):
            loader.run([row()])

    def test_connect_runs_probe(self, db_conn):
        _, dsn = db_conn
        conn = connect(dsn)
        try:
            assert conn.autocommit
        finally:
            conn.close()
