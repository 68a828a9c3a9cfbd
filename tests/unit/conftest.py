"""Unit test fixtures.

FakeStore keeps tables in memory and implements the loader's Store
protocol, including drop-if-exists, unique codes and foreign-key checks on
bulk insert.  Failures can be injected per table or per bulk-insert call.
"""

from __future__ import annotations

from typing import Any

import pytest

from sfils_etl.models import LIBRARIES, NOTIFICATION_TYPES, PATRON_TYPES
from sfils_etl.shared import BatchWriteFailure, StoreWriteError

REFERENCES = {
    "patron_type_code": PATRON_TYPES,
    "home_library_code": LIBRARIES,
    "notification_type_code": NOTIFICATION_TYPES,
}


class FakeStore:
    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.unique: dict[str, str] = {}
        self.indexes: list[tuple[str, str]] = []
        self.references: list[tuple[str, str, str, str]] = []
        self.calls: list[tuple[str, str]] = []
        self.bulk_calls = 0
        # injection points
        self.fail_drop: Exception | None = None
        self.fail_index_columns: set[str] = set()
        self.fail_upsert_tables: set[str] = set()
        self.fail_bulk_calls: set[int] = set()

    def drop_if_exists(self, table: str) -> None:
        self.calls.append(("drop", table))
        if self.fail_drop is not None:
            raise self.fail_drop
        self.tables.pop(table, None)
        self.unique.pop(table, None)
        self.indexes = [i for i in self.indexes if i[0] != table]
        self.references = [r for r in self.references if r[0] != table]

    def create_table(self, table: str) -> None:
        self.calls.append(("create", table))
        self.tables[table] = []

    def create_unique_index(self, table: str, field: str) -> None:
        self.unique[table] = field

    def create_index(self, table: str, field: str) -> None:
        if field in self.fail_index_columns:
            raise RuntimeError(f"no index on {field}")
        self.indexes.append((table, field))

    def add_reference(self, table, field, ref_table, ref_field) -> None:
        self.references.append((table, field, ref_table, ref_field))

    def upsert_if_absent(self, table: str, key_field: str, record: dict[str, Any]) -> bool:
        self.calls.append(("upsert", table))
        if table in self.fail_upsert_tables:
            raise StoreWriteError(f"{table} is read-only")
        rows = self.tables[table]
        if any(r[key_field] == record[key_field] for r in rows):
            return False
        rows.append(dict(record))
        return True

    def bulk_insert(self, table: str, records) -> int:
        call = self.bulk_calls
        self.bulk_calls += 1
        self.calls.append(("bulk", table))
        if call in self.fail_bulk_calls:
            raise BatchWriteFailure(f"batch {call} refused")
        for record in records:
            for column, ref_table in REFERENCES.items():
                codes = {r["code"] for r in self.tables[ref_table]}
                if record[column] not in codes:
                    raise BatchWriteFailure(f"foreign key violation on {column}")
        self.tables[table].extend(dict(r) for r in records)
        return len(records)

    def codes(self, table: str) -> list[str]:
        return [r["code"] for r in self.tables[table]]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()
