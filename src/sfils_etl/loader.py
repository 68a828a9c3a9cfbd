"""sfils_etl.loader

Reload protocol for the SFPL patron dataset.

Every run is a full reload:

  IDLE → SCHEMA_RESET → INDEXES_READY → LOADING → COMMITTED   (or FAILED)

  1. SCHEMA_RESET   drop patrons and the three lookup tables, recreate empty
  2. INDEXES_READY  unique index on each lookup code, patron foreign keys,
                    then best-effort secondary indexes for the query shell
  3. LOADING        per row: validate → upsert lookups (insert-if-absent)
                    → buffer record; flush a bulk insert every batch_size
  4. COMMITTED      flush the remainder, report counts

Row rejections and failed writes are counted and logged, never fatal.
Only StructuralFailure leaves this module.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Protocol, Sequence

import click

from sfils_etl.models import (
    ALL_TABLES,
    LIBRARIES,
    NOTIFICATION_TYPES,
    PATRON_TYPES,
    PATRONS,
    REFERENCE_TABLES,
)
from sfils_etl.normalize import validate_row
from sfils_etl.shared import (
    RejectWriter,
    RowRejection,
    StoreWriteError,
    StructuralFailure,
)

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
PROGRESS_EVERY = 10_000

# Data rows are numbered from 1; row 0 is the header.
FIRST_DATA_ROW = 1

PATRON_SECONDARY_INDEXES = (
    "patron_type_code",
    "age_range",
    "home_library_code",
    "within_sf_county",
    "active_year",
    "email",
)

PATRON_REFERENCES = (
    ("patron_type_code", PATRON_TYPES),
    ("home_library_code", LIBRARIES),
    ("notification_type_code", NOTIFICATION_TYPES),
)


# ---------------------------------------------------------------------------
# Store boundary
# ---------------------------------------------------------------------------

class Store(Protocol):
    def drop_if_exists(self, table: str) -> None: ...

    def create_table(self, table: str) -> None: ...

    def create_unique_index(self, table: str, field: str) -> None: ...

    def create_index(self, table: str, field: str) -> None: ...

    def add_reference(
        self, table: str, field: str, ref_table: str, ref_field: str
    ) -> None: ...

    def upsert_if_absent(
        self, table: str, key_field: str, record: dict[str, Any]
    ) -> bool: ...

    def bulk_insert(self, table: str, records: Sequence[dict[str, Any]]) -> int: ...


# ---------------------------------------------------------------------------
# Config / state / counters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoadConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    run_id: str = "-"

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")


class LoadState(str, Enum):
    IDLE = "idle"
    SCHEMA_RESET = "schema_reset"
    INDEXES_READY = "indexes_ready"
    LOADING = "loading"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class LoadCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    rows_failed: int = 0
    records_inserted: int = 0
    records_failed: int = 0
    batches_flushed: int = 0
    batches_failed: int = 0
    patron_types_upserted: int = 0
    libraries_upserted: int = 0
    notification_types_upserted: int = 0
    parse_warnings: int = 0
    index_warnings: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return self.records_inserted

    @property
    def failed(self) -> int:
        return self.rows_rejected + self.rows_failed + self.records_failed

    def summary_line(self) -> str:
        return (
            f"{self.rows_read} total rows processed, "
            f"{self.successful} successful, {self.failed} failed"
        )

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["successful"] = self.successful
        d["failed"] = self.failed
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

class Loader:
    """Drives one reload against a Store.  A Loader instance runs once."""

    def __init__(
        self,
        store: Store,
        config: LoadConfig,
        counters: LoadCounters | None = None,
        rejects: RejectWriter | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.counters = counters if counters is not None else LoadCounters()
        self.rejects = rejects
        self.state = LoadState.IDLE
        self._batch: list[dict[str, Any]] = []
        self._seen: dict[str, set[str]] = {t: set() for t in REFERENCE_TABLES}

    def _echo(self, message: str) -> None:
        click.echo(f"[{self.config.run_id}] {message}")

    def _expect(self, state: LoadState) -> None:
        if self.state is not state:
            raise RuntimeError(
                f"loader is in state {self.state.value!r}, expected {state.value!r}"
            )

    def _fail(self, message: str, exc: Exception) -> StructuralFailure:
        self.state = LoadState.FAILED
        log.error("%s: %s", message, exc)
        return StructuralFailure(f"{message}: {exc}")

    # ------------------------------------------------------------------ #
    # IDLE → SCHEMA_RESET                                                 #
    # ------------------------------------------------------------------ #
    def reset_schema(self) -> None:
        self._expect(LoadState.IDLE)
        for table in ALL_TABLES:
            try:
                self.store.drop_if_exists(table)
            except StructuralFailure:
                self.state = LoadState.FAILED
                raise
            except Exception as exc:
                raise self._fail(f"couldn't drop {table}", exc) from exc
        for table in reversed(ALL_TABLES):
            try:
                self.store.create_table(table)
            except StructuralFailure:
                self.state = LoadState.FAILED
                raise
            except Exception as exc:
                raise self._fail(f"couldn't create {table}", exc) from exc
        self.state = LoadState.SCHEMA_RESET
        self._echo("Schema reset: " + ", ".join(ALL_TABLES))

    # ------------------------------------------------------------------ #
    # SCHEMA_RESET → INDEXES_READY                                        #
    # ------------------------------------------------------------------ #
    def create_indexes(self) -> None:
        self._expect(LoadState.SCHEMA_RESET)
        try:
            for table in REFERENCE_TABLES:
                self.store.create_unique_index(table, "code")
            for column, ref_table in PATRON_REFERENCES:
                self.store.add_reference(PATRONS, column, ref_table, "code")
        except StructuralFailure:
            self.state = LoadState.FAILED
            raise
        except Exception as exc:
            raise self._fail("couldn't create unique indexes", exc) from exc

        for column in PATRON_SECONDARY_INDEXES:
            try:
                self.store.create_index(PATRONS, column)
            except StructuralFailure:
                self.state = LoadState.FAILED
                raise
            except Exception as exc:
                message = f"index on {PATRONS}.{column} not created: {exc}"
                log.warning(message)
                self.counters.index_warnings += 1
                self.counters.warnings.append(message)
        self.state = LoadState.INDEXES_READY
        self._echo("Indexes created")

    # ------------------------------------------------------------------ #
    # INDEXES_READY → LOADING                                             #
    # ------------------------------------------------------------------ #
    def load_rows(self, rows: Iterable[Sequence[str]]) -> None:
        self._expect(LoadState.INDEXES_READY)
        self.state = LoadState.LOADING
        c = self.counters
        try:
            for row_number, row in enumerate(rows, start=FIRST_DATA_ROW):
                c.rows_read += 1
                self._load_row(row_number, row)
                if row_number % PROGRESS_EVERY == 0:
                    self._echo(
                        f"processed {row_number} rows "
                        f"({c.records_inserted + len(self._batch)} buffered or inserted, "
                        f"{c.failed} errors)"
                    )
        except StructuralFailure:
            self.state = LoadState.FAILED
            raise

    def _load_row(self, row_number: int, row: Sequence[str]) -> None:
        c = self.counters
        try:
            validated = validate_row(row)
        except RowRejection as exc:
            c.rows_rejected += 1
            log.info("skipping row %d: %s", row_number, exc)
            if self.rejects is not None:
                self.rejects.write(row, exc.reason, row_number)
            return

        if validated.warnings:
            c.parse_warnings += len(validated.warnings)
            c.warnings.extend(f"row {row_number}: {w}" for w in validated.warnings)

        refs = (
            (PATRON_TYPES, validated.patron_type, "patron_types_upserted"),
            (LIBRARIES, validated.library, "libraries_upserted"),
            (NOTIFICATION_TYPES, validated.notification_type, "notification_types_upserted"),
        )
        for table, ref, counter in refs:
            if ref.code in self._seen[table]:
                continue
            try:
                if self.store.upsert_if_absent(table, "code", ref.to_record()):
                    setattr(c, counter, getattr(c, counter) + 1)
            except StoreWriteError as exc:
                c.rows_failed += 1
                message = f"row {row_number}: failed {table} write: {exc}"
                log.warning(message)
                c.warnings.append(message)
                if self.rejects is not None:
                    self.rejects.write(row, f"{table}_write_failed: {exc}", row_number)
                return
            self._seen[table].add(ref.code)

        self._batch.append(validated.patron.to_record())
        if len(self._batch) >= self.config.batch_size:
            self._flush()

    def _flush(self) -> None:
        if not self._batch:
            return
        batch, self._batch = self._batch, []
        c = self.counters
        try:
            c.records_inserted += self.store.bulk_insert(PATRONS, batch)
            c.batches_flushed += 1
        except StoreWriteError as exc:
            c.records_failed += len(batch)
            c.batches_failed += 1
            message = (
                f"failed to insert batch of {len(batch)} records "
                f"(after row {c.rows_read}): {exc}"
            )
            log.warning(message)
            c.warnings.append(message)

    # ------------------------------------------------------------------ #
    # LOADING → COMMITTED                                                 #
    # ------------------------------------------------------------------ #
    def commit(self) -> LoadCounters:
        self._expect(LoadState.LOADING)
        try:
            self._flush()
        except StructuralFailure:
            self.state = LoadState.FAILED
            raise
        self.state = LoadState.COMMITTED
        return self.counters

    def run(self, rows: Iterable[Sequence[str]]) -> LoadCounters:
        self.reset_schema()
        self.create_indexes()
        self.load_rows(rows)
        return self.commit()


# ---------------------------------------------------------------------------
# Validate-only pass
# ---------------------------------------------------------------------------

def validate_rows(
    rows: Iterable[Sequence[str]],
    counters: LoadCounters,
    rejects: RejectWriter | None = None,
) -> LoadCounters:
    """Run the normalizer over ``rows`` without a store.

    Valid rows count as successful so the summary reads the same as a real
    load would when every write succeeds.
    """
    for row_number, row in enumerate(rows, start=FIRST_DATA_ROW):
        counters.rows_read += 1
        try:
            validated = validate_row(row)
        except RowRejection as exc:
            counters.rows_rejected += 1
            if rejects is not None:
                rejects.write(row, exc.reason, row_number)
            continue
        counters.parse_warnings += len(validated.warnings)
        counters.warnings.extend(f"row {row_number}: {w}" for w in validated.warnings)
        counters.records_inserted += 1
    return counters


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_load_report(counters: LoadCounters, validate_only: bool = False) -> str:
    title = "excel validation complete:" if validate_only else "excel import complete:"
    lines = [
        title,
        f"  total rows processed: {counters.rows_read}",
        f"  successful inserts: {counters.successful}",
        f"  failed inserts: {counters.failed}",
        "",
        "--- Failures ---",
        f"rows_rejected      : {counters.rows_rejected}",
        f"rows_failed        : {counters.rows_failed}",
        f"records_failed     : {counters.records_failed}",
        f"batches_failed     : {counters.batches_failed}",
    ]
    if not validate_only:
        lines += [
            "",
            "--- Entities ---",
            f"patron_types_upserted       : {counters.patron_types_upserted}",
            f"libraries_upserted          : {counters.libraries_upserted}",
            f"notification_types_upserted : {counters.notification_types_upserted}",
            f"batches_flushed             : {counters.batches_flushed}",
            f"index_warnings              : {counters.index_warnings}",
        ]
    lines += ["", f"parse_warnings     : {counters.parse_warnings}"]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    lines += ["", counters.summary_line()]
    return "\n".join(lines)
