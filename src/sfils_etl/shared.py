"""sfils_etl.shared

Shared utilities used by the loader, the query shell and the CLI.
Includes the error taxonomy, RejectWriter and report-writing support.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StructuralFailure(Exception):
    """Raised when the run cannot continue: store unreachable, input unreadable,
    schema reset refused.  Only this error terminates the program."""


class RowRejection(Exception):
    """A single input row failed validation."""

    reason = "rejected"


class InsufficientColumns(RowRejection):
    reason = "insufficient_columns"

    def __init__(self, found: int, required: int) -> None:
        super().__init__(
            f"insufficient columns (has {found}, needs {required})"
        )
        self.found = found
        self.required = required


class StoreWriteError(Exception):
    """The store refused a write (reference upsert or bulk insert)."""


class BatchWriteFailure(StoreWriteError):
    """A bulk insert failed; none of its records were written."""


class QueryError(Exception):
    """Malformed shell query or a store-side query failure."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    Rows are positional, so the spreadsheet header (when known) is used as the
    column names and every written row is padded or cut to that width.
    """

    def __init__(self, path: Path, header: Sequence[str] | None = None) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.header = list(header) if header is not None else None
        self.written = 0

    def write(self, row: Sequence[str], reason: str, row_number: int) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.writer(self._fh)
            if self.header is None:
                self.header = [f"column_{i}" for i in range(len(row))]
            self._writer.writerow(["_row_number", *self.header, "_reject_reason"])
        width = len(self.header)
        cells = ["" if c is None else str(c) for c in row][:width]
        cells += [""] * (width - len(cells))
        self._writer.writerow([row_number, *cells, reason])
        self._fh.flush()
        self.written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    reports_dir: Path,
    source_paths: dict[str, str],
    counters: Any,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
