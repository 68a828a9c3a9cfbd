"""sfils_etl.spreadsheet

Reads the patron export as positional rows of text cells.

``.xlsx`` / ``.xlsm`` files are read from their first sheet with openpyxl;
``.csv`` files with the csv module.  Row 0 is the header and is returned
separately from the data rows.
"""

from __future__ import annotations

import csv
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Iterator

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from sfils_etl.shared import StructuralFailure

EXCEL_SUFFIXES = {".xlsx", ".xlsm"}

# Errors raised while iterating rows, after the file has opened.
_CSV_READ_ERRORS = (UnicodeDecodeError, csv.Error, OSError)
# SyntaxError covers both ElementTree and lxml parse errors.
_XLSX_READ_ERRORS = (zipfile.BadZipFile, SyntaxError, KeyError, ValueError, OSError)


@dataclass
class SheetRows:
    """Header plus a lazy iterator over data rows.  Call close() when done."""

    header: list[str]
    rows: Iterator[list[str]]
    _workbook: Any = None
    _fh: Any = None

    def close(self) -> None:
        if self._workbook is not None:
            self._workbook.close()
            self._workbook = None
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def __enter__(self) -> SheetRows:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def cell_to_text(value: Any) -> str:
    """Render a spreadsheet cell value as the text the normalizer expects."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def _drop_trailing_empty(values: tuple[Any, ...]) -> list[Any]:
    end = len(values)
    while end > 0 and values[end - 1] is None:
        end -= 1
    return list(values[:end])


def _iter_sheet(raw_rows: Iterator[tuple[Any, ...]]) -> Iterator[list[str]]:
    for values in raw_rows:
        yield [cell_to_text(v) for v in _drop_trailing_empty(values)]


def _guarded(
    path: Path, rows: Iterator[list[str]], errors: tuple[type[BaseException], ...]
) -> Iterator[list[str]]:
    try:
        yield from rows
    except errors as exc:
        raise StructuralFailure(f"couldn't read {path}: {exc}") from exc


def _read_header(sheet: SheetRows) -> SheetRows:
    try:
        sheet.header = next(sheet.rows, [])
    except StructuralFailure:
        sheet.close()
        raise
    return sheet


def open_rows(path: Path) -> SheetRows:
    """Open ``path`` and return its header and data rows.

    Raises StructuralFailure when the file is missing or unreadable.
    """
    if not path.exists():
        raise StructuralFailure(f"input file not found: {path}")

    if path.suffix.lower() == ".csv":
        try:
            fh = path.open(encoding="utf-8-sig", newline="")
        except OSError as exc:
            raise StructuralFailure(f"couldn't open {path}: {exc}") from exc
        rows = _guarded(path, (list(r) for r in csv.reader(fh)), _CSV_READ_ERRORS)
        return _read_header(SheetRows(header=[], rows=rows, _fh=fh))

    if path.suffix.lower() not in EXCEL_SUFFIXES:
        raise StructuralFailure(f"unsupported input format: {path.suffix or path.name}")

    try:
        wb = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError) as exc:
        raise StructuralFailure(f"couldn't open workbook {path}: {exc}") from exc

    if not wb.worksheets:
        wb.close()
        raise StructuralFailure(f"workbook has no sheets: {path}")

    rows = _guarded(
        path,
        _iter_sheet(wb.worksheets[0].iter_rows(values_only=True)),
        _XLSX_READ_ERRORS,
    )
    return _read_header(SheetRows(header=[], rows=rows, _workbook=wb))
