"""Normalization functions for SFPL patron spreadsheet ingestion.

Field parsers accept str | None and return the appropriate type or None.
Nothing here touches the store; warnings are handed back to the caller.
"""

from __future__ import annotations

import logging
import re
from typing import Sequence

from sfils_etl.models import (
    LibraryRef,
    NotificationTypeRef,
    PatronRecord,
    PatronTypeRef,
    ValidatedRow,
)
from sfils_etl.shared import InsufficientColumns

log = logging.getLogger(__name__)

REQUIRED_COLUMNS = 14

# Counts are stored in a PostgreSQL integer column.
MAX_COUNT = 2**31 - 1

_MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)
_MONTH_NUMBERS = {name: idx for idx, name in enumerate(_MONTHS, start=1)}

# Upstream data entry writes booleans into the email column for "no email".
_EMAIL_SENTINELS = {"true", "false"}

_NEWLINE_RE = re.compile(r"\r\n|\r|\n")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: trim_cell / trim_row
# ---------------------------------------------------------------------------

def trim_cell(value: str | None) -> str:
    """Turn each embedded newline into a space, then strip.  None → ''."""
    if value is None:
        return ""
    return _NEWLINE_RE.sub(" ", value).strip()


def trim_row(row: Sequence[str | None]) -> list[str]:
    """Apply trim_cell to every cell.  Returns a new list."""
    return [trim_cell(cell) for cell in row]


# ---------------------------------------------------------------------------
# Rule 3: parse_optional_string
# ---------------------------------------------------------------------------

def parse_optional_string(value: str | None) -> str | None:
    return trim(value)


# ---------------------------------------------------------------------------
# Rule 4: parse_month
# ---------------------------------------------------------------------------

def parse_month(value: str | None, warnings: list[str] | None = None) -> int | None:
    """Map an English month name (any case) to 1..12.

    Empty → None silently.  Anything else unrecognized → None, and a warning
    is appended to ``warnings`` when the caller passes a list.
    """
    v = trim(value)
    if v is None:
        return None
    month = _MONTH_NUMBERS.get(v.lower())
    if month is None:
        message = f"can't recognize month name: {v!r}"
        log.warning(message)
        if warnings is not None:
            warnings.append(message)
    return month


# ---------------------------------------------------------------------------
# Rule 5: parse_email
# ---------------------------------------------------------------------------

def parse_email(value: str | None) -> str | None:
    """Return the trimmed email, or None for blanks, sentinels and non-addresses."""
    v = trim(value)
    if v is None:
        return None
    if v.lower() in _EMAIL_SENTINELS:
        return None
    if "@" not in v:
        return None
    return v


# ---------------------------------------------------------------------------
# Rule 6: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool:
    """True only for 'true' in any case; everything else is False."""
    v = trim(value)
    return v is not None and v.lower() == "true"


# ---------------------------------------------------------------------------
# Rule 7: parse_count
# ---------------------------------------------------------------------------

def parse_count(value: str | None, warnings: list[str] | None = None) -> int:
    """Parse a checkout/renewal total.  Empty → 0.

    Accepts thousands separators and integral floats ("12.0").  Unparseable
    text, negatives and values above MAX_COUNT → 0 with a warning.
    """
    v = trim(value)
    if v is None:
        return 0
    digits = v.replace(",", "")
    count = None
    try:
        count = int(digits)
    except ValueError:
        try:
            as_float = float(digits)
        except ValueError:
            as_float = None
        if as_float is not None and as_float.is_integer():
            count = int(as_float)
    if count is not None:
        if 0 <= count <= MAX_COUNT:
            return count
        message = f"count out of range: {v!r}"
    else:
        message = f"can't parse count: {v!r}"
    log.warning(message)
    if warnings is not None:
        warnings.append(message)
    return 0


# ---------------------------------------------------------------------------
# Row validation
# ---------------------------------------------------------------------------

def validate_row(row: Sequence[str | None]) -> ValidatedRow:
    """Convert one positional spreadsheet row into the four entities.

    Raises InsufficientColumns before looking at any cell when the row is
    shorter than REQUIRED_COLUMNS.

    Columns:
      0 patron type code      7 active month name
      1 patron type desc      8 active year
      2 checkout total        9 notification type code
      3 renewal total        10 notification type desc
      4 age range            11 email
      5 home library code    12 within SF county flag
      6 home library name    13 year registered
    """
    if len(row) < REQUIRED_COLUMNS:
        raise InsufficientColumns(len(row), REQUIRED_COLUMNS)

    cells = trim_row(row)
    warnings: list[str] = []

    patron_type = PatronTypeRef(code=cells[0], description=cells[1])
    library = LibraryRef(code=cells[5], name=cells[6])
    notification_type = NotificationTypeRef(code=cells[9], description=cells[10])

    patron = PatronRecord(
        patron_type_code=cells[0],
        patron_type_description=cells[1],
        checkout_total=parse_count(cells[2], warnings),
        renewal_total=parse_count(cells[3], warnings),
        age_range=cells[4],
        home_library_code=cells[5],
        home_library_name=cells[6],
        active_month=parse_month(cells[7], warnings),
        active_year=parse_optional_string(cells[8]),
        notification_type_code=cells[9],
        notification_type_description=cells[10],
        email=parse_email(cells[11]),
        within_sf_county=parse_bool(cells[12]),
        year_registered=parse_optional_string(cells[13]),
    )
    return ValidatedRow(
        patron_type=patron_type,
        library=library,
        notification_type=notification_type,
        patron=patron,
        warnings=warnings,
    )
