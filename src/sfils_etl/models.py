"""sfils_etl.models

Record types produced by the normalizer and written by the loader, plus the
column catalog the query shell uses to type-check filters.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

PATRONS = "patrons"
PATRON_TYPES = "patron_types"
LIBRARIES = "libraries"
NOTIFICATION_TYPES = "notification_types"

REFERENCE_TABLES = (PATRON_TYPES, LIBRARIES, NOTIFICATION_TYPES)

# Drop order: patrons references the three lookup tables.
ALL_TABLES = (PATRONS, PATRON_TYPES, LIBRARIES, NOTIFICATION_TYPES)


@dataclass(frozen=True)
class PatronTypeRef:
    code: str
    description: str

    def to_record(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LibraryRef:
    code: str
    name: str

    def to_record(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NotificationTypeRef:
    code: str
    description: str

    def to_record(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PatronRecord:
    patron_type_code: str
    patron_type_description: str
    checkout_total: int
    renewal_total: int
    age_range: str
    home_library_code: str
    home_library_name: str
    active_month: int | None
    active_year: str | None
    notification_type_code: str
    notification_type_description: str
    email: str | None
    within_sf_county: bool
    year_registered: str | None

    def to_record(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ValidatedRow:
    patron_type: PatronTypeRef
    library: LibraryRef
    notification_type: NotificationTypeRef
    patron: PatronRecord
    warnings: list[str] = field(default_factory=list, compare=False)


# ---------------------------------------------------------------------------
# Column catalog (table -> column -> kind)
# ---------------------------------------------------------------------------

TEXT = "text"
INT = "int"
BOOL = "bool"

TABLE_COLUMNS: dict[str, dict[str, str]] = {
    PATRON_TYPES: {"code": TEXT, "description": TEXT},
    LIBRARIES: {"code": TEXT, "name": TEXT},
    NOTIFICATION_TYPES: {"code": TEXT, "description": TEXT},
    PATRONS: {
        "id": INT,
        "patron_type_code": TEXT,
        "patron_type_description": TEXT,
        "checkout_total": INT,
        "renewal_total": INT,
        "age_range": TEXT,
        "home_library_code": TEXT,
        "home_library_name": TEXT,
        "active_month": INT,
        "active_year": TEXT,
        "notification_type_code": TEXT,
        "notification_type_description": TEXT,
        "email": TEXT,
        "within_sf_county": BOOL,
        "year_registered": TEXT,
    },
}
