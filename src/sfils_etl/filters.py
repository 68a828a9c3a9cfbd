"""sfils_etl.filters

Shell filter expressions.

A filter is a JSON object, parsed into tagged values and compiled to a
parameterized SQL WHERE clause for one table:

    {"within_sf_county": true}
    {"age_range": "25 to 34 years", "active_year": 2023}
    {"email": {"$regex": "gmail\\.com$", "$options": "i"}}
    {"$or": [{"home_library_code": "M"}, {"home_library_code": "X"}]}
    {"year_registered": null}

Column names are checked against the models catalog; values are coerced to
the column kind before they reach the driver.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from psycopg import sql

from sfils_etl.models import BOOL, INT, TABLE_COLUMNS, TEXT
from sfils_etl.shared import QueryError


# ---------------------------------------------------------------------------
# Tagged values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StrValue:
    value: str


@dataclass(frozen=True)
class NumValue:
    value: int | float


@dataclass(frozen=True)
class BoolValue:
    value: bool


@dataclass(frozen=True)
class NullValue:
    pass


@dataclass(frozen=True)
class ListValue:
    items: tuple[FilterValue, ...]


@dataclass(frozen=True)
class DocValue:
    fields: tuple[tuple[str, FilterValue], ...]

    def keys(self) -> list[str]:
        return [k for k, _ in self.fields]


FilterValue = Union[StrValue, NumValue, BoolValue, NullValue, ListValue, DocValue]


def to_filter_value(raw: Any) -> FilterValue:
    """Convert a decoded JSON value into its tagged form."""
    if raw is None:
        return NullValue()
    # bool before int: bool is an int subclass
    if isinstance(raw, bool):
        return BoolValue(raw)
    if isinstance(raw, (int, float)):
        return NumValue(raw)
    if isinstance(raw, str):
        return StrValue(raw)
    if isinstance(raw, list):
        return ListValue(tuple(to_filter_value(v) for v in raw))
    if isinstance(raw, dict):
        return DocValue(tuple((str(k), to_filter_value(v)) for k, v in raw.items()))
    raise QueryError(f"unsupported filter value: {raw!r}")


def parse_filter(text: str) -> DocValue:
    """Parse a JSON object.  Blank text means 'match everything'."""
    text = text.strip()
    if not text:
        return DocValue(())
    try:
        raw = json.loads(text)
        if not isinstance(raw, dict):
            raise QueryError("filter parse error: filter must be a JSON object")
        return to_filter_value(raw)  # type: ignore[return-value]
    except json.JSONDecodeError as exc:
        raise QueryError(f"filter parse error: {exc}") from exc
    except RecursionError:
        raise QueryError("filter parse error: filter nested too deeply") from None


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

_COMPARISONS = {
    "$eq": "=",
    "$ne": "<>",
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
}


def _coerce(value: FilterValue, kind: str, column: str) -> Any:
    """Turn a scalar tagged value into a driver parameter for ``kind``."""
    if isinstance(value, (ListValue, DocValue, NullValue)):
        raise QueryError(f"expected a scalar value for {column!r}")
    if kind == TEXT:
        if isinstance(value, BoolValue):
            raise QueryError(f"{column!r} is text; got a boolean")
        if isinstance(value, NumValue):
            v = value.value
            return str(int(v)) if isinstance(v, float) and v.is_integer() else str(v)
        return value.value
    if kind == INT:
        if isinstance(value, BoolValue):
            raise QueryError(f"{column!r} is an integer; got a boolean")
        if isinstance(value, NumValue):
            if isinstance(value.value, float) and not value.value.is_integer():
                raise QueryError(f"{column!r} is an integer; got {value.value}")
            return int(value.value)
        try:
            return int(value.value.strip())
        except ValueError:
            raise QueryError(f"{column!r} is an integer; got {value.value!r}") from None
    if kind == BOOL:
        if not isinstance(value, BoolValue):
            raise QueryError(f"{column!r} is a boolean; use true or false")
        return value.value
    raise QueryError(f"unknown column kind {kind!r}")


class _Compiler:
    def __init__(self, table: str) -> None:
        if table not in TABLE_COLUMNS:
            raise QueryError(
                f"unknown table {table!r}; choose one of: "
                + ", ".join(sorted(TABLE_COLUMNS))
            )
        self.table = table
        self.columns = TABLE_COLUMNS[table]
        self.params: list[Any] = []

    def document(self, doc: DocValue) -> sql.Composable:
        clauses = [self.field(key, value) for key, value in doc.fields]
        if not clauses:
            return sql.SQL("TRUE")
        if len(clauses) == 1:
            return clauses[0]
        return sql.SQL("({})").format(sql.SQL(" AND ").join(clauses))

    def logical(self, op: str, value: FilterValue) -> sql.Composable:
        if not isinstance(value, ListValue) or not value.items:
            raise QueryError(f"{op} expects a non-empty list of filter objects")
        parts = []
        for item in value.items:
            if not isinstance(item, DocValue):
                raise QueryError(f"{op} expects a list of filter objects")
            parts.append(self.document(item))
        joiner = " AND " if op == "$and" else " OR "
        return sql.SQL("({})").format(sql.SQL(joiner).join(parts))

    def field(self, key: str, value: FilterValue) -> sql.Composable:
        if key in ("$and", "$or"):
            return self.logical(key, value)
        if key.startswith("$"):
            raise QueryError(f"unknown top-level operator {key!r}")
        if key not in self.columns:
            raise QueryError(f"unknown column {key!r} for table {self.table!r}")
        column = sql.Identifier(key)
        if isinstance(value, NullValue):
            return sql.SQL("{} IS NULL").format(column)
        if isinstance(value, DocValue):
            return self.operators(key, column, value)
        return self.compare(key, column, "=", value)

    def compare(
        self, key: str, column: sql.Identifier, op: str, value: FilterValue
    ) -> sql.Composable:
        if isinstance(value, NullValue):
            if op == "=":
                return sql.SQL("{} IS NULL").format(column)
            if op == "<>":
                return sql.SQL("{} IS NOT NULL").format(column)
            raise QueryError(f"can't compare {key!r} to null with {op}")
        self.params.append(_coerce(value, self.columns[key], key))
        if op == "<>":
            # $ne also matches rows where the column is null
            return sql.SQL("({} <> %s OR {} IS NULL)").format(column, column)
        return sql.SQL("{} " + op + " %s").format(column)

    def operators(
        self, key: str, column: sql.Identifier, doc: DocValue
    ) -> sql.Composable:
        ops = dict(doc.fields)
        if not ops:
            raise QueryError(f"empty operator object for {key!r}")
        options = ops.pop("$options", None)
        clauses: list[sql.Composable] = []
        for op, value in ops.items():
            if op in _COMPARISONS:
                clauses.append(self.compare(key, column, _COMPARISONS[op], value))
            elif op in ("$in", "$nin"):
                if not isinstance(value, ListValue):
                    raise QueryError(f"{op} expects a list")
                kind = self.columns[key]
                self.params.append([_coerce(v, kind, key) for v in value.items])
                if op == "$in":
                    clauses.append(sql.SQL("{} = ANY(%s)").format(column))
                else:
                    clauses.append(
                        sql.SQL("(NOT ({} = ANY(%s)) OR {} IS NULL)").format(column, column)
                    )
            elif op == "$regex":
                if self.columns[key] != TEXT or not isinstance(value, StrValue):
                    raise QueryError("$regex needs a text column and a string pattern")
                insensitive = isinstance(options, StrValue) and "i" in options.value
                self.params.append(value.value)
                template = "{} ~* %s" if insensitive else "{} ~ %s"
                clauses.append(sql.SQL(template).format(column))
            elif op == "$exists":
                if not isinstance(value, BoolValue):
                    raise QueryError("$exists expects true or false")
                template = "{} IS NOT NULL" if value.value else "{} IS NULL"
                clauses.append(sql.SQL(template).format(column))
            else:
                raise QueryError(f"unknown operator {op!r}")
        if options is not None and "$regex" not in ops:
            raise QueryError("$options is only valid with $regex")
        if len(clauses) == 1:
            return clauses[0]
        return sql.SQL("({})").format(sql.SQL(" AND ").join(clauses))


def compile_filter(table: str, doc: DocValue) -> tuple[sql.Composable, list[Any]]:
    """Return (where_clause, params) for ``doc`` against ``table``."""
    compiler = _Compiler(table)
    try:
        where = compiler.document(doc)
    except RecursionError:
        raise QueryError("filter nested too deeply") from None
    return where, compiler.params
