"""
BGG Cache - Safe numeric casts for string-encoded columns.

BGG numerics are stored as strings and may hold sentinels ("Not Ranked",
"N/A", ""). A plain CAST would either raise (PostgreSQL) or silently turn
garbage into 0 (SQLite). These constructs compile to

    CASE WHEN <value matches a numeric pattern> THEN CAST(<value> AS <type>) END

so that a non-numeric value becomes NULL. NULL never satisfies a comparison,
which gives numeric filters their exclusion semantics, and ``NULLS LAST``
ordering puts such rows after every numeric row.

Accepted forms (identical on both dialects, surrounding whitespace ignored):
    safe_int:    unsigned digits, at most 18  "4", "120"
    safe_float:  unsigned decimal             "7.5", "8", ".5", "3."
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import BigInteger, Float
from sqlalchemy.exc import CompileError
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement

# 18 digits always fit a signed 64-bit integer.
INT_MAX_DIGITS = 18
INT_PATTERN = rf"^[0-9]{{1,{INT_MAX_DIGITS}}}$"
FLOAT_PATTERN = r"^([0-9]+\.?[0-9]*|\.[0-9]+)$"


class safe_int(FunctionElement):
    """Integer interpretation of a string column, NULL when non-numeric."""

    type = BigInteger()
    name = "safe_int"
    inherit_cache = True


class safe_float(FunctionElement):
    """Float interpretation of a string column, NULL when non-numeric."""

    type = Float()
    name = "safe_float"
    inherit_cache = True


def _operand(element: FunctionElement, compiler: Any, **kw: Any) -> str:
    (clause,) = element.clauses.clauses
    return compiler.process(clause, **kw)


@compiles(safe_int)
@compiles(safe_float)
def _compile_default(element: FunctionElement, compiler: Any, **kw: Any) -> str:
    raise CompileError(
        f"{element.name} is only supported on postgresql and sqlite, "
        f"not {compiler.dialect.name}"
    )


@compiles(safe_int, "postgresql")
def _compile_safe_int_pg(element: safe_int, compiler: Any, **kw: Any) -> str:
    value = f"btrim({_operand(element, compiler, **kw)})"
    return f"CASE WHEN {value} ~ '{INT_PATTERN}' THEN CAST({value} AS BIGINT) END"


@compiles(safe_float, "postgresql")
def _compile_safe_float_pg(element: safe_float, compiler: Any, **kw: Any) -> str:
    value = f"btrim({_operand(element, compiler, **kw)})"
    return (
        f"CASE WHEN {value} ~ '{FLOAT_PATTERN}' "
        f"THEN CAST({value} AS DOUBLE PRECISION) END"
    )


# SQLite has no built-in REGEXP; GLOB character classes express the same
# patterns.
@compiles(safe_int, "sqlite")
def _compile_safe_int_sqlite(element: safe_int, compiler: Any, **kw: Any) -> str:
    value = f"trim({_operand(element, compiler, **kw)})"
    return (
        f"CASE WHEN {value} <> '' AND length({value}) <= {INT_MAX_DIGITS} "
        f"AND {value} NOT GLOB '*[^0-9]*' "
        f"THEN CAST({value} AS INTEGER) END"
    )


@compiles(safe_float, "sqlite")
def _compile_safe_float_sqlite(element: safe_float, compiler: Any, **kw: Any) -> str:
    value = f"trim({_operand(element, compiler, **kw)})"
    return (
        f"CASE WHEN {value} <> '' AND {value} <> '.' "
        f"AND {value} NOT GLOB '*[^0-9.]*' AND {value} NOT GLOB '*.*.*' "
        f"THEN CAST({value} AS REAL) END"
    )
