"""CALCDASH — Formula & Function Registry.

Defines the closed set of formula kinds, time scopes and the functions a
calculated-field formula may call. The tokenizer, parser and validator all
read from here so a new function only has to be registered once.
"""

from enum import Enum
from typing import Dict


class FormulaType(str, Enum):
    """Kind of calculated-field formula."""

    EXPRESSION = "expression"  # Arithmetic on fields: amount / 100
    AGGREGATION = "aggregation"  # SUM/AVG/COUNT/MIN/MAX across the batch
    DATE_DIFF = "date_diff"  # Signed difference between two dates
    CONDITIONAL = "conditional"  # cond ? then : else


class TimeScope(str, Enum):
    """Window an aggregation is computed over."""

    ALL = "all"
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"
    MTD = "mtd"
    YTD = "ytd"
    ROLLING_7D = "rolling_7d"
    ROLLING_30D = "rolling_30d"
    CUSTOM = "custom"


class RefreshMode(str, Enum):
    """When a calculated field is recomputed."""

    REALTIME = "realtime"  # Every read of a record batch
    ON_INSERT = "on_insert"
    MANUAL = "manual"


class FunctionKind(str, Enum):
    """How a formula function is categorised."""

    AGGREGATION = "aggregation"
    DATE = "date"
    CONDITIONAL = "conditional"


class FunctionDefinition:
    """Describes a single formula function."""

    def __init__(
        self,
        name: str,
        kind: FunctionKind,
        arity: int,
        unit: str = "",
        description: str = "",
    ):
        self.name = name
        self.kind = kind
        self.arity = arity
        self.unit = unit
        self.description = description

    def __repr__(self) -> str:
        return f"<Function {self.name} ({self.kind.value})>"


# ─────────────────────────────────────────────
# AGGREGATIONS — Applied over the record batch
# ─────────────────────────────────────────────

AGGREGATION_FUNCTIONS: Dict[str, FunctionDefinition] = {
    "SUM": FunctionDefinition("SUM", FunctionKind.AGGREGATION, 1, "", "Sum of a field"),
    "AVG": FunctionDefinition(
        "AVG", FunctionKind.AGGREGATION, 1, "", "Average of a field"
    ),
    "COUNT": FunctionDefinition(
        "COUNT", FunctionKind.AGGREGATION, 1, "", "Count records or non-null values"
    ),
    "MIN": FunctionDefinition(
        "MIN", FunctionKind.AGGREGATION, 1, "", "Smallest value of a field"
    ),
    "MAX": FunctionDefinition(
        "MAX", FunctionKind.AGGREGATION, 1, "", "Largest value of a field"
    ),
}


# ─────────────────────────────────────────────
# DATE FUNCTIONS — Two operands, one unit
# ─────────────────────────────────────────────

DATE_FUNCTIONS: Dict[str, FunctionDefinition] = {
    "DATE_DIFF": FunctionDefinition(
        "DATE_DIFF", FunctionKind.DATE, 3, "", "end - start in the given unit"
    ),
    "DAYS_BETWEEN": FunctionDefinition(
        "DAYS_BETWEEN", FunctionKind.DATE, 2, "days", "Days between two dates"
    ),
    "DAYS_SINCE": FunctionDefinition(
        "DAYS_SINCE", FunctionKind.DATE, 1, "days", "Days from date to now"
    ),
    "HOURS_SINCE": FunctionDefinition(
        "HOURS_SINCE", FunctionKind.DATE, 1, "hours", "Hours from date to now"
    ),
    "MONTHS_SINCE": FunctionDefinition(
        "MONTHS_SINCE", FunctionKind.DATE, 1, "months", "Calendar months to now"
    ),
}


# ─────────────────────────────────────────────
# CONDITIONALS
# ─────────────────────────────────────────────

CONDITIONAL_FUNCTIONS: Dict[str, FunctionDefinition] = {
    "IF": FunctionDefinition(
        "IF", FunctionKind.CONDITIONAL, 3, "", "IF(condition, then, else)"
    ),
}


# Seconds per fixed-length unit; months and years are calendar based
UNIT_SECONDS: Dict[str, int] = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
    "weeks": 604800,
}
CALENDAR_UNITS = ("months", "years")
DATE_UNITS = tuple(UNIT_SECONDS) + CALENDAR_UNITS

# Reserved words that are never field references
KEYWORDS = {"WHERE", "AND", "NOW", "TRUE", "FALSE", "NULL"}


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

ALL_FUNCTIONS = {**AGGREGATION_FUNCTIONS, **DATE_FUNCTIONS, **CONDITIONAL_FUNCTIONS}


def get_function(name: str) -> FunctionDefinition | None:
    """Look up a function by (case-insensitive) name."""
    return ALL_FUNCTIONS.get(name.upper())
