"""CALCDASH — Filter/Condition Matcher.

Shared AND-predicate used by the metric aggregator, aggregation WHERE
clauses and dataset widget filters.
"""

from typing import Any, Iterable, List, Mapping, Optional, Sequence

from calcdash.config import settings
from calcdash.models.metric_models import FilterCondition

Record = Mapping[str, Any]


def as_text(value: Any) -> Optional[str]:
    """Render a scalar the way the dashboard displays it.

    Booleans are lowercase and integral floats drop their ".0", so a stored
    2.0 matches a condition value of "2". None stays None (absent).
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    return None


def _values(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _equals(record_value: Any, expected: Any, boolean_field: bool) -> bool:
    if record_value is None:
        return False
    if boolean_field or isinstance(record_value, bool):
        actual = as_bool(record_value)
        return actual is not None and actual == as_bool(expected)
    return as_text(record_value) == as_text(expected)


def condition_holds(
    record: Record,
    condition: FilterCondition,
    boolean_fields: Optional[Sequence[str]] = None,
) -> bool:
    """Evaluate one condition against one record."""
    if boolean_fields is None:
        boolean_fields = settings.boolean_fields
    record_value = record.get(condition.field)
    boolean_field = condition.field in boolean_fields

    if condition.operator == "equals":
        return _equals(record_value, condition.value, boolean_field)
    if condition.operator == "not_equals":
        return not _equals(record_value, condition.value, boolean_field)
    # in
    if record_value is None:
        return False
    if boolean_field or isinstance(record_value, bool):
        return any(_equals(record_value, v, True) for v in _values(condition.value))
    allowed = {as_text(v) for v in _values(condition.value) if v is not None}
    return as_text(record_value) in allowed


def matches(
    record: Record,
    conditions: Iterable[FilterCondition],
    boolean_fields: Optional[Sequence[str]] = None,
) -> bool:
    """True when every condition holds. An empty list matches every record."""
    return all(condition_holds(record, c, boolean_fields) for c in conditions)


def filter_records(
    records: Iterable[Record],
    conditions: Sequence[FilterCondition],
    boolean_fields: Optional[Sequence[str]] = None,
) -> List[Record]:
    """Return the records matching all conditions, preserving order."""
    if not conditions:
        return list(records)
    return [r for r in records if matches(r, conditions, boolean_fields)]
