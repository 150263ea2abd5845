"""CALCDASH — Widget Engine.

Aggregates a dataset's rows (raw columns merged with derived ones) for a
dashboard widget: filter, then sum/avg/count/min/max, optionally grouped.
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping

from calcdash.core.logging import get_logger
from calcdash.engine.conditions import as_text, filter_records
from calcdash.engine.errors import TypeCoercionError
from calcdash.engine.field_evaluator import to_number
from calcdash.models.metric_models import (
    WidgetAggregation,
    WidgetConfig,
    WidgetGroup,
    WidgetValue,
)

logger = get_logger("engine.widgets")

Row = Mapping[str, Any]

UNGROUPED = "(none)"


def _numbers(rows: Iterable[Row], field: str) -> List[float]:
    """Numeric values of a column; nulls and text are skipped."""
    out: List[float] = []
    for row in rows:
        value = row.get(field)
        if value is None or value == "":
            continue
        try:
            out.append(to_number(value))
        except TypeCoercionError:
            continue
    return out


def aggregate(rows: List[Row], config: WidgetConfig) -> float:
    if config.aggregation == WidgetAggregation.COUNT:
        return float(len(rows))
    numbers = _numbers(rows, config.field)
    if not numbers:
        return 0.0
    if config.aggregation == WidgetAggregation.SUM:
        return float(sum(numbers))
    if config.aggregation == WidgetAggregation.AVG:
        return sum(numbers) / len(numbers)
    if config.aggregation == WidgetAggregation.MIN:
        return float(min(numbers))
    return float(max(numbers))


def compute_widget(config: WidgetConfig, rows: Iterable[Row]) -> WidgetValue:
    """Filter the rows and aggregate them for one widget."""
    filtered = filter_records(rows, config.filters)

    groups: List[WidgetGroup] = []
    if config.group_by:
        buckets: Dict[str, List[Row]] = defaultdict(list)
        for row in filtered:
            key = as_text(row.get(config.group_by))
            buckets[key if key is not None else UNGROUPED].append(row)
        groups = [
            WidgetGroup(key=key, value=aggregate(bucket, config), record_count=len(bucket))
            for key, bucket in buckets.items()
        ]
        groups.sort(key=lambda g: g.value, reverse=True)

    logger.debug(
        f"Widget {config.aggregation.value}({config.field or '*'}) over {len(filtered)} rows"
    )
    return WidgetValue(
        value=aggregate(filtered, config),
        record_count=len(filtered),
        groups=groups,
    )
