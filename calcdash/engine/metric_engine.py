"""CALCDASH — Metric Aggregator.

Turns a declarative numerator/denominator metric into a count, sum or
percentage over a record batch:

  scope toggles → numerator conditions → denominator conditions → format

Holds no state between calls. Callers that memoize results should key on
(metric.id, scope_fingerprint(...)).
"""

import hashlib
import json
import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from calcdash.config import settings
from calcdash.core.logging import get_logger
from calcdash.engine.conditions import as_bool, as_text, filter_records
from calcdash.engine.field_evaluator import parse_date
from calcdash.models.metric_models import (
    DataSource,
    MetricBreakdown,
    MetricDefinition,
    MetricFormulaType,
    MetricValue,
)

logger = get_logger("engine.metrics")

Record = Mapping[str, Any]

CANCELED_STATUSES = ("canceled", "cancelled")
RESCHEDULED_STATUSES = ("rescheduled",)
NO_SHOW_STATUSES = ("no_show",)


# ─────────────────────────────────────────────
# NUMBERS & FORMATTING
# ─────────────────────────────────────────────


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves up (12.5 → 13), not to even."""
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _tidy(value: float) -> float | int:
    return int(value) if float(value).is_integer() else value


def _number(value: Any) -> float:
    """Loose numeric read for sums: non-numeric values count as 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
        return number if math.isfinite(number) else 0.0
    return 0.0


def format_count(value: float) -> str:
    return f"{int(round_half_up(value)):,}"


def format_sum(value: float, field: Optional[str]) -> str:
    if field and field in settings.currency_fields:
        whole = int(round_half_up(abs(value)))
        sign = "-" if value < 0 and whole else ""
        return f"{sign}{settings.currency_symbol}{whole:,}"
    text = f"{value:,.2f}"
    return text.rstrip("0").rstrip(".")


def format_percentage(value: float) -> str:
    return f"{int(value)}%"


# ─────────────────────────────────────────────
# SCOPE
# ─────────────────────────────────────────────


def _has_status(record: Record, statuses: tuple) -> bool:
    return any(record.get(f) in statuses for f in settings.status_fields)


def _is_overdue(record: Record, now: datetime) -> bool:
    """Scheduled in the past with no post-call form submitted."""
    scheduled = parse_date(record.get("scheduled_at"))
    return scheduled is not None and scheduled < now and not as_bool(record.get("pcf_submitted"))


def apply_scope(
    metric: MetricDefinition, records: Iterable[Record], now: Optional[datetime] = None
) -> List[Record]:
    """Apply the inclusion toggles before any user-defined condition."""
    if metric.data_source != DataSource.EVENTS:
        return list(records)
    now = now or datetime.now(timezone.utc)
    now = now if now.tzinfo else now.replace(tzinfo=timezone.utc)

    scoped = []
    for record in records:
        if not metric.include_cancels and _has_status(record, CANCELED_STATUSES):
            continue
        if not metric.include_reschedules and _has_status(record, RESCHEDULED_STATUSES):
            continue
        if not metric.include_no_shows and _has_status(record, NO_SHOW_STATUSES):
            continue
        if metric.exclude_overdue_pcf and _is_overdue(record, now):
            continue
        scoped.append(record)
    return scoped


def metric_date_field(metric: MetricDefinition) -> str:
    """Date column a dashboard date range applies to for this metric."""
    if metric.date_field:
        return metric.date_field
    if metric.data_source == DataSource.PAYMENTS:
        return "payment_date"
    return "scheduled_at"


def filter_by_date_window(
    records: Iterable[Record],
    date_field: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Record]:
    """Keep records whose date is inside [start, end]; undated records drop out."""
    if start is None and end is None:
        return list(records)
    start = start.replace(tzinfo=timezone.utc) if start and not start.tzinfo else start
    end = end.replace(tzinfo=timezone.utc) if end and not end.tzinfo else end

    kept = []
    for record in records:
        stamp = parse_date(record.get(date_field))
        if stamp is None:
            continue
        if start is not None and stamp < start:
            continue
        if end is not None and stamp > end:
            continue
        kept.append(record)
    return kept


# ─────────────────────────────────────────────
# COMPUTATION
# ─────────────────────────────────────────────


def _pcf_response_rate(metric: MetricDefinition, records: Iterable[Record]) -> MetricValue:
    """Share of "yes" answers to one post-call form question."""
    responses = [
        r
        for r in records
        if metric.pcf_field_id is None
        or as_text(r.get("field_definition_id")) == metric.pcf_field_id
    ]
    yes = sum(1 for r in responses if as_bool(r.get("response")) is True)
    total = len(responses)
    rate = round_half_up(yes / total * 100) if total > 0 else 0
    return MetricValue(
        metric_id=metric.id,
        value=rate,
        formatted_value=format_percentage(rate),
        breakdown=MetricBreakdown(numerator=yes, denominator=total),
    )


def compute_metric(
    metric: MetricDefinition,
    records: Iterable[Record],
    now: Optional[datetime] = None,
) -> MetricValue:
    """Compute one metric over a record batch. Never raises on empty data."""
    if metric.data_source == DataSource.PCF_FIELDS:
        return _pcf_response_rate(metric, records)

    scoped = apply_scope(metric, records, now)
    matched = filter_records(scoped, metric.numerator_conditions)

    if metric.formula_type == MetricFormulaType.SUM:
        total = 0.0
        if metric.numerator_field:
            total = sum(_number(r.get(metric.numerator_field)) for r in matched)
        value = _tidy(round_half_up(total, 2))
        return MetricValue(
            metric_id=metric.id,
            value=value,
            formatted_value=format_sum(value, metric.numerator_field),
            breakdown=MetricBreakdown(numerator=value),
        )

    if metric.formula_type == MetricFormulaType.PERCENTAGE:
        numerator = len(matched)
        denominator = len(filter_records(scoped, metric.denominator_conditions))
        value = round_half_up(numerator / denominator * 100) if denominator > 0 else 0
        return MetricValue(
            metric_id=metric.id,
            value=value,
            formatted_value=format_percentage(value),
            breakdown=MetricBreakdown(numerator=numerator, denominator=denominator),
        )

    count = len(matched)
    return MetricValue(
        metric_id=metric.id,
        value=count,
        formatted_value=format_count(count),
        breakdown=MetricBreakdown(numerator=count),
    )


def compute_metrics(
    metrics: Iterable[MetricDefinition],
    sources: Mapping[str, Iterable[Record]],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, MetricValue]:
    """Compute every active metric against its data source.

    `sources` maps a data source name ("events", "payments", "pcf_fields")
    to its records. Each metric applies the date window on its own date
    column, so metrics over different columns can share one fetch.
    """
    results: Dict[str, MetricValue] = {}
    for metric in metrics:
        if not metric.is_active:
            continue
        records = list(sources.get(metric.data_source.value, []))
        if metric.data_source != DataSource.PCF_FIELDS:
            records = filter_by_date_window(records, metric_date_field(metric), start, end)
        results[metric.id] = compute_metric(metric, records, now)

    logger.info(f"Computed {len(results)} metrics")
    return results


def scope_fingerprint(
    metric: MetricDefinition,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> str:
    """Stable hash of a metric definition plus its date window."""
    payload = {
        "metric": metric.model_dump(mode="json"),
        "start": start.isoformat() if start else None,
        "end": end.isoformat() if end else None,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()
