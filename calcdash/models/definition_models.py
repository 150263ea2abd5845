"""CALCDASH — Definition Models.

Calculated fields and metric definitions are configuration: they are saved
here only after validation passes, and handed to the engines as read-only
pydantic schemas. Record batches themselves are never stored.
"""

import json
from datetime import datetime, timezone
from typing import List, Optional
from sqlmodel import SQLModel, Field, UniqueConstraint

from calcdash.models.formula_models import CalculatedField
from calcdash.models.metric_models import FilterCondition, MetricDefinition


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CalculatedFieldRecord(SQLModel, table=True):
    """Saved calculated field.

    Unique on (dataset_id, field_slug): a slug names one column per dataset.
    Deactivating keeps the row but drops it from the dependency graph.
    """

    __tablename__ = "dataset_calculated_fields"
    __table_args__ = (
        UniqueConstraint("dataset_id", "field_slug", name="uq_dataset_field_slug"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    dataset_id: str = Field(index=True)
    field_slug: str = Field(index=True)
    display_name: str = Field(default="")
    formula_type: str = Field(description="expression | aggregation | date_diff | conditional")
    formula: str
    time_scope: str = Field(default="all")
    refresh_mode: str = Field(default="realtime")
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def to_field(self) -> CalculatedField:
        return CalculatedField(
            field_slug=self.field_slug,
            dataset_id=self.dataset_id,
            display_name=self.display_name,
            formula_type=self.formula_type,
            formula=self.formula,
            time_scope=self.time_scope,
            refresh_mode=self.refresh_mode,
            is_active=self.is_active,
        )


def conditions_to_json(conditions: List[FilterCondition]) -> str:
    return json.dumps([c.model_dump(mode="json") for c in conditions])


def conditions_from_json(raw: str) -> List[FilterCondition]:
    return [FilterCondition.model_validate(c) for c in json.loads(raw or "[]")]


class MetricDefinitionRecord(SQLModel, table=True):
    """Saved custom metric. Condition lists are stored as JSON text."""

    __tablename__ = "metric_definitions"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(default="")
    formula_type: str = Field(description="count | sum | percentage")
    data_source: str = Field(default="events")
    date_field: Optional[str] = Field(default=None)
    numerator_field: Optional[str] = Field(default=None)
    numerator_conditions_json: str = Field(default="[]")
    denominator_conditions_json: str = Field(default="[]")
    include_no_shows: bool = Field(default=True)
    include_cancels: bool = Field(default=False)
    include_reschedules: bool = Field(default=False)
    exclude_overdue_pcf: bool = Field(default=False)
    pcf_field_id: Optional[str] = Field(default=None)
    sort_order: int = Field(default=0)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def to_metric(self) -> MetricDefinition:
        return MetricDefinition(
            id=str(self.id),
            name=self.name,
            formula_type=self.formula_type,
            data_source=self.data_source,
            date_field=self.date_field,
            numerator_field=self.numerator_field,
            numerator_conditions=conditions_from_json(self.numerator_conditions_json),
            denominator_conditions=conditions_from_json(self.denominator_conditions_json),
            include_no_shows=self.include_no_shows,
            include_cancels=self.include_cancels,
            include_reschedules=self.include_reschedules,
            exclude_overdue_pcf=self.exclude_overdue_pcf,
            pcf_field_id=self.pcf_field_id,
            is_active=self.is_active,
        )

    def apply(self, metric: MetricDefinition) -> None:
        """Copy an incoming definition onto this row."""
        self.name = metric.name
        self.formula_type = metric.formula_type.value
        self.data_source = metric.data_source.value
        self.date_field = metric.date_field
        self.numerator_field = metric.numerator_field
        self.numerator_conditions_json = conditions_to_json(metric.numerator_conditions)
        self.denominator_conditions_json = conditions_to_json(metric.denominator_conditions)
        self.include_no_shows = metric.include_no_shows
        self.include_cancels = metric.include_cancels
        self.include_reschedules = metric.include_reschedules
        self.exclude_overdue_pcf = metric.exclude_overdue_pcf
        self.pcf_field_id = metric.pcf_field_id
        self.is_active = metric.is_active
        self.updated_at = _now()
