"""CALCDASH — Metric & Widget Schemas."""

from enum import Enum
from typing import List, Literal, Optional, Union
from pydantic import BaseModel, model_validator

Scalar = Union[str, int, float, bool, None]


class MetricFormulaType(str, Enum):
    COUNT = "count"
    SUM = "sum"
    PERCENTAGE = "percentage"


class DataSource(str, Enum):
    EVENTS = "events"
    PAYMENTS = "payments"
    PCF_FIELDS = "pcf_fields"


class FilterCondition(BaseModel):
    """A single `field operator value` predicate. Lists combine with AND."""

    field: str
    operator: Literal["equals", "not_equals", "in"]
    value: Union[Scalar, List[Scalar]] = None


class MetricDefinition(BaseModel):
    """Declarative numerator/denominator metric."""

    id: str = ""
    name: str = ""
    formula_type: MetricFormulaType
    data_source: DataSource = DataSource.EVENTS
    date_field: Optional[str] = None
    numerator_field: Optional[str] = None
    numerator_conditions: List[FilterCondition] = []
    denominator_conditions: List[FilterCondition] = []
    include_no_shows: bool = True
    include_cancels: bool = False
    include_reschedules: bool = False
    exclude_overdue_pcf: bool = False
    pcf_field_id: Optional[str] = None
    is_active: bool = True

    model_config = {"frozen": True}


class MetricBreakdown(BaseModel):
    """Values backing a metric so the UI can show "123 / 456"."""

    numerator: Union[int, float]
    denominator: Optional[int] = None


class MetricValue(BaseModel):
    """Computed metric. Produced fresh on every evaluation."""

    metric_id: str = ""
    value: float
    formatted_value: str
    breakdown: MetricBreakdown


# ─────────────────────────────────────────────
# DATASET WIDGETS
# ─────────────────────────────────────────────


class WidgetAggregation(str, Enum):
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"


class WidgetConfig(BaseModel):
    """Metric widget on a dataset dashboard."""

    field: Optional[str] = None  # Not needed for count
    aggregation: WidgetAggregation = WidgetAggregation.COUNT
    group_by: Optional[str] = None
    filters: List[FilterCondition] = []

    @model_validator(mode="after")
    def _field_for_value_aggregations(self) -> "WidgetConfig":
        if self.aggregation != WidgetAggregation.COUNT and not self.field:
            raise ValueError(f"{self.aggregation.value} widget needs a field")
        return self


class WidgetGroup(BaseModel):
    key: str
    value: float
    record_count: int


class WidgetValue(BaseModel):
    value: float = 0.0
    record_count: int = 0
    groups: List[WidgetGroup] = []
