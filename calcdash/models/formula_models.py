"""CALCDASH — Calculated Field Schemas."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel

from calcdash.core.formula_registry import FormulaType, RefreshMode, TimeScope


class CalculatedField(BaseModel):
    """A dataset column derived from other fields via a formula."""

    field_slug: str
    formula_type: FormulaType
    formula: str
    dataset_id: str = ""
    display_name: str = ""
    time_scope: TimeScope = TimeScope.ALL
    refresh_mode: RefreshMode = RefreshMode.REALTIME
    is_active: bool = True

    model_config = {"frozen": True}


class ValidationResult(BaseModel):
    """Outcome of validating a formula before it is saved."""

    valid: bool
    error: Optional[str] = None
    error_type: Optional[str] = None
    cycle: Optional[List[str]] = None


class FieldResult(BaseModel):
    """Value of one calculated field for one record.

    A failure is a tagged result (value=None plus the reason), never an
    exception, so one bad formula cannot abort the rest of a batch.
    """

    field_slug: str
    value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CellError(BaseModel):
    """A contained failure in a dataset evaluation pass."""

    record_index: int
    field_slug: str
    error_type: str
    error: str


class DatasetEvaluation(BaseModel):
    """Derived columns for a record batch."""

    rows: List[Dict[str, Any]] = []
    aggregations: Dict[str, Any] = {}
    errors: List[CellError] = []
    cycle: Optional[List[str]] = None
