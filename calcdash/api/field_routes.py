"""CALCDASH — Calculated Field API Routes."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from calcdash.config import settings
from calcdash.core.formula_registry import FormulaType, RefreshMode, TimeScope
from calcdash.database import get_session
from calcdash.engine.formula_validator import validate_formula
from calcdash.engine.pipeline import evaluate_dataset
from calcdash.engine.tokenizer import is_field_slug
from calcdash.engine.widget_engine import compute_widget
from calcdash.models.definition_models import CalculatedFieldRecord
from calcdash.models.formula_models import DatasetEvaluation, ValidationResult
from calcdash.models.metric_models import WidgetConfig, WidgetValue
from calcdash.core.logging import get_logger

logger = get_logger("api.fields")

router = APIRouter(prefix="/datasets", tags=["Calculated Fields"])


# ── Request / Response Models ──


class ValidateFormulaRequest(BaseModel):
    """Request body for POST /datasets/{dataset_id}/fields/validate."""

    formula: str
    formula_type: FormulaType
    field_slug: Optional[str] = None
    """Slug of the field being edited; omit for a new field."""
    known_fields: Optional[List[str]] = None
    """Raw dataset column slugs. When given, unknown references are rejected."""


class CreateFieldRequest(BaseModel):
    field_slug: str
    formula_type: FormulaType
    formula: str
    display_name: str = ""
    time_scope: TimeScope = TimeScope.ALL
    refresh_mode: RefreshMode = RefreshMode.REALTIME
    known_fields: Optional[List[str]] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "field_slug": "commission",
                    "formula_type": "expression",
                    "formula": "amount * 0.1",
                },
                {
                    "field_slug": "total_paid",
                    "formula_type": "aggregation",
                    "formula": 'SUM(amount WHERE status = "paid")',
                    "time_scope": "mtd",
                },
            ]
        }
    }


class UpdateFieldRequest(BaseModel):
    formula_type: Optional[FormulaType] = None
    formula: Optional[str] = None
    display_name: Optional[str] = None
    time_scope: Optional[TimeScope] = None
    refresh_mode: Optional[RefreshMode] = None
    is_active: Optional[bool] = None
    known_fields: Optional[List[str]] = None


class EvaluateRequest(BaseModel):
    records: List[Dict[str, Any]]
    now: Optional[datetime] = None
    """Reference time for NOW, *_SINCE and time scopes. Defaults to the current time."""


class WidgetPreviewRequest(BaseModel):
    config: WidgetConfig
    records: List[Dict[str, Any]]
    now: Optional[datetime] = None


# ── Helpers ──


def _dataset_fields(session: Session, dataset_id: str) -> List[CalculatedFieldRecord]:
    return list(
        session.exec(
            select(CalculatedFieldRecord).where(
                CalculatedFieldRecord.dataset_id == dataset_id
            )
        ).all()
    )


def _get_field(session: Session, dataset_id: str, field_slug: str) -> CalculatedFieldRecord:
    record = session.exec(
        select(CalculatedFieldRecord).where(
            CalculatedFieldRecord.dataset_id == dataset_id,
            CalculatedFieldRecord.field_slug == field_slug,
        )
    ).first()
    if not record:
        raise HTTPException(
            status_code=404, detail=f"Field '{field_slug}' not found in dataset {dataset_id}"
        )
    return record


def _require_valid(
    session: Session,
    dataset_id: str,
    formula: str,
    formula_type: FormulaType,
    field_slug: str,
    known_fields: Optional[List[str]],
    in_graph: bool = True,
) -> None:
    """Block the save unless the formula validates.

    Fields outside the dependency graph (inactive) still have to parse.
    """
    existing = [r.to_field() for r in _dataset_fields(session, dataset_id)] if in_graph else None
    result = validate_formula(formula, formula_type, existing, field_slug, known_fields)
    if not result.valid:
        logger.info(
            f"Rejected save of {field_slug}: {result.error}",
            extra={"dataset_id": dataset_id, "field_slug": field_slug, "error_type": result.error_type},
        )
        raise HTTPException(status_code=400, detail=result.model_dump())


def _check_batch(records: List[Dict[str, Any]]) -> None:
    if len(records) > settings.max_batch_records:
        raise HTTPException(
            status_code=413,
            detail=f"Batch of {len(records)} records exceeds the limit of {settings.max_batch_records}",
        )


# ── Endpoints ──


@router.post("/{dataset_id}/fields/validate", response_model=ValidationResult)
async def validate_field_formula(
    dataset_id: str,
    request: ValidateFormulaRequest,
    session: Session = Depends(get_session),
):
    """Validate a formula against the dataset's saved fields without saving it."""
    existing = [r.to_field() for r in _dataset_fields(session, dataset_id)]
    return validate_formula(
        request.formula,
        request.formula_type,
        existing,
        request.field_slug,
        request.known_fields,
    )


@router.get("/{dataset_id}/fields")
async def list_fields(
    dataset_id: str,
    include_inactive: bool = False,
    session: Session = Depends(get_session),
):
    """List a dataset's calculated fields."""
    records = _dataset_fields(session, dataset_id)
    fields = [r.to_field() for r in records if include_inactive or r.is_active]
    return {
        "status": "success",
        "count": len(fields),
        "fields": [f.model_dump(mode="json") for f in fields],
    }


@router.post("/{dataset_id}/fields", status_code=201)
async def create_field(
    dataset_id: str,
    request: CreateFieldRequest,
    session: Session = Depends(get_session),
):
    """Create a calculated field. Invalid or cyclic formulas are never saved."""
    if not is_field_slug(request.field_slug):
        raise HTTPException(
            status_code=400, detail=f"'{request.field_slug}' is not a valid field slug"
        )
    existing = session.exec(
        select(CalculatedFieldRecord).where(
            CalculatedFieldRecord.dataset_id == dataset_id,
            CalculatedFieldRecord.field_slug == request.field_slug,
        )
    ).first()
    if existing:
        raise HTTPException(
            status_code=409, detail=f"Field '{request.field_slug}' already exists"
        )

    _require_valid(
        session,
        dataset_id,
        request.formula,
        request.formula_type,
        request.field_slug,
        request.known_fields,
    )

    record = CalculatedFieldRecord(
        dataset_id=dataset_id,
        field_slug=request.field_slug,
        display_name=request.display_name or request.field_slug,
        formula_type=request.formula_type.value,
        formula=request.formula,
        time_scope=request.time_scope.value,
        refresh_mode=request.refresh_mode.value,
    )
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(
        f"Created field {record.field_slug}",
        extra={"dataset_id": dataset_id, "field_slug": record.field_slug},
    )
    return {"status": "success", "field": record.to_field().model_dump(mode="json")}


@router.put("/{dataset_id}/fields/{field_slug}")
async def update_field(
    dataset_id: str,
    field_slug: str,
    request: UpdateFieldRequest,
    session: Session = Depends(get_session),
):
    """Edit a calculated field. The edited formula is re-validated before saving."""
    record = _get_field(session, dataset_id, field_slug)

    formula = request.formula if request.formula is not None else record.formula
    formula_type = request.formula_type or FormulaType(record.formula_type)
    is_active = request.is_active if request.is_active is not None else record.is_active

    # An inactive field is not part of the graph, so it cannot close a cycle
    _require_valid(
        session,
        dataset_id,
        formula,
        formula_type,
        field_slug,
        request.known_fields,
        in_graph=is_active,
    )

    record.formula = formula
    record.formula_type = formula_type.value
    record.is_active = is_active
    if request.display_name is not None:
        record.display_name = request.display_name
    if request.time_scope is not None:
        record.time_scope = request.time_scope.value
    if request.refresh_mode is not None:
        record.refresh_mode = request.refresh_mode.value
    record.updated_at = datetime.now(timezone.utc)

    session.add(record)
    session.commit()
    session.refresh(record)
    return {"status": "success", "field": record.to_field().model_dump(mode="json")}


@router.delete("/{dataset_id}/fields/{field_slug}")
async def deactivate_field(
    dataset_id: str,
    field_slug: str,
    session: Session = Depends(get_session),
):
    """Deactivate a field. The row is kept; it leaves the dependency graph."""
    record = _get_field(session, dataset_id, field_slug)
    record.is_active = False
    record.updated_at = datetime.now(timezone.utc)
    session.add(record)
    session.commit()
    return {"status": "success", "field_slug": field_slug, "is_active": False}


@router.post("/{dataset_id}/evaluate", response_model=DatasetEvaluation)
async def evaluate_records(
    dataset_id: str,
    request: EvaluateRequest,
    session: Session = Depends(get_session),
):
    """Compute every active calculated field for a posted record batch."""
    _check_batch(request.records)
    fields = [r.to_field() for r in _dataset_fields(session, dataset_id) if r.is_active]
    return evaluate_dataset(fields, request.records, request.now, dataset_id)


@router.post("/{dataset_id}/widgets/preview", response_model=WidgetValue)
async def preview_widget(
    dataset_id: str,
    request: WidgetPreviewRequest,
    session: Session = Depends(get_session),
):
    """Aggregate a widget over raw and derived columns of a posted batch."""
    _check_batch(request.records)
    fields = [r.to_field() for r in _dataset_fields(session, dataset_id) if r.is_active]
    evaluation = evaluate_dataset(fields, request.records, request.now, dataset_id)
    rows = [
        {**record, **derived}
        for record, derived in zip(request.records, evaluation.rows)
    ]
    return compute_widget(request.config, rows)
