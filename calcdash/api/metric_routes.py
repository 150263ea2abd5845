"""CALCDASH — Metric Definition API Routes."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from calcdash.config import settings
from calcdash.database import get_session
from calcdash.engine.metric_engine import (
    compute_metric,
    compute_metrics,
    filter_by_date_window,
    metric_date_field,
)
from calcdash.models.definition_models import MetricDefinitionRecord
from calcdash.models.metric_models import (
    DataSource,
    MetricDefinition,
    MetricFormulaType,
    MetricValue,
)
from calcdash.core.logging import get_logger

logger = get_logger("api.metrics")

router = APIRouter(prefix="/metrics", tags=["Metrics"])


# ── Request / Response Models ──


class ComputeMetricsRequest(BaseModel):
    """Request body for POST /metrics/compute."""

    sources: Dict[str, List[Dict[str, Any]]]
    """Records per data source: "events", "payments", "pcf_fields"."""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    metric_ids: Optional[List[str]] = None
    """Subset of saved metrics to compute. All active metrics when omitted."""
    now: Optional[datetime] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "sources": {
                        "events": [
                            {"scheduled_at": "2026-03-02T15:00:00Z", "event_outcome": "showed"}
                        ]
                    },
                    "start_date": "2026-03-01T00:00:00Z",
                    "end_date": "2026-03-31T23:59:59Z",
                }
            ]
        }
    }


class PreviewMetricRequest(BaseModel):
    metric: MetricDefinition
    records: List[Dict[str, Any]]
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    now: Optional[datetime] = None


# ── Helpers ──


def _check_definition(metric: MetricDefinition) -> None:
    if metric.formula_type == MetricFormulaType.SUM and not metric.numerator_field:
        raise HTTPException(status_code=400, detail="A sum metric needs a numerator_field")


def _check_batch(count: int) -> None:
    if count > settings.max_batch_records:
        raise HTTPException(
            status_code=413,
            detail=f"Batch of {count} records exceeds the limit of {settings.max_batch_records}",
        )


def _get_metric(session: Session, metric_id: int) -> MetricDefinitionRecord:
    record = session.get(MetricDefinitionRecord, metric_id)
    if not record:
        raise HTTPException(status_code=404, detail=f"Metric {metric_id} not found")
    return record


# ── Endpoints ──


@router.get("")
async def list_metrics(
    include_inactive: bool = False,
    session: Session = Depends(get_session),
):
    """List saved metric definitions in display order."""
    query = select(MetricDefinitionRecord).order_by(
        MetricDefinitionRecord.sort_order, MetricDefinitionRecord.id
    )
    if not include_inactive:
        query = query.where(MetricDefinitionRecord.is_active == True)  # noqa: E712
    metrics = [r.to_metric() for r in session.exec(query).all()]
    return {
        "status": "success",
        "count": len(metrics),
        "metrics": [m.model_dump(mode="json") for m in metrics],
    }


@router.post("", status_code=201)
async def create_metric(
    metric: MetricDefinition,
    sort_order: int = 0,
    session: Session = Depends(get_session),
):
    """Save a new metric definition."""
    _check_definition(metric)
    record = MetricDefinitionRecord(formula_type=metric.formula_type.value, sort_order=sort_order)
    record.apply(metric)
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(f"Created metric {record.id} ({record.name})", extra={"metric_id": str(record.id)})
    return {"status": "success", "metric": record.to_metric().model_dump(mode="json")}


@router.put("/{metric_id}")
async def update_metric(
    metric_id: int,
    metric: MetricDefinition,
    session: Session = Depends(get_session),
):
    """Replace a saved metric definition."""
    _check_definition(metric)
    record = _get_metric(session, metric_id)
    record.apply(metric)
    session.add(record)
    session.commit()
    session.refresh(record)
    return {"status": "success", "metric": record.to_metric().model_dump(mode="json")}


@router.delete("/{metric_id}")
async def deactivate_metric(
    metric_id: int,
    session: Session = Depends(get_session),
):
    """Deactivate a metric. The definition row is kept."""
    record = _get_metric(session, metric_id)
    record.is_active = False
    record.updated_at = datetime.now(timezone.utc)
    session.add(record)
    session.commit()
    return {"status": "success", "metric_id": str(metric_id), "is_active": False}


@router.post("/compute")
async def compute_saved_metrics(
    request: ComputeMetricsRequest,
    session: Session = Depends(get_session),
):
    """Compute saved metrics over the posted source records and date range."""
    _check_batch(sum(len(records) for records in request.sources.values()))

    query = select(MetricDefinitionRecord).where(MetricDefinitionRecord.is_active == True)  # noqa: E712
    metrics = [r.to_metric() for r in session.exec(query.order_by(MetricDefinitionRecord.sort_order)).all()]
    if request.metric_ids is not None:
        wanted = set(request.metric_ids)
        metrics = [m for m in metrics if m.id in wanted]

    values = compute_metrics(
        metrics, request.sources, request.start_date, request.end_date, request.now
    )
    return {
        "status": "success",
        "start_date": request.start_date,
        "end_date": request.end_date,
        "values": {metric_id: v.model_dump() for metric_id, v in values.items()},
    }


@router.post("/preview", response_model=MetricValue)
async def preview_metric(request: PreviewMetricRequest):
    """Compute an unsaved metric definition over posted records."""
    _check_definition(request.metric)
    _check_batch(len(request.records))
    records = request.records
    if request.metric.data_source != DataSource.PCF_FIELDS:
        records = filter_by_date_window(
            records, metric_date_field(request.metric), request.start_date, request.end_date
        )
    return compute_metric(request.metric, records, request.now)
