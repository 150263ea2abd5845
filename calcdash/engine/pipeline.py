"""CALCDASH — Dataset Evaluation Pipeline.

Runs one evaluation pass over a record batch:
  cycle check → evaluate every active field for every record → collect errors

A failing cell yields null and is reported in `errors`; it never blanks any
other cell. Input records are never mutated.
"""

import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from calcdash.core.formula_registry import FormulaType
from calcdash.core.logging import get_logger
from calcdash.engine.field_evaluator import FieldEvaluator
from calcdash.engine.formula_validator import detect_circular_dependency
from calcdash.models.formula_models import CalculatedField, CellError, DatasetEvaluation

logger = get_logger("engine.pipeline")


def evaluate_dataset(
    fields: Iterable[CalculatedField],
    records: Iterable[Mapping[str, Any]],
    now: Optional[datetime] = None,
    dataset_id: str = "",
) -> DatasetEvaluation:
    """Compute derived columns for every record of a batch."""
    started = time.perf_counter()
    fields = [f for f in fields if f.is_active]
    records = list(records)

    # Saved fields may have bypassed the validator
    cycle = detect_circular_dependency(fields)
    if cycle:
        logger.warning(
            f"Dataset has a circular dependency: {' → '.join(cycle)}",
            extra={"dataset_id": dataset_id},
        )

    evaluator = FieldEvaluator(fields, records, now)
    rows: List[Dict[str, Any]] = []
    errors: List[CellError] = []

    for index, record in enumerate(records):
        row: Dict[str, Any] = {}
        for slug, result in evaluator.evaluate_all(record).items():
            row[slug] = result.value
            if not result.ok:
                errors.append(
                    CellError(
                        record_index=index,
                        field_slug=slug,
                        error_type=result.error_type or "formula_error",
                        error=result.error or "",
                    )
                )
        rows.append(row)

    aggregations: Dict[str, Any] = {}
    for field in fields:
        if field.formula_type == FormulaType.AGGREGATION:
            aggregations[field.field_slug] = evaluator.evaluate(field, {}).value

    if errors:
        failing = sorted({e.field_slug for e in errors})
        logger.warning(
            f"{len(errors)} cells failed in fields: {', '.join(failing)}",
            extra={"dataset_id": dataset_id},
        )

    logger.info(
        f"Evaluated {len(fields)} fields over {len(records)} records",
        extra={
            "dataset_id": dataset_id,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return DatasetEvaluation(
        rows=rows, aggregations=aggregations, errors=errors, cycle=cycle
    )
