"""Tests for whole-batch dataset evaluation."""

import copy
from datetime import datetime, timezone

import pytest

from calcdash.engine.pipeline import evaluate_dataset
from calcdash.models.formula_models import CalculatedField

NOW = datetime(2026, 3, 15, tzinfo=timezone.utc)


def _field(slug, formula, formula_type="expression", **kwargs):
    return CalculatedField(field_slug=slug, formula=formula, formula_type=formula_type, **kwargs)


def test_rows_and_aggregations():
    fields = [
        _field("commission", "amount * 0.1"),
        _field("tier", 'amount > 150 ? "big" : "small"', "conditional"),
        _field("total", "SUM(amount)", "aggregation"),
    ]
    records = [{"amount": 100}, {"amount": 200}]

    result = evaluate_dataset(fields, records, NOW)

    assert result.errors == []
    assert result.cycle is None
    assert result.rows[0]["tier"] == "small"
    assert result.rows[1]["tier"] == "big"
    assert result.rows[1]["commission"] == pytest.approx(20)
    assert result.rows[0]["total"] == 300
    assert result.aggregations == {"total": 300}


def test_failing_cell_is_contained():
    fields = [_field("commission", "amount * 0.1"), _field("doubled", "qty * 2")]
    records = [{"amount": 100, "qty": 1}, {"amount": None, "qty": 3}]

    result = evaluate_dataset(fields, records, NOW)

    assert result.rows[1]["commission"] is None
    assert result.rows[1]["doubled"] == 6
    assert len(result.errors) == 1
    error = result.errors[0]
    assert (error.record_index, error.field_slug, error.error_type) == (1, "commission", "type_coercion")


def test_records_are_not_mutated():
    records = [{"amount": 100}]
    snapshot = copy.deepcopy(records)
    evaluate_dataset([_field("commission", "amount * 0.1")], records, NOW)
    assert records == snapshot


def test_saved_cycle_is_reported():
    fields = [_field("a", "b + 1"), _field("b", "a + 1"), _field("c", "x * 2")]
    result = evaluate_dataset(fields, [{"x": 2}], NOW)
    assert result.cycle == ["a", "b", "a"]
    assert result.rows[0]["c"] == 4
    assert {e.field_slug for e in result.errors} == {"a", "b"}
    assert {e.error_type for e in result.errors} == {"circular_dependency"}


def test_inactive_fields_are_skipped():
    fields = [_field("commission", "amount * 0.1", is_active=False)]
    result = evaluate_dataset(fields, [{"amount": 100}], NOW)
    assert result.rows == [{}]
