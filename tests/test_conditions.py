"""Tests for the shared filter/condition matcher."""

from calcdash.engine.conditions import as_text, condition_holds, filter_records, matches
from calcdash.models.metric_models import FilterCondition


def cond(field, operator, value):
    return FilterCondition(field=field, operator=operator, value=value)


def test_equals_compares_as_text():
    assert condition_holds({"status": "completed"}, cond("status", "equals", "completed"))
    assert not condition_holds({"status": "no_show"}, cond("status", "equals", "completed"))


def test_integral_float_matches_integer_text():
    assert as_text(2.0) == "2"
    assert condition_holds({"seats": 2.0}, cond("seats", "equals", "2"))


def test_boolean_field_accepts_text_true():
    assert condition_holds({"deal_closed": True}, cond("deal_closed", "equals", "true"))
    assert condition_holds({"deal_closed": "false"}, cond("deal_closed", "equals", False))
    assert not condition_holds({"deal_closed": False}, cond("deal_closed", "equals", "true"))


def test_equals_on_missing_field_is_false():
    assert not condition_holds({}, cond("status", "equals", "completed"))


def test_not_equals_is_negation_of_equals():
    assert condition_holds({"status": "no_show"}, cond("status", "not_equals", "completed"))
    assert not condition_holds({"status": "completed"}, cond("status", "not_equals", "completed"))
    # Missing value is not equal to anything
    assert condition_holds({}, cond("status", "not_equals", "completed"))


def test_in_operator():
    condition = cond("status", "in", ["completed", "rescheduled"])
    assert condition_holds({"status": "rescheduled"}, condition)
    assert not condition_holds({"status": "canceled"}, condition)
    assert not condition_holds({"status": None}, condition)


def test_empty_condition_list_matches_everything():
    assert matches({"anything": 1}, [])
    assert matches({}, [])


def test_conditions_combine_with_and():
    conditions = [cond("status", "equals", "completed"), cond("source", "equals", "ads")]
    assert matches({"status": "completed", "source": "ads"}, conditions)
    assert not matches({"status": "completed", "source": "organic"}, conditions)


def test_filter_records_preserves_order():
    records = [
        {"id": 1, "status": "completed"},
        {"id": 2, "status": "no_show"},
        {"id": 3, "status": "completed"},
    ]
    kept = filter_records(records, [cond("status", "equals", "completed")])
    assert [r["id"] for r in kept] == [1, 3]
