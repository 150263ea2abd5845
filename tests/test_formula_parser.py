"""Tests for the tokenizer and formula parser."""

import pytest

from calcdash.engine.errors import FormulaSyntaxError
from calcdash.engine.formula_parser import (
    AggregationFormula,
    BinaryOp,
    ConditionalFormula,
    DateDiffFormula,
    ExpressionFormula,
    FieldRef,
    FilterClause,
    Literal,
    Now,
    parse_formula,
)
from calcdash.engine.tokenizer import TokenKind, field_tokens, is_field_slug, tokenize


# ── Tokenizer ──


def test_tokenize_expression():
    tokens = tokenize("amount / 100")
    assert [t.kind for t in tokens] == [TokenKind.FIELD, TokenKind.OPERATOR, TokenKind.NUMBER]
    assert tokens[2].value == 100


def test_single_equals_is_normalized():
    tokens = tokenize('status = "paid"')
    assert tokens[1].kind == TokenKind.COMPARISON
    assert tokens[1].value == "=="


def test_unknown_character_reports_position():
    with pytest.raises(FormulaSyntaxError) as exc:
        tokenize("amount $ 2")
    assert exc.value.position == 7


def test_unterminated_string():
    with pytest.raises(FormulaSyntaxError):
        tokenize('status == "paid')


def test_field_tokens_do_not_match_substrings():
    assert field_tokens("amount_total + amount") == ["amount_total", "amount"]


def test_function_name_without_call_is_a_field():
    assert tokenize("sum + 1")[0].kind == TokenKind.FIELD
    assert tokenize("SUM(amount)")[0].kind == TokenKind.FUNCTION


def test_is_field_slug():
    assert is_field_slug("net_revenue")
    assert not is_field_slug("2x")
    assert not is_field_slug("where")
    assert not is_field_slug("sum")
    assert not is_field_slug("")


# ── Parser ──


def test_expression_precedence():
    parsed = parse_formula("expression", "a + b * 2")
    assert isinstance(parsed, ExpressionFormula)
    assert parsed.body == BinaryOp("+", FieldRef("a"), BinaryOp("*", FieldRef("b"), Literal(2)))
    assert parsed.references() == ["a", "b"]


def test_expression_rejects_trailing_tokens():
    with pytest.raises(FormulaSyntaxError):
        parse_formula("expression", "amount tax")


def test_unbalanced_parentheses():
    with pytest.raises(FormulaSyntaxError, match="Unbalanced parentheses"):
        parse_formula("expression", "(a + b")


def test_empty_formula():
    with pytest.raises(FormulaSyntaxError, match="Formula is empty"):
        parse_formula("expression", "   ")


def test_unknown_formula_type():
    with pytest.raises(FormulaSyntaxError, match="Unknown formula type"):
        parse_formula("pivot", "a")


def test_aggregation_with_where():
    parsed = parse_formula("aggregation", 'SUM(amount WHERE status = "paid" AND amount > 10)')
    assert parsed == AggregationFormula(
        "SUM",
        "amount",
        (FilterClause("status", "==", "paid"), FilterClause("amount", ">", 10)),
    )
    assert parsed.references() == ["amount", "status"]


def test_count_star_and_shorthand():
    assert parse_formula("aggregation", "COUNT(*)") == AggregationFormula("COUNT", None)
    shorthand = parse_formula("aggregation", 'COUNT(status = "paid")')
    assert shorthand.field is None
    assert shorthand.filters == (FilterClause("status", "==", "paid"),)


def test_star_only_for_count():
    with pytest.raises(FormulaSyntaxError):
        parse_formula("aggregation", "SUM(*)")


def test_aggregation_must_be_a_single_call():
    with pytest.raises(FormulaSyntaxError):
        parse_formula("aggregation", "SUM(amount) + 1")
    with pytest.raises(FormulaSyntaxError):
        parse_formula("aggregation", "amount")


def test_date_functions():
    parsed = parse_formula("date_diff", "DATE_DIFF(start_at, end_at, hour)")
    assert parsed == DateDiffFormula(FieldRef("start_at"), FieldRef("end_at"), "hours")

    since = parse_formula("date_diff", "DAYS_SINCE(created_at)")
    assert since == DateDiffFormula(FieldRef("created_at"), Now(), "days")


def test_unknown_date_unit():
    with pytest.raises(FormulaSyntaxError, match="Unknown date unit"):
        parse_formula("date_diff", "DATE_DIFF(a, b, fortnights)")


def test_ternary_conditional():
    parsed = parse_formula("conditional", 'amount > 1000 ? "High" : "Low"')
    assert isinstance(parsed, ConditionalFormula)
    assert parsed.body.then == Literal("High")
    assert parsed.references() == ["amount"]


def test_nested_if():
    parsed = parse_formula("conditional", 'IF(score >= 90, "A", IF(score >= 80, "B", "C"))')
    assert parsed.body.otherwise.then == Literal("B")


def test_conditional_requires_a_comparison():
    with pytest.raises(FormulaSyntaxError):
        parse_formula("conditional", "amount + 1")
