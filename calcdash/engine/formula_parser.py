"""CALCDASH — Formula Parser.

Recursive-descent parser producing one of four frozen formula variants:

    ExpressionFormula   amount / 100, (a + b) * 1.25
    AggregationFormula  SUM(amount WHERE status = "paid"), COUNT(*)
    DateDiffFormula     DATE_DIFF(start_at, end_at, hours), DAYS_SINCE(created_at)
    ConditionalFormula  amount > 1000 ? "High" : "Low", IF(a == b, 1, 0)

The evaluator dispatches on the variant class, so each formula kind has
exactly one evaluation branch.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from calcdash.core.formula_registry import (
    AGGREGATION_FUNCTIONS,
    DATE_FUNCTIONS,
    DATE_UNITS,
    FormulaType,
)
from calcdash.engine.errors import FormulaSyntaxError
from calcdash.engine.tokenizer import Token, TokenKind, check_parentheses, tokenize


# ─────────────────────────────────────────────
# AST NODES
# ─────────────────────────────────────────────


@dataclass(frozen=True)
class Literal:
    value: object


@dataclass(frozen=True)
class FieldRef:
    slug: str


@dataclass(frozen=True)
class Now:
    pass


@dataclass(frozen=True)
class Negate:
    operand: "Node"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Comparison:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Conditional:
    condition: Comparison
    then: "Node"
    otherwise: "Node"


Node = Union[Literal, FieldRef, Now, Negate, BinaryOp, Comparison, Conditional]


@dataclass(frozen=True)
class FilterClause:
    """`field op literal` inside an aggregation WHERE clause."""

    field: str
    op: str
    value: object


def _collect(node: Node, out: List[str]) -> None:
    if isinstance(node, FieldRef):
        if node.slug not in out:
            out.append(node.slug)
    elif isinstance(node, Negate):
        _collect(node.operand, out)
    elif isinstance(node, (BinaryOp, Comparison)):
        _collect(node.left, out)
        _collect(node.right, out)
    elif isinstance(node, Conditional):
        _collect(node.condition, out)
        _collect(node.then, out)
        _collect(node.otherwise, out)


# ─────────────────────────────────────────────
# FORMULA VARIANTS
# ─────────────────────────────────────────────


@dataclass(frozen=True)
class ExpressionFormula:
    body: Node

    def references(self) -> List[str]:
        out: List[str] = []
        _collect(self.body, out)
        return out


@dataclass(frozen=True)
class AggregationFormula:
    function: str
    field: Optional[str]  # None for COUNT(*)
    filters: Tuple[FilterClause, ...] = ()

    def references(self) -> List[str]:
        out = [self.field] if self.field else []
        for clause in self.filters:
            if clause.field not in out:
                out.append(clause.field)
        return out


@dataclass(frozen=True)
class DateDiffFormula:
    start: Node
    end: Node
    unit: str

    def references(self) -> List[str]:
        out: List[str] = []
        _collect(self.start, out)
        _collect(self.end, out)
        return out


@dataclass(frozen=True)
class ConditionalFormula:
    body: Conditional

    def references(self) -> List[str]:
        out: List[str] = []
        _collect(self.body, out)
        return out


ParsedFormula = Union[
    ExpressionFormula, AggregationFormula, DateDiffFormula, ConditionalFormula
]


# ─────────────────────────────────────────────
# PARSER
# ─────────────────────────────────────────────


class _Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    # ── Cursor helpers ──

    def peek(self, offset: int = 0) -> Optional[Token]:
        i = self.pos + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def at(self, kind: TokenKind, value: object = None) -> bool:
        token = self.peek()
        if token is None or token.kind != kind:
            return False
        return value is None or token.value == value

    def advance(self) -> Token:
        token = self.peek()
        if token is None:
            raise FormulaSyntaxError("Unexpected end of formula")
        self.pos += 1
        return token

    def expect(self, kind: TokenKind, what: str) -> Token:
        token = self.peek()
        if token is None:
            raise FormulaSyntaxError(f"Expected {what} but formula ended")
        if token.kind != kind:
            raise FormulaSyntaxError(
                f"Expected {what}, found '{token.value}'", token.position
            )
        self.pos += 1
        return token

    def expect_end(self) -> None:
        token = self.peek()
        if token is not None:
            raise FormulaSyntaxError(f"Unexpected token '{token.value}'", token.position)

    # ── Arithmetic ──

    def arithmetic(self, allow_literals: bool = False) -> Node:
        node = self.term(allow_literals)
        while self.at(TokenKind.OPERATOR, "+") or self.at(TokenKind.OPERATOR, "-"):
            op = str(self.advance().value)
            node = BinaryOp(op, node, self.term(allow_literals))
        return node

    def term(self, allow_literals: bool) -> Node:
        node = self.unary(allow_literals)
        while self.at(TokenKind.OPERATOR, "*") or self.at(TokenKind.OPERATOR, "/"):
            op = str(self.advance().value)
            node = BinaryOp(op, node, self.unary(allow_literals))
        return node

    def unary(self, allow_literals: bool) -> Node:
        if self.at(TokenKind.OPERATOR, "-"):
            self.advance()
            return Negate(self.unary(allow_literals))
        return self.primary(allow_literals)

    def primary(self, allow_literals: bool) -> Node:
        token = self.peek()
        if token is None:
            raise FormulaSyntaxError("Unexpected end of formula")
        if token.kind == TokenKind.NUMBER:
            self.advance()
            return Literal(token.value)
        if token.kind == TokenKind.FIELD:
            self.advance()
            return FieldRef(str(token.value))
        if token.kind == TokenKind.LPAREN:
            self.advance()
            node = self.arithmetic(allow_literals)
            self.expect(TokenKind.RPAREN, "')'")
            return node
        if allow_literals:
            if token.kind == TokenKind.STRING:
                self.advance()
                return Literal(token.value)
            if token.kind == TokenKind.KEYWORD and token.value in ("TRUE", "FALSE", "NULL"):
                self.advance()
                return Literal({"TRUE": True, "FALSE": False, "NULL": None}[token.value])
        raise FormulaSyntaxError(f"Unexpected token '{token.value}'", token.position)

    # ── Conditionals ──

    def comparison_after(self, left: Node) -> Comparison:
        op = str(self.expect(TokenKind.COMPARISON, "a comparison operator").value)
        return Comparison(op, left, self.arithmetic(allow_literals=True))

    def branch(self) -> Node:
        if self.at(TokenKind.FUNCTION, "IF"):
            return self.if_call()
        left = self.arithmetic(allow_literals=True)
        if self.at(TokenKind.COMPARISON):
            return self.ternary_after(self.comparison_after(left))
        return left

    def ternary_after(self, condition: Comparison) -> Conditional:
        self.expect(TokenKind.QUESTION, "'?'")
        then = self.branch()
        self.expect(TokenKind.COLON, "':'")
        return Conditional(condition, then, self.branch())

    def if_call(self) -> Conditional:
        self.expect(TokenKind.FUNCTION, "IF")
        self.expect(TokenKind.LPAREN, "'('")
        condition = self.comparison_after(self.arithmetic(allow_literals=True))
        self.expect(TokenKind.COMMA, "','")
        then = self.branch()
        self.expect(TokenKind.COMMA, "','")
        otherwise = self.branch()
        self.expect(TokenKind.RPAREN, "')'")
        return Conditional(condition, then, otherwise)

    # ── Filter clauses ──

    def filter_literal(self) -> object:
        negative = False
        if self.at(TokenKind.OPERATOR, "-"):
            self.advance()
            negative = True
        token = self.advance()
        if token.kind == TokenKind.NUMBER:
            return -token.value if negative else token.value
        if negative:
            raise FormulaSyntaxError("Expected a number after '-'", token.position)
        if token.kind == TokenKind.STRING:
            return token.value
        if token.kind == TokenKind.KEYWORD and token.value in ("TRUE", "FALSE", "NULL"):
            return {"TRUE": True, "FALSE": False, "NULL": None}[token.value]
        raise FormulaSyntaxError(
            f"Filter value must be a literal, found '{token.value}'", token.position
        )

    def filters(self) -> Tuple[FilterClause, ...]:
        clauses = []
        while True:
            field = str(self.expect(TokenKind.FIELD, "a field in the filter").value)
            op = str(self.expect(TokenKind.COMPARISON, "a comparison operator").value)
            clauses.append(FilterClause(field, op, self.filter_literal()))
            if not self.at(TokenKind.KEYWORD, "AND"):
                return tuple(clauses)
            self.advance()

    # ── Dates ──

    def date_operand(self) -> Node:
        token = self.advance()
        if token.kind == TokenKind.FIELD:
            return FieldRef(str(token.value))
        if token.kind in (TokenKind.STRING, TokenKind.NUMBER):
            return Literal(token.value)
        if token.kind == TokenKind.KEYWORD and token.value == "NOW":
            return Now()
        raise FormulaSyntaxError(
            f"Date operand must be a field, a date literal or NOW, found '{token.value}'",
            token.position,
        )

    def date_unit(self) -> str:
        token = self.advance()
        if token.kind not in (TokenKind.FIELD, TokenKind.STRING):
            raise FormulaSyntaxError(f"Expected a date unit, found '{token.value}'", token.position)
        unit = str(token.value).lower()
        if not unit.endswith("s"):
            unit += "s"
        if unit not in DATE_UNITS:
            raise FormulaSyntaxError(
                f"Unknown date unit '{token.value}' (expected one of {', '.join(DATE_UNITS)})",
                token.position,
            )
        return unit

    # ── Formula kinds ──

    def expression_formula(self) -> ExpressionFormula:
        body = self.arithmetic()
        self.expect_end()
        return ExpressionFormula(body)

    def aggregation_formula(self) -> AggregationFormula:
        token = self.peek()
        if token is None or token.kind != TokenKind.FUNCTION or token.value not in AGGREGATION_FUNCTIONS:
            raise FormulaSyntaxError(
                "Aggregation formula must start with SUM, AVG, COUNT, MIN, or MAX",
                token.position if token else None,
            )
        function = str(self.advance().value)
        self.expect(TokenKind.LPAREN, "'('")

        field: Optional[str] = None
        clauses: Tuple[FilterClause, ...] = ()
        if self.at(TokenKind.OPERATOR, "*"):
            if function != "COUNT":
                raise FormulaSyntaxError(f"{function}(*) is not supported; name a field")
            self.advance()
        elif self.at(TokenKind.FIELD) and function == "COUNT" and (
            self.peek(1) is not None and self.peek(1).kind == TokenKind.COMPARISON
        ):
            # COUNT(status = "paid") shorthand
            clauses = self.filters()
        else:
            field = str(self.expect(TokenKind.FIELD, "a field to aggregate").value)

        if self.at(TokenKind.KEYWORD, "WHERE"):
            if clauses:
                raise FormulaSyntaxError("Only one filter clause is allowed")
            self.advance()
            clauses = self.filters()

        self.expect(TokenKind.RPAREN, "')'")
        self.expect_end()
        return AggregationFormula(function, field, clauses)

    def date_diff_formula(self) -> DateDiffFormula:
        token = self.peek()
        if token is None or token.kind != TokenKind.FUNCTION or token.value not in DATE_FUNCTIONS:
            raise FormulaSyntaxError(
                "Date formula must use a date function (DATE_DIFF, DAYS_BETWEEN, DAYS_SINCE, ...)",
                token.position if token else None,
            )
        definition = DATE_FUNCTIONS[str(self.advance().value)]
        self.expect(TokenKind.LPAREN, "'('")
        start = self.date_operand()
        if definition.arity == 1:
            end: Node = Now()
            unit = definition.unit
        else:
            self.expect(TokenKind.COMMA, "','")
            end = self.date_operand()
            if definition.arity == 3:
                self.expect(TokenKind.COMMA, "','")
                unit = self.date_unit()
            else:
                unit = definition.unit
        self.expect(TokenKind.RPAREN, "')'")
        self.expect_end()
        return DateDiffFormula(start, end, unit)

    def conditional_formula(self) -> ConditionalFormula:
        if self.at(TokenKind.FUNCTION, "IF"):
            body = self.if_call()
        else:
            left = self.arithmetic(allow_literals=True)
            if not self.at(TokenKind.COMPARISON):
                raise FormulaSyntaxError(
                    "Conditional formula must look like 'condition ? then : else'"
                )
            body = self.ternary_after(self.comparison_after(left))
        self.expect_end()
        return ConditionalFormula(body)


_ENTRY_POINTS: Dict[FormulaType, Callable[[_Parser], ParsedFormula]] = {
    FormulaType.EXPRESSION: _Parser.expression_formula,
    FormulaType.AGGREGATION: _Parser.aggregation_formula,
    FormulaType.DATE_DIFF: _Parser.date_diff_formula,
    FormulaType.CONDITIONAL: _Parser.conditional_formula,
}


def parse_formula(formula_type: FormulaType | str, formula: str) -> ParsedFormula:
    """Parse a formula of the given kind, raising FormulaSyntaxError if malformed."""
    try:
        kind = FormulaType(formula_type)
    except ValueError:
        raise FormulaSyntaxError(f"Unknown formula type '{formula_type}'") from None

    tokens = tokenize(formula)
    if not tokens:
        raise FormulaSyntaxError("Formula is empty")
    check_parentheses(tokens)
    return _ENTRY_POINTS[kind](_Parser(tokens))
