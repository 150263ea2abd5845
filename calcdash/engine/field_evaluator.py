"""CALCDASH — Field Value Evaluator.

Evaluates calculated fields for one record of a batch. References to other
active calculated fields are evaluated recursively; anything else is read
from the record. One FieldEvaluator is one evaluation pass: aggregation
results are memoized per field slug for the batch it was built with, and
nothing survives the instance.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from calcdash.config import settings
from calcdash.core.formula_registry import UNIT_SECONDS, TimeScope
from calcdash.core.logging import get_logger
from calcdash.engine.conditions import as_text, condition_holds
from calcdash.engine.errors import (
    CircularDependencyError,
    FormulaError,
    TypeCoercionError,
    UnresolvedReferenceError,
)
from calcdash.engine.formula_parser import (
    AggregationFormula,
    BinaryOp,
    Comparison,
    Conditional,
    ConditionalFormula,
    DateDiffFormula,
    ExpressionFormula,
    FieldRef,
    FilterClause,
    Literal,
    Negate,
    Node,
    Now,
    ParsedFormula,
    parse_formula,
)
from calcdash.models.formula_models import CalculatedField, FieldResult
from calcdash.models.metric_models import FilterCondition

logger = get_logger("engine.evaluator")

Record = Mapping[str, Any]
Stack = Tuple[str, ...]

# Epoch values above this are taken to be milliseconds
EPOCH_MS_THRESHOLD = 10**11


# ─────────────────────────────────────────────
# COERCION
# ─────────────────────────────────────────────


def to_number(value: Any) -> float | int:
    """Coerce an operand to a number or raise TypeCoercionError."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise TypeCoercionError(f"Cannot use '{value}' as a number") from None
        if math.isfinite(number):
            return number
        raise TypeCoercionError(f"Cannot use '{value}' as a number")
    if value is None:
        raise TypeCoercionError("Cannot use a null value as a number")
    raise TypeCoercionError(f"Cannot use {type(value).__name__} as a number")


def parse_date(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or a Unix epoch (s or ms). Naive means UTC."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            epoch = float(value)
        except (TypeError, ValueError):
            epoch = None
        if epoch is not None:
            if not math.isfinite(epoch):
                return None
            if abs(epoch) > EPOCH_MS_THRESHOLD:
                epoch /= 1000
            try:
                return datetime.fromtimestamp(epoch, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def date_diff(start: datetime, end: datetime, unit: str) -> int:
    """Signed `end - start` in whole units."""
    if unit in UNIT_SECONDS:
        return math.floor((end - start).total_seconds() / UNIT_SECONDS[unit])
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if unit == "years":
        return int(months / 12)
    return months


# ─────────────────────────────────────────────
# TIME SCOPES
# ─────────────────────────────────────────────


def scope_start(scope: TimeScope, now: datetime) -> Optional[datetime]:
    """Inclusive lower bound of a time scope, or None for unbounded."""
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if scope == TimeScope.TODAY:
        return today
    if scope == TimeScope.WEEK:
        return today - timedelta(days=today.weekday())
    if scope in (TimeScope.MONTH, TimeScope.MTD):
        return today.replace(day=1)
    if scope == TimeScope.QUARTER:
        return today.replace(month=3 * ((today.month - 1) // 3) + 1, day=1)
    if scope in (TimeScope.YEAR, TimeScope.YTD):
        return today.replace(month=1, day=1)
    if scope == TimeScope.ROLLING_7D:
        return now - timedelta(days=7)
    if scope == TimeScope.ROLLING_30D:
        return now - timedelta(days=30)
    return None


def filter_records_by_time_scope(
    records: Iterable[Record],
    scope: TimeScope,
    date_field: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Record]:
    """Keep records whose date falls inside the scope."""
    start = scope_start(scope, now or datetime.now(timezone.utc))
    if start is None:
        return list(records)
    date_field = date_field or settings.default_date_field
    kept = []
    for record in records:
        stamp = parse_date(record.get(date_field))
        if stamp is not None and stamp >= start:
            kept.append(record)
    return kept


# ─────────────────────────────────────────────
# EVALUATOR
# ─────────────────────────────────────────────


def _loose_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    try:
        return to_number(a) == to_number(b)
    except TypeCoercionError:
        return as_text(a) == as_text(b)


def _ordered(op: str, a: Any, b: Any) -> bool:
    if op == ">":
        return a > b
    if op == "<":
        return a < b
    if op == ">=":
        return a >= b
    return a <= b


class FieldEvaluator:
    """One evaluation pass over a record batch."""

    def __init__(
        self,
        fields: Iterable[CalculatedField],
        all_records: Optional[Iterable[Record]] = None,
        now: Optional[datetime] = None,
        date_field: Optional[str] = None,
    ):
        self.fields: Dict[str, CalculatedField] = {
            f.field_slug: f for f in fields if f.is_active
        }
        self.all_records: List[Record] = list(all_records or [])
        now = now or datetime.now(timezone.utc)
        self.now = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
        self.date_field = date_field or settings.default_date_field
        self._parsed: Dict[Tuple[str, str, str], ParsedFormula] = {}
        self._aggregates: Dict[str, Any] = {}
        self._handlers: Dict[type, Callable[..., Any]] = {
            ExpressionFormula: self._expression,
            AggregationFormula: self._aggregation,
            DateDiffFormula: self._date_diff,
            ConditionalFormula: self._conditional,
        }

    # ── Public ──

    def evaluate(self, field: CalculatedField, record: Record) -> FieldResult:
        """Evaluate one field for one record. Failures come back tagged."""
        try:
            value = self._evaluate_field(field, record, ())
        except FormulaError as e:
            logger.debug(
                f"Failed to evaluate {field.field_slug}: {e}",
                extra={"field_slug": field.field_slug, "error_type": e.error_type},
            )
            return FieldResult(
                field_slug=field.field_slug, error=str(e), error_type=e.error_type
            )
        return FieldResult(field_slug=field.field_slug, value=value)

    def evaluate_all(self, record: Record) -> Dict[str, FieldResult]:
        """Evaluate every active field for one record."""
        return {
            slug: self.evaluate(field, record) for slug, field in self.fields.items()
        }

    # ── Dispatch ──

    def _parse(self, field: CalculatedField) -> ParsedFormula:
        key = (field.field_slug, field.formula_type.value, field.formula)
        if key not in self._parsed:
            self._parsed[key] = parse_formula(field.formula_type, field.formula)
        return self._parsed[key]

    def _evaluate_field(self, field: CalculatedField, record: Record, stack: Stack) -> Any:
        slug = field.field_slug
        if slug in stack:
            raise CircularDependencyError(list(stack[stack.index(slug) :]) + [slug])
        stack = stack + (slug,)
        parsed = self._parse(field)
        return self._handlers[type(parsed)](field, parsed, record, stack)

    def _resolve(self, slug: str, record: Record, stack: Stack) -> Any:
        field = self.fields.get(slug)
        if field is not None:
            return self._evaluate_field(field, record, stack)
        if slug in record:
            return record[slug]
        raise UnresolvedReferenceError(slug)

    def _lookup(self, slug: str, record: Record, stack: Stack) -> Any:
        """Like _resolve, but missing or failing values read as null."""
        if slug not in self.fields:
            value = record.get(slug)
            return None if value == "" else value
        try:
            return self._evaluate_field(self.fields[slug], record, stack)
        except CircularDependencyError:
            raise
        except FormulaError:
            return None

    def _value(self, node: Node, record: Record, stack: Stack) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, FieldRef):
            return self._resolve(node.slug, record, stack)
        if isinstance(node, Now):
            return self.now
        if isinstance(node, Negate):
            return -to_number(self._value(node.operand, record, stack))
        if isinstance(node, BinaryOp):
            a = to_number(self._value(node.left, record, stack))
            b = to_number(self._value(node.right, record, stack))
            if node.op == "+":
                return a + b
            if node.op == "-":
                return a - b
            if node.op == "*":
                return a * b
            return a / b if b != 0 else 0
        if isinstance(node, Comparison):
            return self._compare(
                node.op,
                self._value(node.left, record, stack),
                self._value(node.right, record, stack),
            )
        if isinstance(node, Conditional):
            chosen = node.then if self._value(node.condition, record, stack) else node.otherwise
            return self._value(chosen, record, stack)
        raise TypeCoercionError(f"Unsupported node {type(node).__name__}")

    def _compare(self, op: str, a: Any, b: Any) -> bool:
        if op in ("==", "!="):
            equal = _loose_equal(a, b)
            return equal if op == "==" else not equal
        if a is None or b is None:
            raise TypeCoercionError(f"Cannot compare a null value with '{op}'")
        return _ordered(op, to_number(a), to_number(b))

    # ── Formula kinds ──

    def _expression(self, field, parsed: ExpressionFormula, record, stack) -> Any:
        return self._value(parsed.body, record, stack)

    def _conditional(self, field, parsed: ConditionalFormula, record, stack) -> Any:
        return self._value(parsed.body, record, stack)

    def _date_diff(self, field, parsed: DateDiffFormula, record, stack) -> Optional[int]:
        start = parse_date(self._value(parsed.start, record, stack))
        end = parse_date(self._value(parsed.end, record, stack))
        if start is None or end is None:
            return None
        return date_diff(start, end, parsed.unit)

    def _aggregation(self, field, parsed: AggregationFormula, record, stack) -> Any:
        # Same value for every record of the batch; memoized for this pass only
        slug = field.field_slug
        if slug in self._aggregates:
            cached = self._aggregates[slug]
            if isinstance(cached, FormulaError):
                raise cached
            return cached
        try:
            value = self._compute_aggregate(field, parsed, stack)
        except FormulaError as e:
            self._aggregates[slug] = e
            raise
        self._aggregates[slug] = value
        return value

    def _compute_aggregate(
        self, field: CalculatedField, parsed: AggregationFormula, stack: Stack
    ) -> float | int:
        records = filter_records_by_time_scope(
            self.all_records, field.time_scope, self.date_field, self.now
        )
        if parsed.filters:
            records = [
                r
                for r in records
                if all(self._clause_holds(c, r, stack) for c in parsed.filters)
            ]
        if parsed.field is None:
            return len(records)

        values = [self._lookup(parsed.field, r, stack) for r in records]
        values = [v for v in values if v is not None]
        if parsed.function == "COUNT":
            return len(values)

        numbers = [to_number(v) for v in values]
        if not numbers:
            return 0
        if parsed.function == "SUM":
            return sum(numbers)
        if parsed.function == "AVG":
            return sum(numbers) / len(numbers)
        if parsed.function == "MIN":
            return min(numbers)
        return max(numbers)

    def _clause_holds(self, clause: FilterClause, record: Record, stack: Stack) -> bool:
        value = self._lookup(clause.field, record, stack)
        if clause.op in ("==", "!="):
            if clause.value is None:
                equal = value is None
            else:
                condition = FilterCondition(
                    field=clause.field, operator="equals", value=clause.value
                )
                equal = condition_holds({clause.field: value}, condition)
            return equal if clause.op == "==" else not equal
        if value is None or clause.value is None:
            return False
        try:
            return _ordered(clause.op, to_number(value), to_number(clause.value))
        except TypeCoercionError:
            if isinstance(value, str) and isinstance(clause.value, str):
                # ISO dates compare correctly as text
                return _ordered(clause.op, value, clause.value)
            return False


def evaluate_field(
    field: CalculatedField,
    record: Record,
    all_records: Optional[Iterable[Record]] = None,
    fields: Optional[Iterable[CalculatedField]] = None,
    now: Optional[datetime] = None,
) -> FieldResult:
    """Evaluate a single field for a single record.

    `fields` are the dataset's calculated fields used to resolve nested
    references; by default only the field itself is known.
    """
    known = list(fields) if fields is not None else [field]
    return FieldEvaluator(known, all_records, now).evaluate(field, record)
