"""CALCDASH — Formula Validator & Dependency Graph.

Checks a formula before it is saved: grammar for its kind, unknown
references (when the dataset schema is known) and circular dependencies
across the dataset's active calculated fields. The candidate's edited
formula is substituted for its saved version, so an edit that closes a
cycle is caught before persistence.
"""

from typing import Dict, Iterable, List, Optional

from calcdash.core.formula_registry import FormulaType
from calcdash.engine.errors import (
    CircularDependencyError,
    FormulaError,
    FormulaSyntaxError,
    UnresolvedReferenceError,
)
from calcdash.engine.formula_parser import parse_formula
from calcdash.engine.tokenizer import field_tokens
from calcdash.models.formula_models import CalculatedField, ValidationResult
from calcdash.core.logging import get_logger

logger = get_logger("engine.validator")

# Graph node for a field that has no slug yet
NEW_FIELD_SLUG = "__new_field__"


def field_references(formula_type: FormulaType | str, formula: str) -> List[str]:
    """Slugs a formula refers to.

    Uses the parsed tree when the formula is well formed and falls back to the
    token stream for saved formulas that no longer parse.
    """
    try:
        return parse_formula(formula_type, formula).references()
    except FormulaSyntaxError:
        try:
            return field_tokens(formula)
        except FormulaSyntaxError:
            return []


def build_dependency_graph(
    fields: Iterable[CalculatedField],
    candidate: Optional[CalculatedField] = None,
) -> Dict[str, List[str]]:
    """Map each active calculated slug to the calculated slugs it references."""
    active = {f.field_slug: f for f in fields if f.is_active}
    if candidate is not None:
        active[candidate.field_slug] = candidate

    graph: Dict[str, List[str]] = {}
    for slug, field in active.items():
        refs = field_references(field.formula_type, field.formula)
        graph[slug] = [r for r in refs if r in active]
    return graph


def find_cycle(
    graph: Dict[str, List[str]], start: Optional[str] = None
) -> Optional[List[str]]:
    """Depth-first search for a cycle.

    Walks from `start` (or from every node) tracking the current path.
    Returns the cycle as a closed path, e.g. ["a", "b", "a"], or None.
    """
    done: set[str] = set()
    path: List[str] = []
    on_path: set[str] = set()

    def visit(node: str) -> Optional[List[str]]:
        if node in on_path:
            return path[path.index(node) :] + [node]
        if node in done:
            return None
        path.append(node)
        on_path.add(node)
        for neighbour in graph.get(node, []):
            cycle = visit(neighbour)
            if cycle:
                return cycle
        path.pop()
        on_path.discard(node)
        done.add(node)
        return None

    roots = [start] if start is not None else list(graph)
    for root in roots:
        cycle = visit(root)
        if cycle:
            return cycle
    return None


def detect_circular_dependency(
    fields: Iterable[CalculatedField],
    candidate: Optional[CalculatedField] = None,
) -> Optional[List[str]]:
    """Return the first cycle in the dataset's graph, or None if it is a DAG."""
    graph = build_dependency_graph(fields, candidate)
    start = candidate.field_slug if candidate is not None else None
    return find_cycle(graph, start)


def validate_formula(
    formula: str,
    formula_type: FormulaType | str,
    existing_fields: Optional[Iterable[CalculatedField]] = None,
    self_slug: Optional[str] = None,
    known_fields: Optional[Iterable[str]] = None,
) -> ValidationResult:
    """Validate a formula before saving it. Never raises."""
    if not formula or not formula.strip():
        return ValidationResult(
            valid=False,
            error="Formula is empty",
            error_type=FormulaSyntaxError.error_type,
        )

    existing = list(existing_fields) if existing_fields is not None else None
    try:
        parsed = parse_formula(formula_type, formula)

        if existing is not None:
            candidate = CalculatedField(
                field_slug=self_slug or NEW_FIELD_SLUG,
                formula_type=FormulaType(formula_type),
                formula=formula,
            )
            cycle = detect_circular_dependency(existing, candidate)
            if cycle:
                raise CircularDependencyError(cycle)

        if known_fields is not None:
            resolvable = set(known_fields)
            resolvable.update(
                f.field_slug for f in existing or [] if f.is_active and f.field_slug != self_slug
            )
            for ref in parsed.references():
                if ref not in resolvable:
                    raise UnresolvedReferenceError(ref)

    except CircularDependencyError as e:
        logger.info(f"Rejected formula for {self_slug or 'new field'}: {e}")
        return ValidationResult(
            valid=False, error=str(e), error_type=e.error_type, cycle=e.cycle
        )
    except FormulaError as e:
        return ValidationResult(valid=False, error=str(e), error_type=e.error_type)

    return ValidationResult(valid=True)
