"""CALCDASH — Formula Error Taxonomy."""

from typing import List, Optional


class FormulaError(Exception):
    """Base class for every validation or evaluation failure."""

    error_type = "formula_error"


class FormulaSyntaxError(FormulaError):
    """Malformed formula. Blocks the save."""

    error_type = "syntax_error"

    def __init__(self, message: str, position: Optional[int] = None):
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message)
        self.position = position


class CircularDependencyError(FormulaError):
    """A calculated field (transitively) references itself."""

    error_type = "circular_dependency"

    def __init__(self, cycle: List[str]):
        super().__init__(f"Circular dependency detected: {' → '.join(cycle)}")
        self.cycle = cycle


class UnresolvedReferenceError(FormulaError):
    """Formula references a slug that is neither a field nor a record key."""

    error_type = "unresolved_reference"

    def __init__(self, slug: str):
        super().__init__(f"Unknown field '{slug}'")
        self.slug = slug


class TypeCoercionError(FormulaError):
    """Operand cannot be coerced to the type the operator needs."""

    error_type = "type_coercion"
