"""CALCDASH — Formula Tokenizer.

Turns a formula string into an explicit token stream. Field references are
read from FIELD tokens, never by substring search, so a slug that happens to
be part of a longer identifier is not mistaken for a reference.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List

from calcdash.core.formula_registry import KEYWORDS, get_function
from calcdash.engine.errors import FormulaSyntaxError


class TokenKind(str, Enum):
    NUMBER = "number"
    STRING = "string"
    FIELD = "field"
    FUNCTION = "function"
    KEYWORD = "keyword"
    OPERATOR = "operator"
    COMPARISON = "comparison"
    LPAREN = "lparen"
    RPAREN = "rparen"
    COMMA = "comma"
    QUESTION = "question"
    COLON = "colon"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: object
    position: int


OPERATORS = "+-*/"
SINGLE_CHAR = {
    "(": TokenKind.LPAREN,
    ")": TokenKind.RPAREN,
    ",": TokenKind.COMMA,
    "?": TokenKind.QUESTION,
    ":": TokenKind.COLON,
}


def _is_ident_start(ch: str) -> bool:
    return ch.isascii() and (ch.isalpha() or ch == "_")


def _is_ident_char(ch: str) -> bool:
    return ch.isascii() and (ch.isalnum() or ch == "_")


def _next_non_space(text: str, i: int) -> str:
    while i < len(text) and text[i].isspace():
        i += 1
    return text[i] if i < len(text) else ""


def tokenize(formula: str) -> List[Token]:
    """Split a formula into tokens.

    Raises FormulaSyntaxError on any character outside the formula alphabet,
    on malformed numbers and on unterminated string literals.
    """
    tokens: List[Token] = []
    i = 0
    n = len(formula)

    while i < n:
        ch = formula[i]

        if ch.isspace():
            i += 1
            continue

        # Numbers: 12, 1.5, .5
        if ch.isdigit() or (ch == "." and i + 1 < n and formula[i + 1].isdigit()):
            start = i
            seen_dot = False
            while i < n and (formula[i].isdigit() or formula[i] == "."):
                if formula[i] == ".":
                    if seen_dot:
                        raise FormulaSyntaxError("Malformed number", start)
                    seen_dot = True
                i += 1
            raw = formula[start:i]
            value = float(raw) if seen_dot else int(raw)
            tokens.append(Token(TokenKind.NUMBER, value, start))
            continue

        # Quoted strings
        if ch in ("'", '"'):
            start = i
            end = formula.find(ch, i + 1)
            if end == -1:
                raise FormulaSyntaxError("Unterminated string literal", start)
            tokens.append(Token(TokenKind.STRING, formula[i + 1 : end], start))
            i = end + 1
            continue

        if ch in OPERATORS:
            tokens.append(Token(TokenKind.OPERATOR, ch, i))
            i += 1
            continue

        # Comparisons: == = != >= <= > <
        if ch in "=!<>":
            start = i
            if i + 1 < n and formula[i + 1] == "=":
                op = ch + "="
                i += 2
            elif ch == "!":
                raise FormulaSyntaxError("Unexpected character '!'", start)
            else:
                op = ch
                i += 1
            tokens.append(Token(TokenKind.COMPARISON, "==" if op == "=" else op, start))
            continue

        if ch in SINGLE_CHAR:
            tokens.append(Token(SINGLE_CHAR[ch], ch, i))
            i += 1
            continue

        # Identifiers: field slugs, functions, keywords
        if _is_ident_start(ch):
            start = i
            while i < n and _is_ident_char(formula[i]):
                i += 1
            ident = formula[start:i]
            upper = ident.upper()
            if get_function(upper) and _next_non_space(formula, i) == "(":
                tokens.append(Token(TokenKind.FUNCTION, upper, start))
            elif upper in KEYWORDS:
                tokens.append(Token(TokenKind.KEYWORD, upper, start))
            else:
                tokens.append(Token(TokenKind.FIELD, ident, start))
            continue

        raise FormulaSyntaxError(f"Unexpected character '{ch}'", i)

    return tokens


def check_parentheses(tokens: List[Token]) -> None:
    """Raise FormulaSyntaxError when parentheses are unbalanced."""
    depth = 0
    for token in tokens:
        if token.kind == TokenKind.LPAREN:
            depth += 1
        elif token.kind == TokenKind.RPAREN:
            depth -= 1
            if depth < 0:
                raise FormulaSyntaxError("Unbalanced parentheses", token.position)
    if depth != 0:
        raise FormulaSyntaxError("Unbalanced parentheses")


def is_field_slug(slug: str) -> bool:
    """True if `slug` would tokenize as a single field reference."""
    return (
        bool(slug)
        and _is_ident_start(slug[0])
        and all(_is_ident_char(ch) for ch in slug)
        and slug.upper() not in KEYWORDS
        and get_function(slug) is None
    )


def field_tokens(formula: str) -> List[str]:
    """Return the FIELD token values of a formula, in order of appearance."""
    return [str(t.value) for t in tokenize(formula) if t.kind == TokenKind.FIELD]
