"""Arithmetic evaluator for calculated columns and calculated metrics.

Grammar::

    expr   := term (('+' | '-') term)*
    term   := factor (('*' | '/') factor)*
    factor := ('+' | '-') factor | NUMBER | REF | '(' expr ')'

``REF`` is either a bracketed placeholder ``[Any Label]`` or a bare
identifier. References resolve against the supplied variables; a missing
bracketed reference reads 0, an unknown bare identifier is a syntax error.
Nothing is ever executed: the input is tokenized and reduced directly.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional

from core.data import coerce_number

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(
    r"\s*(?:"
    r"(?P<number>\d+\.?\d*|\.\d+)"
    r"|\[(?P<ref>[^\[\]]*)\]"
    r"|(?P<name>[A-Za-z_֐-׿][\w֐-׿]*)"
    r"|(?P<op>[-+*/()])"
    r")"
)
PLACEHOLDER_RE = re.compile(r"\[([^\[\]]+)\]")


class ExpressionError(ValueError):
    pass


@dataclass(frozen=True)
class Token:
    kind: str
    text: str


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    text = expression or ""
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        match = TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ExpressionError(f"Unexpected character {text[pos:pos + 1]!r} at {pos}")
        for kind in ("number", "ref", "name", "op"):
            value = match.group(kind)
            if value is not None:
                tokens.append(Token(kind, value))
                break
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, tokens: List[Token], variables: Mapping[str, float]):
        self.tokens = tokens
        self.pos = 0
        self.variables = variables

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise ExpressionError("Unexpected end of expression")
        self.pos += 1
        return tok

    def parse(self) -> float:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        value = self.expr()
        if self.peek() is not None:
            raise ExpressionError(f"Unexpected token {self.peek().text!r}")
        return value

    def expr(self) -> float:
        value = self.term()
        while self.peek() is not None and self.peek().text in ("+", "-"):
            op = self.take().text
            right = self.term()
            value = value + right if op == "+" else value - right
        return value

    def term(self) -> float:
        value = self.factor()
        while self.peek() is not None and self.peek().text in ("*", "/"):
            op = self.take().text
            right = self.factor()
            if op == "*":
                value = value * right
            else:
                if right == 0:
                    raise ExpressionError("Division by zero")
                value = value / right
        return value

    def factor(self) -> float:
        tok = self.take()
        if tok.kind == "op" and tok.text in ("+", "-"):
            value = self.factor()
            return value if tok.text == "+" else -value
        if tok.kind == "number":
            return float(tok.text)
        if tok.kind == "ref":
            return coerce_number(self.variables.get(tok.text.strip(), 0))
        if tok.kind == "name":
            if tok.text not in self.variables:
                raise ExpressionError(f"Unknown name {tok.text!r}")
            return coerce_number(self.variables[tok.text])
        if tok.text == "(":
            value = self.expr()
            closing = self.take()
            if closing.text != ")":
                raise ExpressionError("Expected ')'")
            return value
        raise ExpressionError(f"Unexpected token {tok.text!r}")


def parse_and_evaluate(expression: str, variables: Mapping[str, object]) -> float:
    """Strict evaluation; raises ExpressionError on bad syntax or division by zero."""
    return _Parser(tokenize(expression), variables).parse()


def evaluate(expression: str, variables: Optional[Mapping[str, object]] = None) -> float:
    """Evaluate an arithmetic expression, resolving every failure to 0."""
    try:
        result = parse_and_evaluate(expression, variables or {})
    except (ExpressionError, OverflowError) as exc:
        logger.debug("expression %r fell back to 0: %s", expression, exc)
        return 0.0
    if result != result or result in (float("inf"), float("-inf")):
        return 0.0
    return result


def validate(expression: str) -> Optional[str]:
    """Return a syntax error message, or None when the expression parses."""
    try:
        tokens = tokenize(expression)
        _Parser(tokens, _AnyName()).parse()
    except ExpressionError as exc:
        if "Division by zero" in str(exc):
            return None
        return str(exc)
    return None


class _AnyName(dict):
    def __contains__(self, key: object) -> bool:
        return True

    def __getitem__(self, key: str) -> float:
        return 1.0

    def get(self, key: str, default: object = None) -> float:
        return 1.0


def references(expression: str) -> List[str]:
    """Bracketed placeholder names in order of first appearance."""
    seen: List[str] = []
    for name in PLACEHOLDER_RE.findall(expression or ""):
        name = name.strip()
        if name not in seen:
            seen.append(name)
    return seen


def row_variables(row: Mapping[str, object], labels: Optional[Mapping[str, str]] = None) -> dict:
    """Numeric variables for a calculated column: every field by key and by label."""
    out = {key: coerce_number(value) for key, value in row.items()}
    for key, label in (labels or {}).items():
        if label and label not in out:
            out[label] = coerce_number(row.get(key))
    return out


def missing_references(expression: str, names: Iterable[str]) -> List[str]:
    known = set(names)
    return [n for n in references(expression) if n not in known]
