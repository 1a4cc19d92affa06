"""Restricted expression language for `if:` gates, job outputs and `${{ }}` templates.

Expressions are parsed into a small immutable AST and evaluated against an
explicit :class:`ExpressionContext`. There is no dynamic code execution.

Grammar (lowest precedence first)::

    expr       := or
    or         := and ('||' and)*
    and        := unary ('&&' unary)*
    unary      := '!' unary | comparison
    comparison := primary (('==' | '!=' | '<' | '<=' | '>' | '>=') primary)?
    primary    := literal | call | path | '(' expr ')'
    path       := IDENT ('.' IDENT | '[' expr ']')*
    call       := IDENT '(' (expr (',' expr)*)? ')'

Unknown functions and operators are rejected at parse time, so a malformed
workflow fails before any job runs.
"""

from __future__ import annotations

import functools
import json
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from pipeline_orchestrator.orchestrator.errors import EvaluationError, ParseError

STATUS_FUNCTIONS: frozenset[str] = frozenset({"always", "success", "failure", "cancelled"})

# canonical name -> (min args, max args); None means variadic
_FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    "always": (0, 0),
    "success": (0, 0),
    "failure": (0, 0),
    "cancelled": (0, 0),
    "contains": (2, 2),
    "startsWith": (2, 2),
    "endsWith": (2, 2),
    "format": (1, None),
    "join": (1, 2),
}
_FUNCTIONS_BY_LOWER = {name.lower(): name for name in _FUNCTION_ARITY}

TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


# ---------------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StatusFlags:
    """What the status functions return for the current gate."""

    success: bool = True
    failure: bool = False
    cancelled: bool = False


@dataclass(frozen=True, slots=True)
class ExpressionContext:
    """A read-only snapshot of the values an expression may reference.

    `values` maps root names (`needs`, `event`, `env`, `matrix`, `steps`, `job`)
    to nested mappings.
    """

    values: Mapping[str, object] = field(default_factory=dict)
    status: StatusFlags = StatusFlags()


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    value: object
    pos: int


_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "<", ">", "!")
_PUNCT = "()[],."
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
_NUMBER_RE = re.compile(r"-?0x[0-9a-fA-F]+|-?(?:\d+\.\d+|\d+)(?:[eE][+-]?\d+)?")


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue

        if ch in "'\"":
            quote = ch
            j = i + 1
            buf: list[str] = []
            while True:
                if j >= n:
                    raise ParseError("Unterminated string literal", expression=text, position=i)
                if text[j] == quote:
                    # Doubled quote is an escaped quote.
                    if j + 1 < n and text[j + 1] == quote:
                        buf.append(quote)
                        j += 2
                        continue
                    break
                buf.append(text[j])
                j += 1
            tokens.append(_Token("string", "".join(buf), i))
            i = j + 1
            continue

        prev_is_value = bool(tokens) and tokens[-1].kind in {"string", "number", "ident"} or (
            bool(tokens) and tokens[-1].value in {")", "]"}
        )
        if ch.isdigit() or (ch == "-" and not prev_is_value and i + 1 < n and text[i + 1].isdigit()):
            m = _NUMBER_RE.match(text, i)
            if m is None:
                raise ParseError("Invalid number", expression=text, position=i)
            raw = m.group(0)
            if "0x" in raw:
                number: float = float(int(raw, 0))
            else:
                number = float(raw)
            tokens.append(_Token("number", number, i))
            i = m.end()
            continue

        m = _IDENT_RE.match(text, i)
        if m is not None:
            tokens.append(_Token("ident", m.group(0), i))
            i = m.end()
            continue

        for op in _OPERATORS:
            if text.startswith(op, i):
                tokens.append(_Token("op", op, i))
                i += len(op)
                break
        else:
            if ch in _PUNCT:
                tokens.append(_Token("punct", ch, i))
                i += 1
                continue
            raise ParseError(f"Unknown operator or character {ch!r}", expression=text, position=i)

    tokens.append(_Token("end", None, n))
    return tokens


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


class Node:
    __slots__ = ()

    def evaluate(self, ctx: ExpressionContext) -> object:  # pragma: no cover - abstract
        raise NotImplementedError

    def children(self) -> Sequence[Node]:
        return ()


@dataclass(frozen=True, slots=True)
class Literal(Node):
    value: object

    def evaluate(self, ctx: ExpressionContext) -> object:
        return self.value


@dataclass(frozen=True, slots=True)
class PathRef(Node):
    root: str
    segments: tuple[str | Node, ...] = ()

    def children(self) -> Sequence[Node]:
        return [s for s in self.segments if isinstance(s, Node)]

    def evaluate(self, ctx: ExpressionContext) -> object:
        if self.root not in ctx.values:
            raise EvaluationError(f"Unknown context {self.root!r}")
        current = ctx.values[self.root]
        walked = self.root
        for segment in self.segments:
            key = segment.evaluate(ctx) if isinstance(segment, Node) else segment
            current = _index(current, key, walked)
            walked = f"{walked}.{key}"
        return current


@dataclass(frozen=True, slots=True)
class Not(Node):
    operand: Node

    def children(self) -> Sequence[Node]:
        return (self.operand,)

    def evaluate(self, ctx: ExpressionContext) -> object:
        return not truthy(self.operand.evaluate(ctx))


@dataclass(frozen=True, slots=True)
class And(Node):
    left: Node
    right: Node

    def children(self) -> Sequence[Node]:
        return (self.left, self.right)

    def evaluate(self, ctx: ExpressionContext) -> object:
        left = self.left.evaluate(ctx)
        if not truthy(left):
            return left
        return self.right.evaluate(ctx)


@dataclass(frozen=True, slots=True)
class Or(Node):
    left: Node
    right: Node

    def children(self) -> Sequence[Node]:
        return (self.left, self.right)

    def evaluate(self, ctx: ExpressionContext) -> object:
        left = self.left.evaluate(ctx)
        if truthy(left):
            return left
        return self.right.evaluate(ctx)


@dataclass(frozen=True, slots=True)
class Compare(Node):
    op: str
    left: Node
    right: Node

    def children(self) -> Sequence[Node]:
        return (self.left, self.right)

    def evaluate(self, ctx: ExpressionContext) -> object:
        left = self.left.evaluate(ctx)
        right = self.right.evaluate(ctx)
        if self.op == "==":
            return loose_equals(left, right)
        if self.op == "!=":
            return not loose_equals(left, right)
        return _ordered(self.op, left, right)


@dataclass(frozen=True, slots=True)
class Call(Node):
    name: str
    args: tuple[Node, ...] = ()

    def children(self) -> Sequence[Node]:
        return self.args

    def evaluate(self, ctx: ExpressionContext) -> object:
        if self.name == "always":
            return True
        if self.name == "success":
            return ctx.status.success and not ctx.status.cancelled
        if self.name == "failure":
            return ctx.status.failure
        if self.name == "cancelled":
            return ctx.status.cancelled
        values = [arg.evaluate(ctx) for arg in self.args]
        return _CALLABLES[self.name](*values)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self._text = text
        self._tokens = _tokenize(text)
        self._pos = 0

    def _peek(self) -> _Token:
        return self._tokens[self._pos]

    def _next(self) -> _Token:
        tok = self._tokens[self._pos]
        self._pos += 1
        return tok

    def _accept(self, kind: str, value: object) -> bool:
        tok = self._peek()
        if tok.kind == kind and tok.value == value:
            self._pos += 1
            return True
        return False

    def _expect(self, kind: str, value: object) -> None:
        tok = self._peek()
        if not self._accept(kind, value):
            raise ParseError(
                f"Expected {value!r} but found {tok.value!r}",
                expression=self._text,
                position=tok.pos,
            )

    def parse(self) -> Node:
        if self._peek().kind == "end":
            raise ParseError("Empty expression", expression=self._text, position=0)
        node = self._or()
        tok = self._peek()
        if tok.kind != "end":
            raise ParseError(
                f"Unexpected token {tok.value!r}", expression=self._text, position=tok.pos
            )
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("op", "||"):
            node = Or(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._unary()
        while self._accept("op", "&&"):
            node = And(node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("op", "!"):
            return Not(self._unary())
        return self._comparison()

    def _comparison(self) -> Node:
        node = self._primary()
        tok = self._peek()
        if tok.kind == "op" and tok.value in {"==", "!=", "<", "<=", ">", ">="}:
            self._next()
            node = Compare(str(tok.value), node, self._primary())
            nxt = self._peek()
            if nxt.kind == "op" and nxt.value in {"==", "!=", "<", "<=", ">", ">="}:
                raise ParseError(
                    "Chained comparisons are not supported",
                    expression=self._text,
                    position=nxt.pos,
                )
        return node

    def _primary(self) -> Node:
        tok = self._next()
        if tok.kind == "string" or tok.kind == "number":
            return Literal(tok.value)
        if tok.kind == "punct" and tok.value == "(":
            node = self._or()
            self._expect("punct", ")")
            return node
        if tok.kind == "ident":
            name = str(tok.value)
            if name == "true":
                return Literal(True)
            if name == "false":
                return Literal(False)
            if name == "null":
                return Literal(None)
            if self._accept("punct", "("):
                return self._call(name, tok.pos)
            return self._path(name)
        raise ParseError(
            f"Unexpected token {tok.value!r}", expression=self._text, position=tok.pos
        )

    def _call(self, name: str, pos: int) -> Node:
        canonical = _FUNCTIONS_BY_LOWER.get(name.lower())
        if canonical is None:
            raise ParseError(f"Unknown function {name!r}", expression=self._text, position=pos)
        args: list[Node] = []
        if not self._accept("punct", ")"):
            args.append(self._or())
            while self._accept("punct", ","):
                args.append(self._or())
            self._expect("punct", ")")
        lo, hi = _FUNCTION_ARITY[canonical]
        if len(args) < lo or (hi is not None and len(args) > hi):
            raise ParseError(
                f"Function {canonical}() called with {len(args)} argument(s)",
                expression=self._text,
                position=pos,
            )
        return Call(canonical, tuple(args))

    def _path(self, root: str) -> Node:
        segments: list[str | Node] = []
        while True:
            if self._accept("punct", "."):
                tok = self._next()
                if tok.kind == "ident":
                    segments.append(str(tok.value))
                elif tok.kind == "number" and isinstance(tok.value, float):
                    segments.append(_format_number(tok.value))
                else:
                    raise ParseError(
                        "Expected property name after '.'",
                        expression=self._text,
                        position=tok.pos,
                    )
            elif self._accept("punct", "["):
                segments.append(self._or())
                self._expect("punct", "]")
            else:
                return PathRef(root, tuple(segments))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Expression:
    """A parsed expression. Safe to cache and share between threads."""

    source: str
    root: Node

    @property
    def uses_status_function(self) -> bool:
        stack: list[Node] = [self.root]
        while stack:
            node = stack.pop()
            if isinstance(node, Call) and node.name in STATUS_FUNCTIONS:
                return True
            stack.extend(node.children())
        return False

    def evaluate(self, ctx: ExpressionContext) -> object:
        return self.root.evaluate(ctx)


def _strip_wrapper(text: str) -> str:
    stripped = text.strip()
    m = TEMPLATE_RE.fullmatch(stripped)
    if m is not None:
        return m.group(1).strip()
    return stripped


@functools.lru_cache(maxsize=1024)
def compile_expression(text: str) -> Expression:
    """Parse an expression, optionally wrapped in `${{ }}`.

    Raises:
        ParseError: on malformed syntax or an unknown function.
    """

    source = _strip_wrapper(text)
    return Expression(source=source, root=_Parser(source).parse())


def compile_condition(text: str | None, *, default: str = "success()") -> Expression:
    """Compile an `if:` gate.

    A missing condition becomes `default`. A condition that calls no status
    function is combined with it as `default && (condition)`.
    """

    default_expr = compile_expression(default)
    if text is None or not text.strip():
        return default_expr
    expr = compile_expression(text)
    if expr.uses_status_function:
        return expr
    return Expression(
        source=f"{default_expr.source} && ({expr.source})",
        root=And(default_expr.root, expr.root),
    )


def evaluate(expression: str | Expression, context: ExpressionContext) -> object:
    """Evaluate an expression and return its value."""

    expr = compile_expression(expression) if isinstance(expression, str) else expression
    return expr.evaluate(context)


def evaluate_condition(expression: str | Expression, context: ExpressionContext) -> bool:
    return truthy(evaluate(expression, context))


@dataclass(frozen=True, slots=True)
class Template:
    """A string with `${{ expr }}` segments."""

    parts: tuple[str | Expression, ...]

    @property
    def is_static(self) -> bool:
        return all(isinstance(p, str) for p in self.parts)

    def render(self, ctx: ExpressionContext) -> str:
        out: list[str] = []
        for part in self.parts:
            if isinstance(part, str):
                out.append(part)
            else:
                out.append(to_string(part.evaluate(ctx)))
        return "".join(out)


@functools.lru_cache(maxsize=1024)
def compile_template(text: str) -> Template:
    parts: list[str | Expression] = []
    last = 0
    for m in TEMPLATE_RE.finditer(text):
        if m.start() > last:
            parts.append(text[last : m.start()])
        parts.append(compile_expression(m.group(1)))
        last = m.end()
    if last < len(text):
        parts.append(text[last:])
    return Template(tuple(parts))


def interpolate(text: str, context: ExpressionContext) -> str:
    return compile_template(text).render(context)


# ---------------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------------


def truthy(value: object) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def to_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return _format_number(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def _format_number(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _to_number(value: object) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def loose_equals(left: object, right: object) -> bool:
    """Equality with the coercions workflow authors expect.

    Strings compare case-insensitively; mixed scalar types compare as numbers.
    """

    if isinstance(left, str) and isinstance(right, str):
        return left.casefold() == right.casefold()
    scalar = (str, int, float, bool, type(None))
    if isinstance(left, scalar) and isinstance(right, scalar):
        if left is None and right is None:
            return True
        return _to_number(left) == _to_number(right)
    return left == right


def _ordered(op: str, left: object, right: object) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: object = left.casefold()
        b: object = right.casefold()
    else:
        a, b = _to_number(left), _to_number(right)
    if op == "<":
        return a < b  # type: ignore[operator]
    if op == "<=":
        return a <= b  # type: ignore[operator]
    if op == ">":
        return a > b  # type: ignore[operator]
    return a >= b  # type: ignore[operator]


def _index(container: object, key: object, walked: str) -> object:
    if isinstance(container, Mapping):
        if key in container:
            return container[key]
        if isinstance(key, float) and _format_number(key) in container:
            return container[_format_number(key)]
        raise EvaluationError(f"{walked!r} has no property {key!r}")
    if isinstance(container, (list, tuple)):
        try:
            idx = int(_to_number(key))
            if idx < 0:
                raise IndexError(idx)
            return container[idx]
        except (ValueError, OverflowError, IndexError) as e:
            raise EvaluationError(f"{walked!r} has no index {key!r}") from e
    raise EvaluationError(f"Cannot read property {key!r} of {walked!r}")


def _contains(haystack: object, needle: object) -> bool:
    if isinstance(haystack, str):
        return to_string(needle).casefold() in haystack.casefold()
    if isinstance(haystack, (list, tuple)):
        return any(loose_equals(item, needle) for item in haystack)
    return False


def _starts_with(value: object, prefix: object) -> bool:
    return to_string(value).casefold().startswith(to_string(prefix).casefold())


def _ends_with(value: object, suffix: object) -> bool:
    return to_string(value).casefold().endswith(to_string(suffix).casefold())


_FORMAT_RE = re.compile(r"\{\{|\}\}|\{(\d+)\}")


def _format(fmt: object, *args: object) -> str:
    def repl(m: re.Match[str]) -> str:
        token = m.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        idx = int(m.group(1))
        if idx >= len(args):
            raise EvaluationError(f"format() has no argument {idx}")
        return to_string(args[idx])

    return _FORMAT_RE.sub(repl, to_string(fmt))


def _join(seq: object, sep: object = ",") -> str:
    if isinstance(seq, (list, tuple)):
        return to_string(sep).join(to_string(item) for item in seq)
    return to_string(seq)


_CALLABLES: dict[str, Callable[..., object]] = {
    "contains": _contains,
    "startsWith": _starts_with,
    "endsWith": _ends_with,
    "format": _format,
    "join": _join,
}
