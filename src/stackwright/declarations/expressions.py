"""
Expression evaluator for declarations.

Parses and evaluates the expressions used by parameter validators,
cardinality (count) fields, attribute values and module outputs.

Strings interpolate with ``${...}``. A string that is exactly one
``${expr}`` yields the raw typed value; ``$${`` escapes a literal ``${``.
Count and validation fields also accept a bare expression.

Expression Language:
    # References
    var.cidr_block                 module input
    param.environment              top-level parameter
    module.networking.vpc_id       another module's output
    resource.subnet[0].id          attribute of one instance
    resource.vpc.id                index 0 shorthand
    resource.subnet[*].id          list over all instances
    count.index                    index of the instance being rendered

    # Comparisons and boolean operators
    var.az_count >= 1 AND var.az_count <= 3
    param.environment == 'prod' OR var.force
    NOT var.enable_nat

    # Arithmetic, ternary, lists
    var.replicas * 2
    var.enable_nat ? 1 : 0
    ['a', 'b']

    # Built-in functions
    length(var.azs)
    lookup(var.sizes, param.environment, 't3.micro')
    join(',', resource.subnet[*].id)
    concat(var.extra, ['x'])
    contains(var.azs, 'eu-west-1a')
    coalesce(var.name, 'default')
    keys(var.tags)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterator, Protocol, Sequence

from stackwright.core.errors import ExpressionError
from stackwright.declarations.references import ABSENT, contains_reference, format_scalar


class AbsentValueError(ExpressionError):
    """Raised when an operation needs a value that expanded to nothing."""


class UnknownValueError(ExpressionError):
    """Raised when an operation needs a value only known after apply."""


class Scope(Protocol):
    def root(self, name: str) -> Any:
        """Resolve a root identifier (var, param, module, resource, count)."""
        ...


class Namespace:
    """A value whose attributes and indexes resolve lazily."""

    label = "value"

    def attr(self, name: str) -> Any:
        raise ExpressionError(f"'{self.label}' has no attribute '{name}'")

    def index(self, key: Any) -> Any:
        raise ExpressionError(f"'{self.label}' cannot be indexed")

    def splat(self) -> "Splat":
        raise ExpressionError(f"'{self.label}' does not support [*]")

    def resolve(self) -> Any:
        """Final value once an expression is fully evaluated."""
        return self


@dataclass
class Splat:
    """Intermediate result of ``x[*]``; attribute access maps over items."""

    items: list[Any]


# === Tokenizer ===

_TOKEN_SPEC = [
    ("NUMBER", r"\d+(?:\.\d+)?"),
    ("STRING", r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\""),
    ("OP", r"==|!=|>=|<=|&&|\|\||[-+*<>!?:()\[\],.]"),
    ("NAME", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("SKIP", r"\s+"),
    ("MISMATCH", r"."),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))
_KEYWORD_OPS = {"AND": "&&", "OR": "||", "NOT": "!"}
_COMPARISONS = ("==", "!=", ">=", "<=", ">", "<")


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    pos: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    for match in _TOKEN_RE.finditer(text):
        kind = match.lastgroup or "MISMATCH"
        value = match.group()
        if kind == "SKIP":
            continue
        if kind == "MISMATCH":
            raise ExpressionError(f"Unexpected character {value!r} at {match.start()} in '{text}'")
        if kind == "NAME" and value.upper() in _KEYWORD_OPS:
            kind, value = "OP", _KEYWORD_OPS[value.upper()]
        tokens.append(_Token(kind, value, match.start()))
    tokens.append(_Token("END", "", len(text)))
    return tokens


# === AST ===


@dataclass(frozen=True)
class ReferencePath:
    """Static view of a reference chain, e.g. resource.subnet[*].id."""

    root: str
    parts: tuple[Any, ...]  # attribute names (str), literal indexes (int), "*" or None

    def __str__(self) -> str:
        text = self.root
        for part in self.parts:
            if isinstance(part, str) and part != "*":
                text += f".{part}"
            else:
                text += f"[{'?' if part is None else part}]"
        return text


class Node:
    def evaluate(self, scope: Scope) -> Any:
        raise NotImplementedError

    def children(self) -> Sequence["Node"]:
        return ()

    def reference_chain(self) -> ReferencePath | None:
        return None


@dataclass(frozen=True)
class Literal(Node):
    value: Any

    def evaluate(self, scope: Scope) -> Any:
        return self.value


@dataclass(frozen=True)
class ListNode(Node):
    items: tuple[Node, ...]

    def evaluate(self, scope: Scope) -> Any:
        return [_finalize(item.evaluate(scope)) for item in self.items]

    def children(self) -> Sequence[Node]:
        return self.items


@dataclass(frozen=True)
class Ref(Node):
    name: str

    def evaluate(self, scope: Scope) -> Any:
        return scope.root(self.name)

    def reference_chain(self) -> ReferencePath | None:
        return ReferencePath(self.name, ())


@dataclass(frozen=True)
class GetAttr(Node):
    target: Node
    name: str

    def evaluate(self, scope: Scope) -> Any:
        return _get_attr(self.target.evaluate(scope), self.name)

    def children(self) -> Sequence[Node]:
        return (self.target,)

    def reference_chain(self) -> ReferencePath | None:
        base = self.target.reference_chain()
        if base is None:
            return None
        return ReferencePath(base.root, base.parts + (self.name,))


@dataclass(frozen=True)
class GetIndex(Node):
    target: Node
    key: Node

    def evaluate(self, scope: Scope) -> Any:
        return _get_index(self.target.evaluate(scope), _finalize(self.key.evaluate(scope)))

    def children(self) -> Sequence[Node]:
        return (self.target, self.key)

    def reference_chain(self) -> ReferencePath | None:
        base = self.target.reference_chain()
        if base is None:
            return None
        part = self.key.value if isinstance(self.key, Literal) else None
        return ReferencePath(base.root, base.parts + (part,))


@dataclass(frozen=True)
class SplatNode(Node):
    target: Node

    def evaluate(self, scope: Scope) -> Any:
        value = self.target.evaluate(scope)
        if value is ABSENT:
            return ABSENT
        if isinstance(value, Namespace):
            return value.splat()
        if isinstance(value, list):
            return Splat(list(value))
        if isinstance(value, Splat):
            return value
        raise ExpressionError(f"Cannot apply [*] to {_type_name(value)}")

    def children(self) -> Sequence[Node]:
        return (self.target,)

    def reference_chain(self) -> ReferencePath | None:
        base = self.target.reference_chain()
        if base is None:
            return None
        return ReferencePath(base.root, base.parts + ("*",))


@dataclass(frozen=True)
class Unary(Node):
    op: str
    operand: Node

    def evaluate(self, scope: Scope) -> Any:
        value = _known(_finalize(self.operand.evaluate(scope)), self.op)
        if self.op == "!":
            return not _truthy(value)
        if not _is_number(value):
            raise ExpressionError(f"Unary '-' needs a number, got {_type_name(value)}")
        return -value

    def children(self) -> Sequence[Node]:
        return (self.operand,)


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, scope: Scope) -> Any:
        left = _known(_finalize(self.left.evaluate(scope)), self.op)
        right = _known(_finalize(self.right.evaluate(scope)), self.op)
        return _OPERATORS[self.op](left, right)

    def children(self) -> Sequence[Node]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Logical(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, scope: Scope) -> Any:
        left = _truthy(_known(_finalize(self.left.evaluate(scope)), self.op))
        if self.op == "&&" and not left:
            return False
        if self.op == "||" and left:
            return True
        return _truthy(_known(_finalize(self.right.evaluate(scope)), self.op))

    def children(self) -> Sequence[Node]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Conditional(Node):
    condition: Node
    when_true: Node
    when_false: Node

    def evaluate(self, scope: Scope) -> Any:
        chosen = _truthy(_known(_finalize(self.condition.evaluate(scope)), "?:"))
        branch = self.when_true if chosen else self.when_false
        return branch.evaluate(scope)

    def children(self) -> Sequence[Node]:
        return (self.condition, self.when_true, self.when_false)


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: tuple[Node, ...]

    def evaluate(self, scope: Scope) -> Any:
        func = FUNCTIONS.get(self.name)
        if func is None:
            raise ExpressionError(f"Unknown function '{self.name}'")
        values = [_finalize(arg.evaluate(scope)) for arg in self.args]
        for value in values:
            if value is ABSENT:
                raise AbsentValueError(f"{self.name}() received an absent value")
        return func(*values)

    def children(self) -> Sequence[Node]:
        return self.args


# === Parser ===


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def parse(self) -> Node:
        if self._peek().kind == "END":
            raise ExpressionError("Empty expression")
        node = self._ternary()
        token = self._peek()
        if token.kind != "END":
            raise self._error(f"Unexpected '{token.value}'", token)
        return node

    # helpers
    def _peek(self) -> _Token:
        return self.tokens[self.pos]

    def _next(self) -> _Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _accept(self, *values: str) -> _Token | None:
        token = self._peek()
        if token.kind == "OP" and token.value in values:
            self.pos += 1
            return token
        return None

    def _expect(self, value: str) -> _Token:
        token = self._accept(value)
        if token is None:
            found = self._peek()
            raise self._error(f"Expected '{value}' but found '{found.value or 'end'}'", found)
        return token

    def _error(self, message: str, token: _Token) -> ExpressionError:
        return ExpressionError(f"{message} at {token.pos} in '{self.text}'")

    # grammar
    def _ternary(self) -> Node:
        condition = self._or()
        if self._accept("?"):
            when_true = self._ternary()
            self._expect(":")
            when_false = self._ternary()
            return Conditional(condition, when_true, when_false)
        return condition

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._not()
        while self._accept("&&"):
            node = Logical("&&", node, self._not())
        return node

    def _not(self) -> Node:
        if self._accept("!"):
            return Unary("!", self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        node = self._additive()
        token = self._accept(*_COMPARISONS)
        if token:
            node = Binary(token.value, node, self._additive())
        return node

    def _additive(self) -> Node:
        node = self._multiplicative()
        while True:
            token = self._accept("+", "-")
            if not token:
                return node
            node = Binary(token.value, node, self._multiplicative())

    def _multiplicative(self) -> Node:
        node = self._unary()
        while self._accept("*"):
            node = Binary("*", node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("-"):
            return Unary("-", self._unary())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._accept("."):
                token = self._next()
                if token.kind != "NAME":
                    raise self._error("Expected attribute name after '.'", token)
                node = GetAttr(node, token.value)
            elif self._accept("["):
                if self._accept("*"):
                    self._expect("]")
                    node = SplatNode(node)
                else:
                    key = self._ternary()
                    self._expect("]")
                    node = GetIndex(node, key)
            else:
                return node

    def _primary(self) -> Node:
        token = self._next()
        if token.kind == "NUMBER":
            return Literal(float(token.value) if "." in token.value else int(token.value))
        if token.kind == "STRING":
            return Literal(_unquote(token.value))
        if token.kind == "NAME":
            lowered = token.value.lower()
            if lowered == "true":
                return Literal(True)
            if lowered == "false":
                return Literal(False)
            if lowered == "null":
                return Literal(None)
            if self._accept("("):
                args: list[Node] = []
                if not self._accept(")"):
                    args.append(self._ternary())
                    while self._accept(","):
                        args.append(self._ternary())
                    self._expect(")")
                return Call(token.value, tuple(args))
            return Ref(token.value)
        if token.kind == "OP" and token.value == "(":
            node = self._ternary()
            self._expect(")")
            return node
        if token.kind == "OP" and token.value == "[":
            items: list[Node] = []
            if not self._accept("]"):
                items.append(self._ternary())
                while self._accept(","):
                    items.append(self._ternary())
                self._expect("]")
            return ListNode(tuple(items))
        raise self._error(f"Unexpected '{token.value or 'end'}'", token)


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", lambda m: {"n": "\n", "t": "\t"}.get(m.group(1), m.group(1)), body)


# === Public API ===


class Expression:
    """A parsed expression."""

    def __init__(self, text: str, root: Node) -> None:
        self.text = text
        self.root = root

    def __repr__(self) -> str:
        return f"Expression({self.text!r})"

    def evaluate(self, scope: Scope) -> Any:
        value = _finalize(self.root.evaluate(scope))
        _reject_namespaces(value, self.text)
        return value

    def references(self) -> list[ReferencePath]:
        found: list[ReferencePath] = []
        _collect_references(self.root, found)
        return found


class Template:
    """A string with zero or more ``${...}`` segments."""

    def __init__(self, text: str, parts: list[str | Expression]) -> None:
        self.text = text
        self.parts = parts

    @property
    def expressions(self) -> list[Expression]:
        return [p for p in self.parts if isinstance(p, Expression)]

    @property
    def is_single_expression(self) -> bool:
        return len(self.parts) == 1 and isinstance(self.parts[0], Expression)

    def evaluate(self, scope: Scope) -> Any:
        if self.is_single_expression:
            return self.parts[0].evaluate(scope)  # type: ignore[union-attr]

        rendered: list[str] = []
        for part in self.parts:
            if isinstance(part, str):
                rendered.append(part)
                continue
            value = part.evaluate(scope)
            if value is ABSENT:
                return ABSENT
            if isinstance(value, (list, dict)):
                raise ExpressionError(
                    f"Cannot interpolate {_type_name(value)} into a string: '{self.text}'"
                )
            rendered.append(format_scalar(value))
        return "".join(rendered)


@lru_cache(maxsize=4096)
def parse_expression(text: str) -> Expression:
    """Parse a bare expression. Raises ExpressionError."""
    return Expression(text, _Parser(text).parse())


@lru_cache(maxsize=4096)
def parse_template(text: str) -> Template:
    """Parse a string containing ``${...}`` interpolations."""
    parts: list[str | Expression] = []
    literal: list[str] = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            literal.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = _find_closing_brace(text, i + 2)
            if literal:
                parts.append("".join(literal))
                literal = []
            parts.append(parse_expression(text[i + 2 : end].strip()))
            i = end + 1
            continue
        literal.append(text[i])
        i += 1
    if literal or not parts:
        parts.append("".join(literal))
    return Template(text, parts)


def parse_bare(value: Any) -> Expression | None:
    """
    Parse a count or validation field.

    Non-strings become literals; ``"${expr}"`` and ``"expr"`` both parse
    to the inner expression.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        return Expression(repr(value), Literal(value))
    stripped = value.strip()
    if "${" in stripped:
        template = parse_template(stripped)
        if not template.is_single_expression:
            raise ExpressionError(f"Expected a single expression, got template '{value}'")
        return template.expressions[0]
    return parse_expression(stripped)


def compile_value(value: Any) -> list[Expression]:
    """Parse every template in a nested value and return its expressions."""
    found: list[Expression] = []
    for text in _iter_strings(value):
        if "${" in text:
            found.extend(parse_template(text).expressions)
    return found


def render(value: Any, scope: Scope) -> Any:
    """Evaluate all templates inside a nested attribute value."""
    if isinstance(value, str):
        if "${" not in value:
            return value
        return parse_template(value).evaluate(scope)
    if isinstance(value, dict):
        return {k: render(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, scope) for v in value]
    return value


# === Evaluation helpers ===


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_strings(item)


def _find_closing_brace(text: str, start: int) -> int:
    depth = 0
    quote: str | None = None
    i = start
    while i < len(text):
        char = text[i]
        if quote:
            if char == "\\":
                i += 2
                continue
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "{":
            depth += 1
        elif char == "}":
            if depth == 0:
                return i
            depth -= 1
        i += 1
    raise ExpressionError(f"Unterminated '${{' in '{text}'")


def _collect_references(node: Node, found: list[ReferencePath]) -> None:
    chain = node.reference_chain()
    if chain is not None:
        found.append(chain)
        # index expressions inside the chain may hold references of their own
        current = node
        while isinstance(current, (GetAttr, GetIndex, SplatNode)):
            if isinstance(current, GetIndex):
                _collect_references(current.key, found)
            current = current.target
        return
    for child in node.children():
        _collect_references(child, found)


def _finalize(value: Any) -> Any:
    if isinstance(value, Splat):
        return [_finalize(item) for item in value.items]
    if isinstance(value, Namespace):
        return value.resolve()
    return value


def _reject_namespaces(value: Any, text: str) -> None:
    if isinstance(value, Namespace):
        raise ExpressionError(f"'{text}' must select an attribute of '{value.label}'")
    if isinstance(value, list):
        for item in value:
            _reject_namespaces(item, text)


def _get_attr(value: Any, name: str) -> Any:
    if value is ABSENT:
        return ABSENT
    if isinstance(value, Namespace):
        return value.attr(name)
    if isinstance(value, Splat):
        return Splat([_get_attr(item, name) for item in value.items])
    if isinstance(value, dict):
        if name not in value:
            raise ExpressionError(f"Map has no key '{name}'")
        return value[name]
    raise ExpressionError(f"Cannot read attribute '{name}' of {_type_name(value)}")


def _get_index(value: Any, key: Any) -> Any:
    if value is ABSENT:
        return ABSENT
    if isinstance(key, str) and contains_reference(key):
        raise UnknownValueError("Index is not known until apply")
    if isinstance(value, Namespace):
        return value.index(key)
    if isinstance(value, Splat):
        value = value.items
    if isinstance(value, list):
        if not isinstance(key, int) or isinstance(key, bool):
            raise ExpressionError(f"List index must be an integer, got {_type_name(key)}")
        if key < 0 or key >= len(value):
            raise ExpressionError(f"List index {key} out of range (length {len(value)})")
        return value[key]
    if isinstance(value, dict):
        if key not in value:
            raise ExpressionError(f"Map has no key {key!r}")
        return value[key]
    raise ExpressionError(f"Cannot index {_type_name(value)}")


def _known(value: Any, op: str) -> Any:
    if value is ABSENT:
        raise AbsentValueError(f"Operator '{op}' received an absent value")
    if contains_reference(value):
        raise UnknownValueError(f"Operator '{op}' needs a value that is not known until apply")
    return value


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() not in ("", "false", "0")
    return bool(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "map"
    return type(value).__name__


def _compare(op: str) -> Callable[[Any, Any], bool]:
    funcs: dict[str, Callable[[Any, Any], bool]] = {
        ">=": lambda a, b: a >= b,
        "<=": lambda a, b: a <= b,
        ">": lambda a, b: a > b,
        "<": lambda a, b: a < b,
    }

    def ordered(a: Any, b: Any) -> bool:
        if (_is_number(a) and _is_number(b)) or (isinstance(a, str) and isinstance(b, str)):
            return funcs[op](a, b)
        raise ExpressionError(f"Cannot compare {_type_name(a)} {op} {_type_name(b)}")

    return ordered


def _add(a: Any, b: Any) -> Any:
    if _is_number(a) and _is_number(b):
        return a + b
    if isinstance(a, str) and isinstance(b, str):
        return a + b
    if isinstance(a, list) and isinstance(b, list):
        return a + b
    raise ExpressionError(f"Cannot add {_type_name(a)} and {_type_name(b)}")


def _numeric(op: str, func: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
    def apply(a: Any, b: Any) -> Any:
        if not (_is_number(a) and _is_number(b)):
            raise ExpressionError(f"Operator '{op}' needs numbers, got {_type_name(a)} and {_type_name(b)}")
        return func(a, b)

    return apply


_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "==": lambda a, b: a == b and type(a) is type(b) or (_is_number(a) and _is_number(b) and a == b),
    "!=": lambda a, b: not _OPERATORS["=="](a, b),
    ">=": _compare(">="),
    "<=": _compare("<="),
    ">": _compare(">"),
    "<": _compare("<"),
    "+": _add,
    "-": _numeric("-", lambda a, b: a - b),
    "*": _numeric("*", lambda a, b: a * b),
}


# === Built-in functions ===


def _fn_length(value: Any) -> int:
    if isinstance(value, (list, dict, str)):
        return len(value)
    raise ExpressionError(f"length() needs a list, map or string, got {_type_name(value)}")


def _fn_lookup(mapping: Any, key: Any, *default: Any) -> Any:
    if not isinstance(mapping, dict):
        raise ExpressionError(f"lookup() needs a map, got {_type_name(mapping)}")
    _known(key, "lookup")
    if key in mapping:
        return mapping[key]
    if default:
        return default[0]
    raise ExpressionError(f"lookup() found no key {key!r} and no default was given")


def _fn_join(separator: Any, items: Any) -> str:
    if not isinstance(separator, str) or not isinstance(items, list):
        raise ExpressionError("join() needs a separator string and a list")
    return separator.join(format_scalar(item) for item in items)


def _fn_concat(*lists: Any) -> list[Any]:
    result: list[Any] = []
    for item in lists:
        if not isinstance(item, list):
            raise ExpressionError(f"concat() needs lists, got {_type_name(item)}")
        result.extend(item)
    return result


def _fn_contains(items: Any, value: Any) -> bool:
    if not isinstance(items, list):
        raise ExpressionError(f"contains() needs a list, got {_type_name(items)}")
    _known(items, "contains")
    _known(value, "contains")
    return value in items


def _fn_coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    raise ExpressionError("coalesce() found no non-empty value")


def _fn_keys(mapping: Any) -> list[Any]:
    if not isinstance(mapping, dict):
        raise ExpressionError(f"keys() needs a map, got {_type_name(mapping)}")
    return sorted(mapping)


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "length": _fn_length,
    "lookup": _fn_lookup,
    "join": _fn_join,
    "concat": _fn_concat,
    "contains": _fn_contains,
    "coalesce": _fn_coalesce,
    "keys": _fn_keys,
}
