from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterator

from .errors import EvaluationError, ExpressionSyntaxError, UnsafeExpressionError

ALLOWED_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "max": max,
    "min": min,
    "round": round,
    "sqrt": math.sqrt,
}

DEFAULT_ROOTS = frozenset({"fieldValue", "formValue", "externalData"})
MAX_EXPRESSION_LENGTH = 10_000
BLOCKED_PROPERTIES = frozenset({"constructor", "prototype", "__proto__", "__defineGetter__", "__defineSetter__"})
RESERVED_WORDS = frozenset(
    {"new", "delete", "function", "class", "typeof", "void", "this", "import", "var", "let", "const", "return"}
)
LITERAL_WORDS = {"true": True, "false": False, "null": None, "undefined": None}

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<number>(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)
    |(?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    |(?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
    |(?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>+\-*/%!()\[\].,?:])
    """,
    re.VERBOSE,
)
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "0": "\0"}


@dataclass(slots=True, frozen=True)
class Token:
    kind: str
    value: Any
    position: int


@dataclass(slots=True, frozen=True)
class Literal:
    value: Any


@dataclass(slots=True, frozen=True)
class Identifier:
    name: str


@dataclass(slots=True, frozen=True)
class Member:
    object: Node
    property: str


@dataclass(slots=True, frozen=True)
class Index:
    object: Node
    index: Node


@dataclass(slots=True, frozen=True)
class Call:
    callee: Node
    arguments: tuple[Node, ...]


@dataclass(slots=True, frozen=True)
class ArrayLiteral:
    elements: tuple[Node, ...]


@dataclass(slots=True, frozen=True)
class Unary:
    operator: str
    operand: Node


@dataclass(slots=True, frozen=True)
class Binary:
    operator: str
    left: Node
    right: Node


@dataclass(slots=True, frozen=True)
class Logical:
    operator: str
    left: Node
    right: Node


@dataclass(slots=True, frozen=True)
class Conditional:
    test: Node
    consequent: Node
    alternate: Node


Node = Literal | Identifier | Member | Index | Call | ArrayLiteral | Unary | Binary | Logical | Conditional


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Validated, parsed expression that can be reused safely."""

    source: str
    tree: Node


def tokenize(source: str) -> list[Token]:
    tokens: list[Token] = []
    position = 0
    while position < len(source):
        match = _TOKEN_PATTERN.match(source, position)
        if match is None:
            raise ExpressionSyntaxError(f"unexpected character {source[position]!r} at {position} in '{source}'")
        kind = match.lastgroup or ""
        text = match.group()
        if kind == "number":
            tokens.append(Token("number", to_number(text), position))
        elif kind == "string":
            tokens.append(Token("string", _unescape(text[1:-1]), position))
        elif kind == "name":
            if text in RESERVED_WORDS:
                raise ExpressionSyntaxError(f"'{text}' is not supported in expressions")
            tokens.append(Token("name", text, position))
        elif kind == "op":
            tokens.append(Token("op", text, position))
        position = match.end()
    tokens.append(Token("eof", None, len(source)))
    return tokens


def _unescape(body: str) -> str:
    if "\\" not in body:
        return body
    return re.sub(r"\\(.)", lambda match: _ESCAPES.get(match.group(1), match.group(1)), body)


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = tokenize(source)
        self.position = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.position]

    def _error(self, message: str) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(f"{message} at {self.current.position} in '{self.source}'")

    def _accept(self, *operators: str) -> str | None:
        token = self.current
        if token.kind == "op" and token.value in operators:
            self.position += 1
            return token.value
        return None

    def _expect(self, operator: str) -> None:
        if self._accept(operator) is None:
            raise self._error(f"expected '{operator}'")

    def parse(self) -> Node:
        if self.current.kind == "eof":
            raise ExpressionSyntaxError("expression is empty")
        node = self._conditional()
        if self.current.kind != "eof":
            raise self._error(f"unexpected token {self.current.value!r}")
        return node

    def _conditional(self) -> Node:
        test = self._logical_or()
        if self._accept("?") is None:
            return test
        consequent = self._conditional()
        self._expect(":")
        alternate = self._conditional()
        return Conditional(test, consequent, alternate)

    def _logical_or(self) -> Node:
        node = self._logical_and()
        while self._accept("||"):
            node = Logical("||", node, self._logical_and())
        return node

    def _logical_and(self) -> Node:
        node = self._binary_level(0)
        while self._accept("&&"):
            node = Logical("&&", node, self._binary_level(0))
        return node

    _LEVELS = (("==", "!=", "===", "!=="), ("<", ">", "<=", ">="), ("+", "-"), ("*", "/", "%"))

    def _binary_level(self, level: int) -> Node:
        if level == len(self._LEVELS):
            return self._unary()
        node = self._binary_level(level + 1)
        while operator := self._accept(*self._LEVELS[level]):
            node = Binary(operator, node, self._binary_level(level + 1))
        return node

    def _unary(self) -> Node:
        operator = self._accept("!", "-", "+")
        if operator:
            return Unary(operator, self._unary())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._accept("."):
                token = self.current
                if token.kind != "name":
                    raise self._error("expected property name after '.'")
                self.position += 1
                node = Member(node, token.value)
            elif self._accept("["):
                node = Index(node, self._conditional())
                self._expect("]")
            elif self._accept("("):
                node = Call(node, self._arguments(")"))
            else:
                return node

    def _arguments(self, closing: str) -> tuple[Node, ...]:
        items: list[Node] = []
        if self._accept(closing):
            return ()
        while True:
            items.append(self._conditional())
            if self._accept(closing):
                return tuple(items)
            self._expect(",")

    def _primary(self) -> Node:
        token = self.current
        if token.kind in ("number", "string"):
            self.position += 1
            return Literal(token.value)
        if token.kind == "name":
            self.position += 1
            if token.value in LITERAL_WORDS:
                return Literal(LITERAL_WORDS[token.value])
            return Identifier(token.value)
        if self._accept("("):
            node = self._conditional()
            self._expect(")")
            return node
        if self._accept("["):
            return ArrayLiteral(self._arguments("]"))
        if token.kind == "eof":
            raise self._error("unexpected end of expression")
        raise self._error(f"unexpected token {token.value!r}")


@lru_cache(maxsize=1024)
def parse_expression(source: str) -> Node:
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ExpressionSyntaxError(f"expression exceeds {MAX_EXPRESSION_LENGTH} characters")
    return _Parser(source).parse()


def iter_nodes(node: Node) -> Iterator[Node]:
    yield node
    if isinstance(node, Member):
        yield from iter_nodes(node.object)
    elif isinstance(node, Index):
        yield from iter_nodes(node.object)
        yield from iter_nodes(node.index)
    elif isinstance(node, Call):
        yield from iter_nodes(node.callee)
        for argument in node.arguments:
            yield from iter_nodes(argument)
    elif isinstance(node, ArrayLiteral):
        for element in node.elements:
            yield from iter_nodes(element)
    elif isinstance(node, Unary):
        yield from iter_nodes(node.operand)
    elif isinstance(node, (Binary, Logical)):
        yield from iter_nodes(node.left)
        yield from iter_nodes(node.right)
    elif isinstance(node, Conditional):
        yield from iter_nodes(node.test)
        yield from iter_nodes(node.consequent)
        yield from iter_nodes(node.alternate)


def _is_blocked(name: str) -> bool:
    return name in BLOCKED_PROPERTIES or name.startswith("_")


def _validate_tree(tree: Node, roots: frozenset[str], function_names: set[str]) -> None:
    callees = {id(node.callee) for node in iter_nodes(tree) if isinstance(node, Call)}
    for node in iter_nodes(tree):
        if isinstance(node, Identifier):
            if id(node) in callees:
                if node.name not in function_names:
                    raise UnsafeExpressionError(f"Unsupported function call: {node.name}")
            elif node.name not in roots:
                raise UnsafeExpressionError(f"Unknown identifier: {node.name}")
        elif isinstance(node, Member) and _is_blocked(node.property):
            raise UnsafeExpressionError(f"Property '{node.property}' is not accessible")
        elif isinstance(node, Index) and isinstance(node.index, Literal) and isinstance(node.index.value, str):
            if _is_blocked(node.index.value):
                raise UnsafeExpressionError(f"Property '{node.index.value}' is not accessible")
        elif isinstance(node, Call):
            if isinstance(node.callee, Member):
                if node.callee.property not in ALL_SAFE_METHODS:
                    raise UnsafeExpressionError(f"Method '{node.callee.property}' is not allowed")
            elif not isinstance(node.callee, Identifier):
                raise UnsafeExpressionError("Unsupported function call")


def _resolve_eval_functions(extra_functions: dict[str, Callable[..., Any]] | None = None) -> dict[str, Callable[..., Any]]:
    functions = {**ALLOWED_FUNCTIONS}
    if extra_functions:
        functions.update(extra_functions)
    return functions


def compile_expression(
    expression: str,
    functions: dict[str, Callable[..., Any]] | None = None,
    roots: frozenset[str] = DEFAULT_ROOTS,
) -> ExpressionProgram:
    resolved_functions = _resolve_eval_functions(functions)
    tree = parse_expression(expression.strip())
    _validate_tree(tree, roots, set(resolved_functions))
    return ExpressionProgram(source=expression, tree=tree)


def evaluate_program(
    program: ExpressionProgram,
    scope: dict[str, Any],
    functions: dict[str, Callable[..., Any]] | None = None,
) -> Any:
    evaluator = _Evaluator(scope, _resolve_eval_functions(functions), program.source)
    try:
        return evaluator.evaluate(program.tree)
    except EvaluationError:
        raise
    except Exception as exc:
        raise EvaluationError(f"failed to evaluate '{program.source}': {exc}") from exc


def safe_eval(
    expression: str,
    scope: dict[str, Any],
    extra_functions: dict[str, Callable[..., Any]] | None = None,
) -> Any:
    program = compile_expression(expression, functions=extra_functions, roots=DEFAULT_ROOTS | frozenset(scope))
    return evaluate_program(program, scope, functions=extra_functions)


def is_truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(to_string(item) for item in value)
    return str(value)


def to_number(value: Any) -> float | int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if number.is_integer() and "." not in text and "e" not in text.lower() else number
    return None


def loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, (int, float, str)) and isinstance(right, (int, float, str)):
        left_number, right_number = to_number(left), to_number(right)
        if left_number is None or right_number is None:
            return False
        return left_number == right_number
    return left == right


def strict_equals(left: Any, right: Any) -> bool:
    numeric = (int, float)
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, numeric) and isinstance(right, numeric):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def compare_values(operator: str, left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, str) and isinstance(right, str):
        pair: tuple[Any, Any] = (left, right)
    else:
        left_number, right_number = to_number(left), to_number(right)
        if left_number is None or right_number is None:
            return False
        pair = (left_number, right_number)
    if operator == "<":
        return pair[0] < pair[1]
    if operator == ">":
        return pair[0] > pair[1]
    if operator == "<=":
        return pair[0] <= pair[1]
    return pair[0] >= pair[1]


def _js_slice(value: Any, start: Any = 0, end: Any = None) -> Any:
    return value[int(start) : None if end is None else int(end)]


def _substring(value: str, start: Any = 0, end: Any = None) -> str:
    first = max(0, int(start))
    last = len(value) if end is None else max(0, int(end))
    if first > last:
        first, last = last, first
    return value[first:last]


def _split(value: str, separator: Any = None) -> list[str]:
    if separator is None:
        return [value]
    if separator == "":
        return list(value)
    return value.split(to_string(separator))


def _index_of(value: Any, item: Any) -> int:
    if isinstance(value, str):
        return value.find(to_string(item))
    for position, candidate in enumerate(value):
        if strict_equals(candidate, item):
            return position
    return -1


STRING_METHODS: dict[str, Callable[..., Any]] = {
    "charAt": lambda value, index=0: value[int(index)] if 0 <= int(index) < len(value) else "",
    "concat": lambda value, *parts: value + "".join(to_string(part) for part in parts),
    "endsWith": lambda value, suffix: value.endswith(to_string(suffix)),
    "includes": lambda value, part: to_string(part) in value,
    "indexOf": _index_of,
    "padEnd": lambda value, width, fill=" ": value.ljust(int(width), to_string(fill)[:1] or " "),
    "padStart": lambda value, width, fill=" ": value.rjust(int(width), to_string(fill)[:1] or " "),
    "repeat": lambda value, count: value * int(count),
    "replace": lambda value, old, new: value.replace(to_string(old), to_string(new), 1),
    "slice": _js_slice,
    "split": _split,
    "startsWith": lambda value, prefix: value.startswith(to_string(prefix)),
    "substring": _substring,
    "toLowerCase": lambda value: value.lower(),
    "toString": to_string,
    "toUpperCase": lambda value: value.upper(),
    "trim": lambda value: value.strip(),
    "trimEnd": lambda value: value.rstrip(),
    "trimStart": lambda value: value.lstrip(),
}
NUMBER_METHODS: dict[str, Callable[..., Any]] = {
    "toFixed": lambda value, digits=0: f"{value:.{int(digits)}f}",
    "toString": to_string,
}
ARRAY_METHODS: dict[str, Callable[..., Any]] = {
    "concat": lambda value, *parts: [*value, *(item for part in parts for item in (part if isinstance(part, list) else [part]))],
    "includes": lambda value, item: any(strict_equals(candidate, item) for candidate in value),
    "indexOf": _index_of,
    "join": lambda value, separator=",": to_string(separator).join(to_string(item) for item in value),
    "slice": _js_slice,
    "toString": to_string,
}
ALL_SAFE_METHODS = frozenset(STRING_METHODS) | frozenset(NUMBER_METHODS) | frozenset(ARRAY_METHODS)


def get_property(value: Any, name: Any) -> Any:
    if value is None:
        return None
    if isinstance(name, str) and _is_blocked(name):
        raise UnsafeExpressionError(f"Property '{name}' is not accessible")
    if isinstance(value, dict):
        return value.get(name if isinstance(name, str) else to_string(name))
    if isinstance(value, (str, list, tuple)):
        if name == "length":
            return len(value)
        index = to_number(name)
        if isinstance(index, int) and not isinstance(index, bool) and 0 <= index < len(value):
            return value[index]
    return None


class _Evaluator:
    def __init__(self, scope: dict[str, Any], functions: dict[str, Callable[..., Any]], source: str) -> None:
        self.scope = scope
        self.functions = functions
        self.source = source

    def evaluate(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Identifier):
            return self.scope.get(node.name)
        if isinstance(node, Member):
            return get_property(self.evaluate(node.object), node.property)
        if isinstance(node, Index):
            return get_property(self.evaluate(node.object), self.evaluate(node.index))
        if isinstance(node, Logical):
            left = self.evaluate(node.left)
            if node.operator == "&&":
                return self.evaluate(node.right) if is_truthy(left) else left
            return left if is_truthy(left) else self.evaluate(node.right)
        if isinstance(node, Conditional):
            return self.evaluate(node.consequent if is_truthy(self.evaluate(node.test)) else node.alternate)
        if isinstance(node, Unary):
            return self._unary(node.operator, self.evaluate(node.operand))
        if isinstance(node, Binary):
            return self._binary(node.operator, self.evaluate(node.left), self.evaluate(node.right))
        if isinstance(node, ArrayLiteral):
            return [self.evaluate(element) for element in node.elements]
        if isinstance(node, Call):
            return self._call(node)
        raise EvaluationError(f"Unknown node type: {type(node).__name__}")

    def _unary(self, operator: str, operand: Any) -> Any:
        if operator == "!":
            return not is_truthy(operand)
        number = to_number(operand)
        if number is None:
            return None
        return -number if operator == "-" else number

    def _binary(self, operator: str, left: Any, right: Any) -> Any:
        if operator == "===":
            return strict_equals(left, right)
        if operator == "!==":
            return not strict_equals(left, right)
        if operator == "==":
            return loose_equals(left, right)
        if operator == "!=":
            return not loose_equals(left, right)
        if operator in ("<", ">", "<=", ">="):
            return compare_values(operator, left, right)
        if operator == "+" and (isinstance(left, str) or isinstance(right, str)):
            return to_string(left) + to_string(right)
        left_number, right_number = to_number(left), to_number(right)
        if left_number is None or right_number is None:
            return None
        if operator == "+":
            return left_number + right_number
        if operator == "-":
            return left_number - right_number
        if operator == "*":
            return left_number * right_number
        if right_number == 0:
            return None
        if operator == "/":
            quotient = left_number / right_number
            return int(quotient) if quotient.is_integer() and abs(quotient) < 2**53 else quotient
        remainder = math.fmod(left_number, right_number)
        if isinstance(left_number, int) and isinstance(right_number, int):
            return int(remainder)
        return remainder

    def _call(self, node: Call) -> Any:
        arguments = [self.evaluate(argument) for argument in node.arguments]
        if isinstance(node.callee, Identifier):
            function = self.functions.get(node.callee.name)
            if function is None:
                raise UnsafeExpressionError(f"Unsupported function call: {node.callee.name}")
            return function(*arguments)
        if not isinstance(node.callee, Member):
            raise UnsafeExpressionError("Unsupported function call")
        target = self.evaluate(node.callee.object)
        method_name = node.callee.property
        if isinstance(target, str):
            methods = STRING_METHODS
        elif isinstance(target, (int, float)) and not isinstance(target, bool):
            methods = NUMBER_METHODS
        elif isinstance(target, list):
            methods = ARRAY_METHODS
        else:
            raise EvaluationError(f"Method '{method_name}' is not available on {type(target).__name__}")
        method = methods.get(method_name)
        if method is None:
            raise UnsafeExpressionError(f"Method '{method_name}' is not allowed")
        return method(target, *arguments)
