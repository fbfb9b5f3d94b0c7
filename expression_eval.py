"""Sandboxed evaluator for JavaScript-like form expressions.

Expressions are tokenized and parsed by hand into a small AST, then walked by a
tree evaluator. Nothing is ever handed to Python's ``eval``. The grammar covers
literals, member access, whitelisted method calls, ``new Date(...)``, unary,
arithmetic, comparison, equality, logical and ternary operators. Anything that
could mutate state or reach outside the bindings is rejected.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Set, Tuple

MAX_EXPRESSION_LENGTH = 2000
MAX_DEPTH = 64
MAX_REPEAT = 1000

Clock = Callable[[], datetime]


@dataclass
class ExpressionError(Exception):
    code: str
    message: str
    position: int | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (position={self.position})" if self.position is not None else base


class ExpressionSyntaxError(ExpressionError):
    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__("EXPR_SYNTAX_ERROR", message, position)


class ExpressionDepthError(ExpressionError):
    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__("EXPR_DEPTH_EXCEEDED", message, position)


class UndeclaredIdentifierError(ExpressionError):
    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__("EXPR_UNDECLARED_IDENTIFIER", message, position)


class ProhibitedOperationError(ExpressionError):
    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__("EXPR_PROHIBITED", message, position)


class ExpressionTypeError(ExpressionError):
    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__("EXPR_TYPE_ERROR", message, position)


# -- tokens -----------------------------------------------------------------


@dataclass(frozen=True)
class Token:
    kind: str  # num | str | ident | punct | eof
    value: Any
    pos: int


_PUNCTUATORS = (
    "===", "!==", "...", "**=",
    "==", "!=", "<=", ">=", "&&", "||", "??", "?.", "=>", "++", "--",
    "+=", "-=", "*=", "/=", "%=", "**",
    "+", "-", "*", "/", "%", "<", ">", "!", "?", ":", ".", ",",
    "(", ")", "[", "]", "{", "}", "=", ";", "&", "|", "^", "~",
)

_PROHIBITED_PUNCT = {
    "=": "Assignment is not allowed",
    "+=": "Assignment is not allowed",
    "-=": "Assignment is not allowed",
    "*=": "Assignment is not allowed",
    "/=": "Assignment is not allowed",
    "%=": "Assignment is not allowed",
    "**=": "Assignment is not allowed",
    "++": "Increment is not allowed",
    "--": "Decrement is not allowed",
    "=>": "Arrow functions are not allowed",
    "...": "Spread syntax is not allowed",
    ";": "Multiple statements are not allowed",
    "{": "Object literals and blocks are not allowed",
    "}": "Object literals and blocks are not allowed",
}

_UNSUPPORTED_PUNCT = {"&", "|", "^", "~", "**"}

_PROHIBITED_WORDS = {
    "function", "delete", "this", "var", "let", "const", "return", "class",
    "import", "export", "in", "instanceof", "void", "yield", "await", "async",
    "with", "while", "for", "do", "if", "else", "throw", "try", "catch",
    "super", "switch", "case", "default", "debugger",
}

_BLOCKED_PROPERTIES = {
    "constructor",
    "prototype",
    "__proto__",
    "__defineGetter__",
    "__defineSetter__",
    "__lookupGetter__",
    "__lookupSetter__",
}

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch in "_$"


def _is_ident_part(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    idx = 0
    size = len(source)
    while idx < size:
        ch = source[idx]
        if ch.isspace():
            idx += 1
            continue
        if ch.isdigit() or (ch == "." and idx + 1 < size and source[idx + 1].isdigit()):
            start = idx
            while idx < size and source[idx].isdigit():
                idx += 1
            if idx < size and source[idx] == ".":
                idx += 1
                while idx < size and source[idx].isdigit():
                    idx += 1
            if idx < size and source[idx] in "eE":
                idx += 1
                if idx < size and source[idx] in "+-":
                    idx += 1
                if idx >= size or not source[idx].isdigit():
                    raise ExpressionSyntaxError("Malformed number exponent", start)
                while idx < size and source[idx].isdigit():
                    idx += 1
            text = source[start:idx]
            if idx < size and _is_ident_start(source[idx]):
                raise ExpressionSyntaxError("Identifier directly after number", idx)
            is_float = any(c in text for c in ".eE")
            tokens.append(Token("num", float(text) if is_float else int(text), start))
            continue
        if ch in ("'", '"'):
            start = idx
            idx += 1
            chars: List[str] = []
            while True:
                if idx >= size:
                    raise ExpressionSyntaxError("Unterminated string", start)
                cur = source[idx]
                if cur == ch:
                    idx += 1
                    break
                if cur == "\n":
                    raise ExpressionSyntaxError("Unterminated string", start)
                if cur == "\\":
                    idx += 1
                    if idx >= size:
                        raise ExpressionSyntaxError("Unterminated string", start)
                    esc = source[idx]
                    if esc == "u":
                        digits = source[idx + 1 : idx + 5]
                        if len(digits) != 4 or any(c not in "0123456789abcdefABCDEF" for c in digits):
                            raise ExpressionSyntaxError("Invalid unicode escape", idx)
                        chars.append(chr(int(digits, 16)))
                        idx += 5
                        continue
                    chars.append(_ESCAPES.get(esc, esc))
                    idx += 1
                    continue
                chars.append(cur)
                idx += 1
            tokens.append(Token("str", "".join(chars), start))
            continue
        if ch == "`":
            raise ProhibitedOperationError("Template literals are not allowed", idx)
        if _is_ident_start(ch):
            start = idx
            while idx < size and _is_ident_part(source[idx]):
                idx += 1
            word = source[start:idx]
            if word in _PROHIBITED_WORDS:
                raise ProhibitedOperationError(f"'{word}' is not allowed", start)
            tokens.append(Token("ident", word, start))
            continue
        for punct in _PUNCTUATORS:
            if source.startswith(punct, idx):
                # "a ?.5 : b" is a ternary, not optional chaining
                if punct == "?." and idx + 2 < size and source[idx + 2].isdigit():
                    punct = "?"
                if punct in _PROHIBITED_PUNCT:
                    raise ProhibitedOperationError(_PROHIBITED_PUNCT[punct], idx)
                if punct in _UNSUPPORTED_PUNCT:
                    raise ExpressionSyntaxError(f"Unsupported operator '{punct}'", idx)
                tokens.append(Token("punct", punct, idx))
                idx += len(punct)
                break
        else:
            raise ExpressionSyntaxError(f"Unexpected character {ch!r}", idx)
    tokens.append(Token("eof", None, size))
    return tokens


# -- AST --------------------------------------------------------------------


@dataclass(frozen=True)
class Node:
    pos: int


@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class Identifier(Node):
    name: str


@dataclass(frozen=True)
class ArrayLiteral(Node):
    elements: Tuple[Node, ...]


@dataclass(frozen=True)
class Member(Node):
    obj: Node
    prop: str | None
    computed: Node | None
    optional: bool = False


@dataclass(frozen=True)
class Call(Node):
    callee: Member
    args: Tuple[Node, ...]


@dataclass(frozen=True)
class NewDate(Node):
    args: Tuple[Node, ...]


@dataclass(frozen=True)
class Unary(Node):
    op: str
    operand: Node


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Logical(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Conditional(Node):
    test: Node
    consequent: Node
    alternate: Node


class _Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.idx = 0
        self.depth = 0

    def peek(self) -> Token:
        return self.tokens[self.idx]

    def advance(self) -> Token:
        token = self.tokens[self.idx]
        self.idx += 1
        return token

    def at(self, value: str) -> bool:
        token = self.peek()
        return token.kind == "punct" and token.value == value

    def accept(self, value: str) -> Token | None:
        if self.at(value):
            return self.advance()
        return None

    def expect(self, value: str) -> Token:
        token = self.peek()
        if token.kind != "punct" or token.value != value:
            raise ExpressionSyntaxError(f"Expected '{value}'", token.pos)
        return self.advance()

    def enter(self, pos: int) -> None:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise ExpressionDepthError("Expression nesting too deep", pos)

    def leave(self) -> None:
        self.depth -= 1

    def parse(self) -> Node:
        if self.peek().kind == "eof":
            raise ExpressionSyntaxError("Empty expression", 0)
        node = self.expression()
        token = self.peek()
        if token.kind != "eof":
            raise ExpressionSyntaxError(f"Unexpected token {token.value!r}", token.pos)
        return node

    def expression(self) -> Node:
        token = self.peek()
        self.enter(token.pos)
        try:
            return self.conditional()
        finally:
            self.leave()

    def conditional(self) -> Node:
        test = self.coalesce()
        token = self.accept("?")
        if token is None:
            return test
        consequent = self.expression()
        self.expect(":")
        alternate = self.expression()
        return Conditional(token.pos, test, consequent, alternate)

    def coalesce(self) -> Node:
        left = self.logical_or()
        while self.at("??"):
            token = self.advance()
            left = Logical(token.pos, "??", left, self.logical_or())
        return left

    def logical_or(self) -> Node:
        left = self.logical_and()
        while self.at("||"):
            token = self.advance()
            left = Logical(token.pos, "||", left, self.logical_and())
        return left

    def logical_and(self) -> Node:
        left = self.equality()
        while self.at("&&"):
            token = self.advance()
            left = Logical(token.pos, "&&", left, self.equality())
        return left

    def _binary(self, ops: Tuple[str, ...], operand: Callable[[], Node]) -> Node:
        left = operand()
        while True:
            token = self.peek()
            if token.kind == "punct" and token.value in ops:
                self.advance()
                left = Binary(token.pos, token.value, left, operand())
                continue
            return left

    def equality(self) -> Node:
        return self._binary(("==", "!=", "===", "!=="), self.relational)

    def relational(self) -> Node:
        return self._binary(("<", "<=", ">", ">="), self.additive)

    def additive(self) -> Node:
        return self._binary(("+", "-"), self.multiplicative)

    def multiplicative(self) -> Node:
        return self._binary(("*", "/", "%"), self.unary)

    def unary(self) -> Node:
        token = self.peek()
        if token.kind == "punct" and token.value in ("!", "-", "+"):
            self.advance()
            self.enter(token.pos)
            try:
                return Unary(token.pos, token.value, self.unary())
            finally:
                self.leave()
        if token.kind == "ident" and token.value == "typeof":
            self.advance()
            self.enter(token.pos)
            try:
                return Unary(token.pos, "typeof", self.unary())
            finally:
                self.leave()
        return self.postfix()

    def _property_name(self) -> str:
        token = self.peek()
        if token.kind != "ident":
            raise ExpressionSyntaxError("Expected property name", token.pos)
        self.advance()
        return token.value

    def postfix(self) -> Node:
        node = self.primary()
        while True:
            token = self.peek()
            if self.accept("."):
                node = Member(token.pos, node, self._property_name(), None)
                continue
            if self.accept("?."):
                if self.at("("):
                    raise ProhibitedOperationError("Optional calls are not allowed", token.pos)
                if self.accept("["):
                    computed = self.expression()
                    self.expect("]")
                    node = Member(token.pos, node, None, computed, optional=True)
                    continue
                node = Member(token.pos, node, self._property_name(), None, optional=True)
                continue
            if self.accept("["):
                computed = self.expression()
                self.expect("]")
                node = Member(token.pos, node, None, computed)
                continue
            if self.at("("):
                if not isinstance(node, Member):
                    raise ProhibitedOperationError("Only method calls are allowed", token.pos)
                node = Call(token.pos, node, self.arguments())
                continue
            return node

    def arguments(self) -> Tuple[Node, ...]:
        self.expect("(")
        args: List[Node] = []
        if not self.at(")"):
            args.append(self.expression())
            while self.accept(","):
                args.append(self.expression())
        self.expect(")")
        return tuple(args)

    def primary(self) -> Node:
        token = self.advance()
        if token.kind in ("num", "str"):
            return Literal(token.pos, token.value)
        if token.kind == "ident":
            word = token.value
            if word == "true":
                return Literal(token.pos, True)
            if word == "false":
                return Literal(token.pos, False)
            if word in ("null", "undefined"):
                return Literal(token.pos, None)
            if word == "NaN":
                return Literal(token.pos, math.nan)
            if word == "Infinity":
                return Literal(token.pos, math.inf)
            if word == "new":
                target = self.peek()
                if target.kind != "ident" or target.value != "Date":
                    raise ProhibitedOperationError("Only 'new Date(...)' is allowed", token.pos)
                self.advance()
                args = self.arguments() if self.at("(") else ()
                return NewDate(token.pos, args)
            return Identifier(token.pos, word)
        if token.kind == "punct" and token.value == "(":
            node = self.expression()
            self.expect(")")
            return node
        if token.kind == "punct" and token.value == "[":
            elements: List[Node] = []
            if not self.at("]"):
                elements.append(self.expression())
                while self.accept(","):
                    if self.at("]"):
                        break
                    elements.append(self.expression())
            self.expect("]")
            return ArrayLiteral(token.pos, tuple(elements))
        if token.kind == "eof":
            raise ExpressionSyntaxError("Unexpected end of expression", token.pos)
        raise ExpressionSyntaxError(f"Unexpected token {token.value!r}", token.pos)


@lru_cache(maxsize=512)
def _parse_cached(expression: str) -> Node:
    return _Parser(tokenize(expression)).parse()


def parse_expression(expression: str) -> Node:
    if not isinstance(expression, str):
        raise ExpressionSyntaxError("Expression must be a string", None)
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionSyntaxError(
            f"Expression longer than {MAX_EXPRESSION_LENGTH} characters", MAX_EXPRESSION_LENGTH
        )
    return _parse_cached(expression)


# -- JS value semantics -----------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


def _is_inf(value: Any) -> bool:
    return isinstance(value, float) and math.isinf(value)


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _epoch_ms(value: datetime) -> int:
    return int(_utc(value).timestamp() * 1000)


def is_truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if _is_number(value):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


def to_number(value: Any) -> float | int:
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1 if value else 0
    if _is_number(value):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0
        if text in ("Infinity", "+Infinity"):
            return math.inf
        if text == "-Infinity":
            return -math.inf
        lowered = text.lower()
        if "_" in text or lowered.lstrip("+-") in ("nan", "inf", "infinity"):
            return math.nan
        try:
            if lowered.startswith("0x"):
                return int(text, 16)
            number = float(text)
        except ValueError:
            return math.nan
        if number.is_integer() and text.lstrip("+-").isdigit():
            return int(number)
        return number
    if isinstance(value, datetime):
        return _epoch_ms(value)
    if isinstance(value, list):
        if not value:
            return 0
        if len(value) == 1:
            return to_number(value[0])
    return math.nan


def _format_number(value: float | int) -> str:
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def to_js_string(value: Any) -> str:
    """String conversion following JavaScript's ``String(value)``."""
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if _is_number(value):
        return _format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return _utc(value).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, list):
        return ",".join("" if item is None else to_js_string(item) for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    return str(value)


def type_of(value: Any) -> str:
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def strict_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, (list, dict)) or isinstance(right, (list, dict)):
        return left is right
    if isinstance(left, datetime) and isinstance(right, datetime):
        return left is right
    return False


def loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if type_of(left) == type_of(right) and not isinstance(left, (list, dict, datetime)):
        return strict_equals(left, right)
    if isinstance(left, (list, dict, datetime)) and isinstance(right, (list, dict, datetime)):
        return left is right
    if isinstance(left, (list, dict, datetime)):
        left = to_js_string(left) if not isinstance(left, datetime) else _epoch_ms(left)
    if isinstance(right, (list, dict, datetime)):
        right = to_js_string(right) if not isinstance(right, datetime) else _epoch_ms(right)
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return to_number(left) == to_number(right)


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left
        b: Any = right
    else:
        a = to_number(left)
        b = to_number(right)
        if _is_nan(a) or _is_nan(b):
            return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def _arith(op: str, left: Any, right: Any, pos: int) -> Any:
    if op == "+":
        if isinstance(left, (str, list, dict, datetime)) or isinstance(right, (str, list, dict, datetime)):
            return to_js_string(left) + to_js_string(right)
        return to_number(left) + to_number(right)
    a = to_number(left)
    b = to_number(right)
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op in ("/", "%") and b == 0:
        return None
    if _is_nan(a) or _is_nan(b):
        return math.nan
    if op == "/":
        return a / b
    if _is_inf(a):
        return math.nan
    if _is_inf(b):
        return a
    return math.fmod(a, b) if isinstance(a, float) or isinstance(b, float) else int(math.fmod(a, b))


# -- methods ----------------------------------------------------------------


def _int_arg(args: List[Any], idx: int, default: int) -> int:
    if idx >= len(args) or args[idx] is None:
        return default
    number = to_number(args[idx])
    if isinstance(number, float):
        if math.isnan(number):
            return 0
        if math.isinf(number):
            return 2**31 if number > 0 else -(2**31)
    return int(number)


def _str_arg(args: List[Any], idx: int, default: str = "undefined") -> str:
    if idx >= len(args):
        return default
    return to_js_string(args[idx])


def _substring(value: str, args: List[Any]) -> str:
    start = max(0, min(_int_arg(args, 0, 0), len(value)))
    end = max(0, min(_int_arg(args, 1, len(value)), len(value)))
    if start > end:
        start, end = end, start
    return value[start:end]


def _pad(value: str, args: List[Any], left: bool) -> str:
    width = _int_arg(args, 0, 0)
    if width > MAX_REPEAT:
        raise ExpressionTypeError("Padding length too large")
    fill = _str_arg(args, 1, " ")
    if width <= len(value) or fill == "":
        return value
    pad = (fill * width)[: width - len(value)]
    return pad + value if left else value + pad


def _repeat(value: str, args: List[Any]) -> str:
    count = _int_arg(args, 0, 0)
    if count < 0 or count > MAX_REPEAT:
        raise ExpressionTypeError("Invalid repeat count")
    return value * count


def _split(value: str, args: List[Any]) -> List[str]:
    if not args or args[0] is None:
        return [value]
    sep = to_js_string(args[0])
    parts = list(value) if sep == "" else value.split(sep)
    if len(args) > 1 and args[1] is not None:
        parts = parts[: max(0, _int_arg(args, 1, len(parts)))]
    return parts


def _index_of(items: List[Any], needle: Any) -> int:
    for idx, item in enumerate(items):
        if strict_equals(item, needle):
            return idx
    return -1


def _last_index_of(items: List[Any], needle: Any) -> int:
    for idx in range(len(items) - 1, -1, -1):
        if strict_equals(items[idx], needle):
            return idx
    return -1


def _at(items: Any, args: List[Any]) -> Any:
    idx = _int_arg(args, 0, 0)
    if idx < 0:
        idx += len(items)
    if idx < 0 or idx >= len(items):
        return None
    return items[idx]


def _to_fixed(value: Any, args: List[Any]) -> str:
    digits = _int_arg(args, 0, 0)
    if digits < 0 or digits > 100:
        raise ExpressionTypeError("toFixed() digits out of range")
    number = to_number(value)
    if isinstance(number, float) and not math.isfinite(number):
        return _format_number(number)
    return f"{number:.{digits}f}"


_STRING_METHODS: Dict[str, Callable[[str, List[Any]], Any]] = {
    "toLowerCase": lambda s, a: s.lower(),
    "toUpperCase": lambda s, a: s.upper(),
    "trim": lambda s, a: s.strip(),
    "trimStart": lambda s, a: s.lstrip(),
    "trimEnd": lambda s, a: s.rstrip(),
    "includes": lambda s, a: _str_arg(a, 0) in s,
    "startsWith": lambda s, a: s.startswith(_str_arg(a, 0)),
    "endsWith": lambda s, a: s.endswith(_str_arg(a, 0)),
    "indexOf": lambda s, a: s.find(_str_arg(a, 0)),
    "lastIndexOf": lambda s, a: s.rfind(_str_arg(a, 0)),
    "charAt": lambda s, a: _at(s, a) or "" if _int_arg(a, 0, 0) >= 0 else "",
    "at": lambda s, a: _at(s, a),
    "slice": lambda s, a: s[_int_arg(a, 0, 0) : _int_arg(a, 1, len(s))],
    "substring": _substring,
    "split": _split,
    "replace": lambda s, a: s.replace(_str_arg(a, 0), _str_arg(a, 1), 1),
    "replaceAll": lambda s, a: s.replace(_str_arg(a, 0), _str_arg(a, 1)),
    "padStart": lambda s, a: _pad(s, a, True),
    "padEnd": lambda s, a: _pad(s, a, False),
    "repeat": _repeat,
    "concat": lambda s, a: s + "".join(to_js_string(x) for x in a),
    "toString": lambda s, a: s,
}

_ARRAY_METHODS: Dict[str, Callable[[List[Any], List[Any]], Any]] = {
    "includes": lambda xs, a: any(
        strict_equals(x, a[0] if a else None)
        or (_is_number(x) and _is_number(a[0] if a else None) and _is_nan(x) and _is_nan(a[0]))
        for x in xs
    ),
    "indexOf": lambda xs, a: _index_of(xs, a[0] if a else None),
    "lastIndexOf": lambda xs, a: _last_index_of(xs, a[0] if a else None),
    "join": lambda xs, a: (_str_arg(a, 0, ",") if a and a[0] is not None else ",").join(
        "" if x is None else to_js_string(x) for x in xs
    ),
    "slice": lambda xs, a: list(xs[_int_arg(a, 0, 0) : _int_arg(a, 1, len(xs))]),
    "concat": lambda xs, a: list(xs) + [y for x in a for y in (x if isinstance(x, list) else [x])],
    "at": _at,
    "toString": lambda xs, a: to_js_string(xs),
}

_NUMBER_METHODS: Dict[str, Callable[[Any, List[Any]], Any]] = {
    "toFixed": _to_fixed,
    "toString": lambda n, a: _format_number(n),
}

_DATE_METHODS: Dict[str, Callable[[datetime, List[Any]], Any]] = {
    "getTime": lambda d, a: _epoch_ms(d),
    "valueOf": lambda d, a: _epoch_ms(d),
    "getFullYear": lambda d, a: _utc(d).year,
    "getMonth": lambda d, a: _utc(d).month - 1,
    "getDate": lambda d, a: _utc(d).day,
    "getDay": lambda d, a: (_utc(d).weekday() + 1) % 7,
    "getHours": lambda d, a: _utc(d).hour,
    "getMinutes": lambda d, a: _utc(d).minute,
    "getSeconds": lambda d, a: _utc(d).second,
    "toISOString": lambda d, a: _utc(d).strftime("%Y-%m-%dT%H:%M:%S.") + f"{_utc(d).microsecond // 1000:03d}Z",
    "toString": lambda d, a: to_js_string(d),
}


def _check_property(name: str, pos: int) -> None:
    if name in _BLOCKED_PROPERTIES or name.startswith("__"):
        raise ProhibitedOperationError(f"Access to '{name}' is not allowed", pos)


def _get_property(obj: Any, name: Any, pos: int) -> Any:
    if obj is None:
        raise ExpressionTypeError(f"Cannot read properties of null (reading '{to_js_string(name)}')", pos)
    if isinstance(obj, (list, str)):
        if name == "length":
            return len(obj)
        if _is_number(name) or (isinstance(name, str) and name.isdigit()):
            idx = to_number(name)
            if isinstance(idx, float) and not idx.is_integer():
                return None
            idx = int(idx)
            return obj[idx] if 0 <= idx < len(obj) else None
        key = to_js_string(name)
        _check_property(key, pos)
        return None
    key = to_js_string(name)
    _check_property(key, pos)
    if isinstance(obj, dict):
        return obj.get(key)
    return None


def _call_method(obj: Any, name: str, args: List[Any], pos: int) -> Any:
    _check_property(name, pos)
    if obj is None:
        raise ExpressionTypeError(f"Cannot read properties of null (reading '{name}')", pos)
    if isinstance(obj, str):
        table: Dict[str, Callable[[Any, List[Any]], Any]] = _STRING_METHODS
    elif isinstance(obj, list):
        table = _ARRAY_METHODS
    elif isinstance(obj, datetime):
        table = _DATE_METHODS
    elif _is_number(obj):
        table = _NUMBER_METHODS
    elif isinstance(obj, bool):
        table = {"toString": lambda b, a: to_js_string(b)}
    else:
        table = {}
    method = table.get(name)
    if method is None:
        raise ProhibitedOperationError(f"Method '{name}' is not allowed on {type_of(obj)}", pos)
    return method(obj, args)


def _make_date(args: List[Any], clock: Clock | None, pos: int) -> datetime:
    if not args:
        now = clock() if clock is not None else datetime.now(timezone.utc)
        return _utc(now)
    if len(args) == 1:
        value = args[0]
        if isinstance(value, datetime):
            return _utc(value)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        if _is_number(value):
            if not math.isfinite(value):
                raise ExpressionTypeError("Invalid Date", pos)
            return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=value)
        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                return _utc(datetime.fromisoformat(text))
            except ValueError as exc:
                raise ExpressionTypeError("Invalid Date", pos) from exc
        raise ExpressionTypeError("Invalid Date", pos)
    parts = [_int_arg(args, idx, 0) for idx in range(min(len(args), 7))]
    year, month = parts[0], parts[1]
    rest = parts[2:] + [0] * (5 - len(parts[2:]))
    day = rest[0] if len(parts) > 2 else 1
    try:
        base = datetime(year + month // 12, month % 12 + 1, 1, tzinfo=timezone.utc)
    except ValueError as exc:
        raise ExpressionTypeError("Invalid Date", pos) from exc
    return base + timedelta(days=day - 1, hours=rest[1], minutes=rest[2], seconds=rest[3], milliseconds=rest[4])


# -- evaluation -------------------------------------------------------------


class _Evaluator:
    def __init__(self, bindings: Dict[str, Any], clock: Clock | None) -> None:
        self.bindings = bindings
        self.clock = clock

    def eval(self, node: Node, depth: int) -> Any:
        if depth > MAX_DEPTH:
            raise ExpressionDepthError("Expression nesting too deep", node.pos)
        nxt = depth + 1
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Identifier):
            if node.name not in self.bindings:
                raise UndeclaredIdentifierError(f"'{node.name}' is not defined", node.pos)
            return self.bindings[node.name]
        if isinstance(node, ArrayLiteral):
            return [self.eval(item, nxt) for item in node.elements]
        if isinstance(node, Member):
            obj = self.eval(node.obj, nxt)
            if obj is None and node.optional:
                return None
            name = node.prop if node.prop is not None else self.eval(node.computed, nxt)
            return _get_property(obj, name, node.pos)
        if isinstance(node, Call):
            callee = node.callee
            obj = self.eval(callee.obj, nxt)
            if obj is None and callee.optional:
                return None
            name = callee.prop if callee.prop is not None else to_js_string(self.eval(callee.computed, nxt))
            args = [self.eval(arg, nxt) for arg in node.args]
            return _call_method(obj, name, args, node.pos)
        if isinstance(node, NewDate):
            return _make_date([self.eval(arg, nxt) for arg in node.args], self.clock, node.pos)
        if isinstance(node, Unary):
            value = self.eval(node.operand, nxt)
            if node.op == "!":
                return not is_truthy(value)
            if node.op == "typeof":
                return type_of(value)
            number = to_number(value)
            return -number if node.op == "-" else number
        if isinstance(node, Logical):
            left = self.eval(node.left, nxt)
            if node.op == "&&":
                return self.eval(node.right, nxt) if is_truthy(left) else left
            if node.op == "||":
                return left if is_truthy(left) else self.eval(node.right, nxt)
            return left if left is not None else self.eval(node.right, nxt)
        if isinstance(node, Conditional):
            if is_truthy(self.eval(node.test, nxt)):
                return self.eval(node.consequent, nxt)
            return self.eval(node.alternate, nxt)
        if isinstance(node, Binary):
            left = self.eval(node.left, nxt)
            right = self.eval(node.right, nxt)
            op = node.op
            if op == "===":
                return strict_equals(left, right)
            if op == "!==":
                return not strict_equals(left, right)
            if op == "==":
                return loose_equals(left, right)
            if op == "!=":
                return not loose_equals(left, right)
            if op in ("<", "<=", ">", ">="):
                return _compare(op, left, right)
            return _arith(op, left, right, node.pos)
        raise ExpressionSyntaxError(f"Unknown node {type(node).__name__}", node.pos)


def eval_expression(expression: str, bindings: Dict[str, Any], clock: Clock | None = None) -> Any:
    """Evaluate ``expression`` against ``bindings``; raises ExpressionError."""
    if not isinstance(bindings, dict):
        raise ExpressionTypeError("bindings must be an object", None)
    node = parse_expression(expression)
    try:
        return _Evaluator(bindings, clock).eval(node, 1)
    except (OverflowError, ValueError) as exc:
        # huge integers cannot become floats
        raise ExpressionTypeError(f"Numeric error: {exc}", None) from exc


def eval_truthy(expression: str, bindings: Dict[str, Any], clock: Clock | None = None) -> bool:
    return is_truthy(eval_expression(expression, bindings, clock))


# -- static analysis --------------------------------------------------------


def collect_references(expression: str) -> Set[Tuple[str, Tuple[Any, ...]]]:
    """Identifier roots and the static member paths read beneath them.

    ``formValue.address.city`` yields ``("formValue", ("address", "city"))``;
    a computed key truncates the path at the last static prefix.
    """
    refs: Set[Tuple[str, Tuple[Any, ...]]] = set()

    def visit(node: Node, depth: int) -> None:
        if depth > MAX_DEPTH:
            raise ExpressionDepthError("Expression nesting too deep", node.pos)
        nxt = depth + 1
        if isinstance(node, Identifier):
            refs.add((node.name, ()))
            return
        if isinstance(node, Member):
            base: Node = node
            while isinstance(base, Member):
                if base.computed is not None:
                    visit(base.computed, nxt)
                base = base.obj
            if isinstance(base, Identifier):
                refs.add((base.name, _static_prefix(node)))
            else:
                visit(base, nxt)
            return
        if isinstance(node, Call):
            visit(node.callee.obj, nxt)
            if node.callee.computed is not None:
                visit(node.callee.computed, nxt)
            for arg in node.args:
                visit(arg, nxt)
            return
        for child in _children(node):
            visit(child, nxt)

    visit(parse_expression(expression), 1)
    return refs


def _static_prefix(node: Member) -> Tuple[Any, ...]:
    # a dynamic key ends the path; everything below it is unknown
    chain: List[Member] = []
    current: Node = node
    while isinstance(current, Member):
        chain.append(current)
        current = current.obj
    chain.reverse()
    props: List[Any] = []
    for member in chain:
        if member.prop is not None:
            props.append(member.prop)
        elif isinstance(member.computed, Literal) and isinstance(member.computed.value, (str, int)):
            props.append(member.computed.value)
        else:
            break
    return tuple(props)


def _children(node: Node) -> Tuple[Node, ...]:
    if isinstance(node, ArrayLiteral):
        return node.elements
    if isinstance(node, NewDate):
        return node.args
    if isinstance(node, Unary):
        return (node.operand,)
    if isinstance(node, (Binary, Logical)):
        return (node.left, node.right)
    if isinstance(node, Conditional):
        return (node.test, node.consequent, node.alternate)
    return ()
