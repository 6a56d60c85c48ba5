"""Restricted expression and script interpreter for conditions and node scripts.

Expressions are tokenized, parsed into a small tuple AST and evaluated against a
variable context. Nothing is compiled by the host interpreter: there are no
calls, no imports and no attribute access on anything but mappings and
sequences.

Supported:
- Literals: 42, 3.5, "text", 'text', true/false/null/undefined, True/False/None
- Identifiers: bare context keys, ``variables`` for the whole context
- Member access: order.total, order["total"], items[0], items.length
- Arrays: [1, 2, 3]
- Unary: !x, not x, -x, +x
- Arithmetic: * / % + -
- Comparison: < <= > >= in
- Equality: == != === !==
- Logic: && and || or, ternary c ? a : b

Scripts additionally accept statements separated by ``;`` or newlines:
assignments (``x = 1``, ``variables.x = 1``, ``x += 1``), optionally prefixed
with ``let``, ``const`` or ``var``, and bare expressions.
"""

import copy
import math
import operator
import re
from collections import namedtuple
from collections.abc import Mapping, MutableMapping
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import ExpressionError
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_EXPRESSION_LENGTH = 500
DEFAULT_MAX_SCRIPT_LENGTH = 5000
# Parentheses, brackets, ternaries and unary operators share one nesting budget.
MAX_NESTING_DEPTH = 32

Token = namedtuple("Token", ["kind", "value", "pos"])

_TOKEN_SPEC = [
    ("COMMENT", r"//[^\n]*"),
    ("NEWLINE", r"\n"),
    ("SKIP", r"[ \t\r\f]+"),
    ("NUMBER", r"\d+\.\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?|\d+(?:[eE][+-]?\d+)?"),
    ("STRING", r"\"(?:[^\"\\\n]|\\.)*\"|'(?:[^'\\\n]|\\.)*'"),
    ("NAME", r"[A-Za-z_$][A-Za-z0-9_$]*"),
    ("OP", r"===|!==|==|!=|<=|>=|&&|\|\||\+=|-=|\*=|/=|[<>+\-*/%!()\[\].,?:=;]"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "0": "\0"}

_KEYWORD_LITERALS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": None,
}

_DECLARATIONS = {"let", "const", "var"}
_ASSIGNMENT_OPS = {"=", "+=", "-=", "*=", "/="}
_RESERVED = set(_KEYWORD_LITERALS) | _DECLARATIONS | {"and", "or", "not", "in"}


def _unescape(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def tokenize(source: str, statements: bool = False) -> List[Token]:
    """Split source text into tokens.

    Args:
        source: Expression or script text
        statements: Treat top-level newlines as statement separators

    Returns:
        List of tokens terminated by an EOF token

    Raises:
        ExpressionError: If an unexpected character is found
    """
    tokens = []
    depth = 0
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise ExpressionError(f"Unexpected character {source[pos]!r}", expression=source, position=pos)
        kind = match.lastgroup
        text = match.group()
        pos = match.end()

        if kind in ("SKIP", "COMMENT"):
            continue
        if kind == "NEWLINE":
            if statements and depth == 0:
                tokens.append(Token("OP", ";", match.start()))
            continue
        if kind == "NUMBER":
            value = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(Token("NUMBER", value, match.start()))
        elif kind == "STRING":
            tokens.append(Token("STRING", _unescape(text), match.start()))
        else:
            if text in ("(", "["):
                depth += 1
            elif text in (")", "]"):
                depth = max(0, depth - 1)
            tokens.append(Token(kind, text, match.start()))

    tokens.append(Token("EOF", None, len(source)))
    return tokens


class _Parser:
    """Recursive-descent parser producing tuple nodes."""

    def __init__(self, tokens: List[Token], source: str):
        self.tokens = tokens
        self.source = source
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "EOF":
            self.index += 1
        return token

    def _check(self, *values: str) -> bool:
        token = self.current
        return token.kind in ("OP", "NAME") and token.value in values

    def _expect(self, value: str) -> Token:
        if not self._check(value):
            self._fail(f"Expected '{value}'")
        return self._advance()

    def _fail(self, message: str):
        token = self.current
        found = "end of input" if token.kind == "EOF" else repr(token.value)
        raise ExpressionError(f"{message}, found {found}", expression=self.source, position=token.pos)

    def parse_expression(self) -> Tuple:
        node = self._ternary()
        if self.current.kind != "EOF":
            self._fail("Unexpected token")
        return node

    def parse_script(self) -> List[Tuple]:
        statements = []
        while self.current.kind != "EOF":
            if self._check(";"):
                self._advance()
                continue
            statements.append(self._statement())
            if self.current.kind != "EOF":
                self._expect(";")
        return statements

    def _statement(self) -> Tuple:
        if self.current.kind == "NAME" and self.current.value in _DECLARATIONS:
            self._advance()
            if self.current.kind != "NAME":
                self._fail("Expected a variable name")
        target = self._ternary()
        if self.current.kind == "OP" and self.current.value in _ASSIGNMENT_OPS:
            if target[0] not in ("name", "member"):
                self._fail("Invalid assignment target")
            op = self._advance().value
            return ("assign", target, op, self._ternary())
        return ("expr", target)

    def _enter(self):
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            self._fail("Expression nested too deeply")

    def _ternary(self) -> Tuple:
        self._enter()
        try:
            condition = self._or()
            if self._check("?"):
                self._advance()
                when_true = self._ternary()
                self._expect(":")
                when_false = self._ternary()
                return ("ternary", condition, when_true, when_false)
            return condition
        finally:
            self.depth -= 1

    def _or(self) -> Tuple:
        node = self._and()
        while self._check("||", "or"):
            self._advance()
            node = ("or", node, self._and())
        return node

    def _and(self) -> Tuple:
        node = self._equality()
        while self._check("&&", "and"):
            self._advance()
            node = ("and", node, self._equality())
        return node

    def _equality(self) -> Tuple:
        node = self._comparison()
        while self._check("==", "!=", "===", "!=="):
            op = self._advance().value
            node = ("binary", op, node, self._comparison())
        return node

    def _comparison(self) -> Tuple:
        node = self._additive()
        while self._check("<", "<=", ">", ">=", "in"):
            op = self._advance().value
            node = ("binary", op, node, self._additive())
        return node

    def _additive(self) -> Tuple:
        node = self._multiplicative()
        while self._check("+", "-"):
            op = self._advance().value
            node = ("binary", op, node, self._multiplicative())
        return node

    def _multiplicative(self) -> Tuple:
        node = self._unary()
        while self._check("*", "/", "%"):
            op = self._advance().value
            node = ("binary", op, node, self._unary())
        return node

    def _unary(self) -> Tuple:
        if self._check("!", "not"):
            self._advance()
            self._enter()
            try:
                return ("not", self._unary())
            finally:
                self.depth -= 1
        if self._check("-", "+"):
            op = self._advance().value
            self._enter()
            try:
                return ("unary", op, self._unary())
            finally:
                self.depth -= 1
        return self._postfix()

    def _postfix(self) -> Tuple:
        node = self._primary()
        while True:
            if self._check("."):
                self._advance()
                if self.current.kind != "NAME":
                    self._fail("Expected a property name")
                token = self._advance()
                node = ("member", node, ("literal", token.value))
            elif self._check("["):
                self._advance()
                key = self._ternary()
                self._expect("]")
                node = ("member", node, key)
            elif self._check("("):
                self._fail("Function calls are not allowed")
            else:
                return node

    def _primary(self) -> Tuple:
        token = self.current
        if token.kind in ("NUMBER", "STRING"):
            self._advance()
            return ("literal", token.value)
        if token.kind == "NAME":
            if token.value in _KEYWORD_LITERALS:
                self._advance()
                return ("literal", _KEYWORD_LITERALS[token.value])
            if token.value in _RESERVED:
                self._fail("Unexpected keyword")
            self._advance()
            return ("name", token.value)
        if self._check("("):
            self._advance()
            node = self._ternary()
            self._expect(")")
            return node
        if self._check("["):
            self._advance()
            items = []
            while not self._check("]"):
                items.append(self._ternary())
                if not self._check("]"):
                    self._expect(",")
            self._advance()
            return ("array", items)
        self._fail("Unexpected token")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float))


def _is_literal_condition(value: Any) -> bool:
    return isinstance(value, (bool, int, float))


def _to_string(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _numeric(symbol, op):
    def apply(left, right):
        if not (_is_number(left) and _is_number(right)):
            raise ExpressionError(f"Operands of '{symbol}' must be numbers")
        return op(left, right)
    return apply


def _add(left, right):
    if isinstance(left, str) or isinstance(right, str):
        return _to_string(left) + _to_string(right)
    if isinstance(left, list) and isinstance(right, list):
        return left + right
    return _numeric("+", operator.add)(left, right)


def _divide(left, right):
    if not (_is_number(left) and _is_number(right)):
        raise ExpressionError("Operands of '/' must be numbers")
    if right == 0:
        raise ExpressionError("Division by zero")
    result = left / right
    if isinstance(left, int) and isinstance(right, int) and result.is_integer():
        return int(result)
    return result


def _modulo(left, right):
    if not (_is_number(left) and _is_number(right)):
        raise ExpressionError("Operands of '%' must be numbers")
    if right == 0:
        raise ExpressionError("Division by zero")
    result = math.fmod(left, right)
    if isinstance(left, int) and isinstance(right, int):
        return int(result)
    return result


def _loose_equals(left, right) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if _is_number(left) and isinstance(right, str) or isinstance(left, str) and _is_number(right):
        try:
            return float(left) == float(right)
        except ValueError:
            return False
    return left == right


def _strict_equals(left, right) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def _compare(op):
    def apply(left, right):
        try:
            return op(left, right)
        except TypeError as e:
            raise ExpressionError(f"Cannot compare {type(left).__name__} and {type(right).__name__}") from e
    return apply


def _contains(left, right) -> bool:
    if isinstance(right, str) and not isinstance(left, str):
        raise ExpressionError("Left operand of 'in' must be a string when testing a string")
    try:
        return left in right
    except TypeError as e:
        raise ExpressionError(f"Cannot test membership in {type(right).__name__}") from e


_BINARY_OPS = {
    "+": _add,
    "-": _numeric("-", operator.sub),
    "*": _numeric("*", operator.mul),
    "/": _divide,
    "%": _modulo,
    "<": _compare(operator.lt),
    "<=": _compare(operator.le),
    ">": _compare(operator.gt),
    ">=": _compare(operator.ge),
    "in": _contains,
    "==": _loose_equals,
    "!=": lambda left, right: not _loose_equals(left, right),
    "===": _strict_equals,
    "!==": lambda left, right: not _strict_equals(left, right),
}


def _get_member(obj: Any, key: Any) -> Any:
    if isinstance(obj, Mapping):
        if key in obj:
            return obj[key]
        return obj.get(str(key))
    if isinstance(obj, (list, tuple, str)):
        if key == "length":
            return len(obj)
        if isinstance(key, int) and not isinstance(key, bool):
            return obj[key] if 0 <= key < len(obj) else None
        raise ExpressionError(f"Invalid index {key!r} for {type(obj).__name__}")
    if obj is None:
        raise ExpressionError(f"Cannot read property {key!r} of null")
    raise ExpressionError(f"Member access is not supported on {type(obj).__name__}")


class _Interpreter:
    """Evaluates tuple nodes against a scope mapping."""

    def __init__(self, scope: Dict[str, Any], source: str):
        self.scope = scope
        self.source = source
        self._dispatch = {
            "literal": lambda node: node[1],
            "name": self._name,
            "member": lambda node: _get_member(self.eval(node[1]), self.eval(node[2])),
            "array": lambda node: [self.eval(item) for item in node[1]],
            "not": lambda node: not self.eval(node[1]),
            "unary": self._unary,
            "binary": lambda node: _BINARY_OPS[node[1]](self.eval(node[2]), self.eval(node[3])),
            "and": self._and,
            "or": self._or,
            "ternary": lambda node: self.eval(node[2]) if self.eval(node[1]) else self.eval(node[3]),
        }

    def eval(self, node: Tuple) -> Any:
        return self._dispatch[node[0]](node)

    def _name(self, node):
        name = node[1]
        if name == "variables":
            return self.scope
        if name in self.scope:
            return self.scope[name]
        raise ExpressionError(f"'{name}' is not defined", expression=self.source)

    def _unary(self, node):
        value = self.eval(node[2])
        if not _is_number(value):
            raise ExpressionError(f"Operand of unary '{node[1]}' must be a number", expression=self.source)
        return -value if node[1] == "-" else +value

    def _and(self, node):
        left = self.eval(node[1])
        return self.eval(node[2]) if left else left

    def _or(self, node):
        left = self.eval(node[1])
        return left if left else self.eval(node[2])

    def run(self, statements: List[Tuple]) -> Dict[str, Any]:
        for statement in statements:
            if statement[0] == "assign":
                self._assign(statement[1], statement[2], statement[3])
            else:
                self.eval(statement[1])
        return self.scope

    def _assign(self, target: Tuple, op: str, value_node: Tuple):
        value = self.eval(value_node)
        if op != "=":
            value = _BINARY_OPS[op[0]](self.eval(target), value)

        if target[0] == "name":
            if target[1] == "variables":
                raise ExpressionError("'variables' cannot be reassigned", expression=self.source)
            self.scope[target[1]] = value
            return

        container = self.eval(target[1])
        key = self.eval(target[2])
        if isinstance(container, MutableMapping):
            container[key] = value
        elif isinstance(container, list) and isinstance(key, int) and 0 <= key < len(container):
            container[key] = value
        else:
            raise ExpressionError(f"Cannot assign {key!r} on {type(container).__name__}", expression=self.source)


class ExpressionEvaluator:
    """Evaluates gateway conditions and executes node scripts.

    Inputs are parsed on every call; there is no compiled-expression cache.
    Failures never reach the caller: ``evaluate`` falls back to ``False`` and
    ``execute`` to the unmodified context.
    """

    def __init__(
        self,
        max_expression_length: int = DEFAULT_MAX_EXPRESSION_LENGTH,
        max_script_length: int = DEFAULT_MAX_SCRIPT_LENGTH
    ):
        self.max_expression_length = max_expression_length
        self.max_script_length = max_script_length

    def parse(self, expression: str) -> Tuple:
        """Parse a single expression.

        Raises:
            ExpressionError: If the expression is too long or malformed
        """
        if len(expression) > self.max_expression_length:
            raise ExpressionError(
                f"Expression too long ({len(expression)} chars, max {self.max_expression_length})",
                expression=expression
            )
        return _Parser(tokenize(expression), expression).parse_expression()

    def parse_script(self, script: str) -> List[Tuple]:
        """Parse a multi-statement script.

        Raises:
            ExpressionError: If the script is too long or malformed
        """
        if len(script) > self.max_script_length:
            raise ExpressionError(
                f"Script too long ({len(script)} chars, max {self.max_script_length})",
                expression=script
            )
        return _Parser(tokenize(script, statements=True), script).parse_script()

    def evaluate(self, expression: Any, context: Optional[Mapping] = None) -> Any:
        """
        Evaluate an expression against a context.

        Args:
            expression: Expression text, e.g. ``amount > 100``
            context: Variables visible as bare identifiers and via ``variables``

        Returns:
            The expression value, ``True`` for an empty expression, ``False`` on any failure
        """
        if expression is None:
            return True
        if not isinstance(expression, str):
            # JSON literals stored as conditions (true, 1) are their own value
            if _is_literal_condition(expression):
                return expression
            logger.warning(f"Cannot evaluate expression of type {type(expression).__name__}")
            return False
        if not expression.strip():
            return True

        scope = dict(context or {})
        try:
            tree = self.parse(expression)
            return _Interpreter(scope, expression).eval(tree)
        except ExpressionError as e:
            logger.warning(f"Error evaluating expression '{expression}': {e.message}")
            return False
        except Exception as e:
            logger.warning(f"Unexpected error evaluating expression '{expression}': {e}", exc_info=True)
            return False

    def execute(self, script: Any, context: Optional[Mapping] = None) -> Mapping:
        """
        Execute a script against a context.

        The script runs on a deep copy, so the caller's context is never mutated.

        Args:
            script: Statements separated by ``;`` or newlines
            context: Variables visible to the script

        Returns:
            A new mapping with the context plus the script's assignments, or the
            original context when the script is empty or fails
        """
        original = context if context is not None else {}
        if not isinstance(script, str):
            if script is not None:
                logger.warning(f"Cannot execute script of type {type(script).__name__}")
            return original
        if not script.strip():
            return original

        try:
            statements = self.parse_script(script)
            scope = copy.deepcopy(dict(original))
            return _Interpreter(scope, script).run(statements)
        except ExpressionError as e:
            logger.warning(f"Error executing script: {e.message}")
            return original
        except Exception as e:
            logger.warning(f"Unexpected error executing script: {e}", exc_info=True)
            return original

    def check_syntax(self, expression: Any) -> List[str]:
        """Parse an expression without evaluating it.

        Returns:
            List of syntax problems, empty when the expression parses
        """
        if expression is None or _is_literal_condition(expression):
            return []
        if not isinstance(expression, str):
            return [f"Expression must be text, found {type(expression).__name__}"]
        if not expression.strip():
            return []
        try:
            self.parse(expression)
        except ExpressionError as e:
            return [e.message]
        return []
