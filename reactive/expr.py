"""
Expression tree for derived values and optimistic actions.

Each node compiles to two targets:
- eval(ctx)      → Python value (server evaluation, powers the Evaluator)
- to_js(scope)   → JavaScript source for the client runtime (rx helpers)

Operator overloading builds the tree; no computation happens at definition time.

Server evaluation goes through helpers that reject exactly what the client's
rx helpers reject (mixed-type +, ordering of lists, division by zero, ...), so
an expression either gives the same result on both sides or fails on both.
Nodes with no exact client equivalent raise Untranspilable from to_js().
"""

import json
import math
import operator
import re
from abc import ABC, abstractmethod
from collections import ChainMap
from decimal import Decimal
from functools import reduce

from reactive.errors import Untranspilable


# ---------------------------------------------------------------------------
# Static kinds (drive native-operator emission)
# ---------------------------------------------------------------------------

NUMBER = "number"
STRING = "string"
BOOL = "bool"
LIST = "list"
RECORD = "record"
NONE = "none"
DECIMAL = "decimal"
ANY = "any"

# Largest integer a client double represents exactly.
MAX_SAFE_INT = 2 ** 53

_JS_IDENT = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")

_JS_RESERVED = frozenset("""
    arguments await break case catch class const continue debugger default
    delete do else enum eval export extends false finally for function if
    implements import in instanceof interface let new null package private
    protected public return rx state static super switch this throw true try
    typeof undefined var void while with yield
""".split())


class JsScope:
    """Emission context: field kinds, the state variable, bound lambda vars."""

    def __init__(self, kinds=None, state="state", variables=None):
        self.kinds = dict(kinds or {})
        self.state = state
        self.variables = dict(variables or {})

    def bind(self, name, kind=ANY):
        variables = dict(self.variables)
        variables[name] = kind
        return JsScope(self.kinds, self.state, variables)


class _Remove:
    """Sentinel result of a keyed action: drop the matched element."""

    __slots__ = ()

    def __repr__(self):
        return "REMOVE"

    def __reduce__(self):
        return "REMOVE"


REMOVE = _Remove()


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Expr(ABC):
    """Abstract expression node. All concrete nodes subclass this."""

    @abstractmethod
    def eval(self, ctx):
        """Evaluate this expression against a context mapping."""

    @abstractmethod
    def to_js(self, scope: JsScope) -> str:
        """Compile to a JavaScript expression. Raises Untranspilable."""

    @abstractmethod
    def kind(self, scope: JsScope) -> str:
        """Static kind of the result, ANY when unknown."""

    @abstractmethod
    def to_json(self) -> dict:
        """Serialize to a JSON-compatible dict."""

    def children(self) -> list:
        return []

    # -- Arithmetic operators ------------------------------------------------

    def __add__(self, other):
        return BinOp("+", self, _wrap(other))

    def __radd__(self, other):
        return BinOp("+", _wrap(other), self)

    def __sub__(self, other):
        return BinOp("-", self, _wrap(other))

    def __rsub__(self, other):
        return BinOp("-", _wrap(other), self)

    def __mul__(self, other):
        return BinOp("*", self, _wrap(other))

    def __rmul__(self, other):
        return BinOp("*", _wrap(other), self)

    def __truediv__(self, other):
        return BinOp("/", self, _wrap(other))

    def __rtruediv__(self, other):
        return BinOp("/", _wrap(other), self)

    def __floordiv__(self, other):
        return BinOp("//", self, _wrap(other))

    def __rfloordiv__(self, other):
        return BinOp("//", _wrap(other), self)

    def __mod__(self, other):
        return BinOp("%", self, _wrap(other))

    def __rmod__(self, other):
        return BinOp("%", _wrap(other), self)

    def __pow__(self, other):
        return BinOp("**", self, _wrap(other))

    def __rpow__(self, other):
        return BinOp("**", _wrap(other), self)

    def __neg__(self):
        return UnaryOp("neg", self)

    def __abs__(self):
        return UnaryOp("abs", self)

    # -- Comparison operators ------------------------------------------------

    def __gt__(self, other):
        return BinOp(">", self, _wrap(other))

    def __lt__(self, other):
        return BinOp("<", self, _wrap(other))

    def __ge__(self, other):
        return BinOp(">=", self, _wrap(other))

    def __le__(self, other):
        return BinOp("<=", self, _wrap(other))

    def __eq__(self, other):
        return BinOp("==", self, _wrap(other))

    def __ne__(self, other):
        return BinOp("!=", self, _wrap(other))

    __hash__ = object.__hash__

    # -- Logical operators (use & | ~ since and/or/not can't be overridden) --

    def __and__(self, other):
        return BinOp("and", self, _wrap(other))

    def __rand__(self, other):
        return BinOp("and", _wrap(other), self)

    def __or__(self, other):
        return BinOp("or", self, _wrap(other))

    def __ror__(self, other):
        return BinOp("or", _wrap(other), self)

    def __invert__(self):
        return UnaryOp("not", self)

    # -- Access ----------------------------------------------------------------

    def __getitem__(self, key):
        return Index(self, _wrap(key))

    def attr(self, name):
        return Attr(self, name)

    def maybe(self, name):
        """Null-propagating access: `self?.name`."""
        return Attr(self, name, optional=True)

    # -- String / collection methods (chainable) -----------------------------

    def length(self):
        return Length(self)

    def upper(self):
        return StrOp("upper", self)

    def lower(self):
        return StrOp("lower", self)

    def trim(self):
        return StrOp("trim", self)

    def starts_with(self, prefix):
        return StrOp("starts_with", self, _wrap(prefix))

    def ends_with(self, suffix):
        return StrOp("ends_with", self, _wrap(suffix))

    def contains(self, item):
        return BinOp("in", _wrap(item), self)

    def is_in(self, container):
        return BinOp("in", self, _wrap(container))

    def map(self, fn):
        return Collection("map", self, _lambda(fn))

    def filter(self, fn):
        return Collection("filter", self, _lambda(fn))

    def reject(self, fn):
        return Collection("reject", self, _lambda(fn))

    def sum(self):
        return Sum(self)

    def join(self, sep=","):
        return Join(self, _wrap(sep))

    # -- Null helpers --------------------------------------------------------

    def is_null(self):
        return IsNull(self)

    def is_blank(self):
        return IsBlank(self)

    def __repr__(self):
        return f"{self.__class__.__name__}({self.to_json()})"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _wrap(value):
    """Wrap a Python literal as a Const if it's not already an Expr."""
    if isinstance(value, Expr):
        return value
    return Const(value)


def _lambda(fn):
    """Turn `lambda item: ...` into a Lambda node by calling it with a Var."""
    if isinstance(fn, Lambda):
        return fn
    code = fn.__code__
    if code.co_argcount != 1:
        raise TypeError("collection lambdas take exactly one argument")
    name = code.co_varnames[0]
    return Lambda(name, _wrap(fn(Var(name))))


def _type(v):
    return type(v).__name__


def _is_number(v):
    return isinstance(v, (int, float, Decimal))


def _require_numbers(op, a, b):
    if not (_is_number(a) and _is_number(b)):
        raise TypeError(
            f"unsupported operand types for {op}: '{_type(a)}' and '{_type(b)}'"
        )


def _is_count(v):
    # JSON sends 3.0 as 3, so integral floats count like ints.
    if isinstance(v, float):
        return v.is_integer()
    return isinstance(v, int) and not isinstance(v, bool)


def _add(a, b):
    if _is_number(a) and _is_number(b):
        return a + b
    if isinstance(a, str) and isinstance(b, str):
        return a + b
    if isinstance(a, list) and isinstance(b, list):
        return a + b
    raise TypeError(f"unsupported operand types for +: '{_type(a)}' and '{_type(b)}'")


def _sub(a, b):
    _require_numbers("-", a, b)
    return a - b


def _mul(a, b):
    if _is_number(a) and _is_number(b):
        return a * b
    if isinstance(a, (str, list)) and _is_count(b):
        return a * int(b)
    if _is_count(a) and isinstance(b, (str, list)):
        return int(a) * b
    raise TypeError(f"unsupported operand types for *: '{_type(a)}' and '{_type(b)}'")


def _div(a, b):
    _require_numbers("/", a, b)
    if b == 0:
        raise ZeroDivisionError("division by zero")
    return a / b


def _floordiv(a, b):
    _require_numbers("//", a, b)
    if b == 0:
        raise ZeroDivisionError("integer division or modulo by zero")
    return a // b


def _mod(a, b):
    _require_numbers("%", a, b)
    if b == 0:
        raise ZeroDivisionError("integer division or modulo by zero")
    return a % b


def _pow(a, b):
    _require_numbers("**", a, b)
    return a ** b


_ORDER = {"<": operator.lt, "<=": operator.le, ">": operator.gt, ">=": operator.ge}


def _compare(op, a, b):
    if (_is_number(a) and _is_number(b)) or (isinstance(a, str) and isinstance(b, str)):
        return _ORDER[op](a, b)
    raise TypeError(f"'{op}' not supported between '{_type(a)}' and '{_type(b)}'")


def _contains(container, item):
    if isinstance(container, str):
        if not isinstance(item, str):
            raise TypeError(f"'in <string>' requires string, not '{_type(item)}'")
        return item in container
    if isinstance(container, (list, tuple, dict)):
        return item in container
    raise TypeError(f"argument of type '{_type(container)}' is not a container")


def _as_list(v):
    if isinstance(v, (list, tuple)):
        return v
    raise TypeError(f"'{_type(v)}' is not a list")


def _length(v):
    if isinstance(v, (str, list, tuple, dict)):
        return len(v)
    raise TypeError(f"object of type '{_type(v)}' has no length")


def _numeric_add(a, b):
    _require_numbers("+", a, b)
    return a + b


def _sum(v):
    # Naive left fold like Array.reduce; builtin sum() compensates floats.
    return reduce(_numeric_add, _as_list(v), 0)


def _join(v, sep):
    items = _as_list(v)
    if not isinstance(sep, str) or not all(isinstance(i, str) for i in items):
        raise TypeError("join() expects a list of strings and a string separator")
    return sep.join(items)


def _index(obj, key):
    if isinstance(obj, (list, tuple, str)):
        if not _is_count(key):
            raise TypeError(f"indices must be integers, not '{_type(key)}'")
        return obj[int(key)]
    if isinstance(obj, dict):
        return obj[key]
    raise TypeError(f"'{_type(obj)}' object is not subscriptable")


def _attr(obj, name, optional):
    if obj is None:
        if optional:
            return None
        raise TypeError(f"cannot read '{name}' of None")
    if isinstance(obj, dict):
        return obj.get(name) if optional else obj[name]
    if isinstance(obj, (list, tuple, str, int, float, Decimal)):
        raise TypeError(f"'{_type(obj)}' has no field '{name}'")
    if optional:
        return getattr(obj, name, None)
    return getattr(obj, name)


# Python's str.isspace() set; the client helper uses the same class.
_PY_SPACE = " \t\n\x0b\x0c\r\x1c\x1d\x1e\x1f\x85\xa0" + "".join(
    chr(c) for c in (0x1680, *range(0x2000, 0x200B), 0x2028, 0x2029, 0x202F, 0x205F, 0x3000)
)


def _require_str(op, v):
    if not isinstance(v, str):
        raise TypeError(f"{op}() expects a string, not '{_type(v)}'")
    return v


def _blank(v):
    return v is None or (isinstance(v, str) and v.strip(_PY_SPACE) == "")


def _pick(op, args):
    items = _as_list(args[0]) if len(args) == 1 else args
    if not items:
        raise ValueError(f"{op}() arg is an empty sequence")
    best = items[0]
    for x in items[1:]:
        if _compare("<" if op == "min" else ">", x, best):
            best = x
    return best


def _finite(op, v):
    if not _is_number(v):
        raise TypeError(f"{op}() expects a number, not '{_type(v)}'")
    if isinstance(v, float) and not math.isfinite(v):
        raise OverflowError(f"cannot {op} non-finite value {v}")
    return v


def _to_decimal(v):
    if isinstance(v, float):
        return Decimal(repr(v))
    return Decimal(v)


def _value_kind(v):
    if v is None:
        return NONE
    if isinstance(v, bool):
        return BOOL
    if isinstance(v, Decimal):
        return DECIMAL
    if isinstance(v, (int, float)):
        return NUMBER
    if isinstance(v, str):
        return STRING
    if isinstance(v, (list, tuple)):
        return LIST
    if isinstance(v, dict):
        return RECORD
    return ANY


def _js_member(obj_js, name):
    if _JS_IDENT.match(name):
        return f"{obj_js}.{name}"
    return f"{obj_js}[{json.dumps(name)}]"


def _js_literal(node, v):
    if v is REMOVE:
        return "rx.REMOVE"
    if v is None:
        return "null"
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, Decimal):
        raise Untranspilable(node, "decimal arithmetic has no exact client equivalent")
    if isinstance(v, int):
        if abs(v) > MAX_SAFE_INT:
            raise Untranspilable(node, f"integer {v} is outside the client's exact range")
        return f"({v})" if v < 0 else str(v)
    if isinstance(v, float):
        if not math.isfinite(v):
            raise Untranspilable(node, f"non-finite float {v}")
        return f"({v!r})" if v < 0 else repr(v)
    if isinstance(v, str):
        return json.dumps(v)
    if isinstance(v, (list, tuple)):
        return "[" + ", ".join(_js_literal(node, i) for i in v) + "]"
    if isinstance(v, dict):
        parts = []
        for k, item in v.items():
            if not isinstance(k, str):
                raise Untranspilable(node, "record keys must be strings on the client")
            parts.append(f"{json.dumps(k)}: {_js_literal(node, item)}")
        return "({" + ", ".join(parts) + "})"
    raise Untranspilable(node, f"{_type(v)} literal has no client representation")


# ---------------------------------------------------------------------------
# Leaf nodes
# ---------------------------------------------------------------------------

class Const(Expr):
    """A constant literal value."""

    def __init__(self, value):
        self.value = value

    def eval(self, ctx):
        return self.value

    def kind(self, scope):
        return _value_kind(self.value)

    def to_js(self, scope):
        return _js_literal(self, self.value)

    def to_json(self) -> dict:
        if self.value is REMOVE:
            return {"type": "Const", "remove": True}
        if isinstance(self.value, Decimal):
            return {"type": "Const", "decimal": str(self.value)}
        return {"type": "Const", "value": self.value}


class Field(Expr):
    """A reference to a field or derived value in the current snapshot."""

    def __init__(self, name: str):
        self.name = name

    def eval(self, ctx):
        return ctx[self.name]

    def kind(self, scope):
        return scope.kinds.get(self.name, ANY)

    def to_js(self, scope):
        if self.kind(scope) == DECIMAL:
            raise Untranspilable(self, f"field '{self.name}' holds decimal values")
        return _js_member(scope.state, self.name)

    def to_json(self) -> dict:
        return {"type": "Field", "name": self.name}


class Var(Expr):
    """A variable bound by a lambda or an action (item, value, current)."""

    def __init__(self, name: str):
        self.name = name

    def eval(self, ctx):
        return ctx[("var", self.name)]

    def kind(self, scope):
        return scope.variables.get(self.name, ANY)

    def to_js(self, scope):
        if self.name not in scope.variables:
            raise Untranspilable(self, f"unbound variable '{self.name}'")
        if self.name in _JS_RESERVED or not _JS_IDENT.match(self.name):
            raise Untranspilable(self, f"'{self.name}' is not a usable client identifier")
        return self.name

    def to_json(self) -> dict:
        return {"type": "Var", "name": self.name}


# ---------------------------------------------------------------------------
# Access nodes
# ---------------------------------------------------------------------------

class Attr(Expr):
    """Record member access; optional=True propagates None (`obj?.name`)."""

    def __init__(self, obj: Expr, name: str, optional: bool = False):
        self.obj = _wrap(obj)
        self.name = name
        self.optional = optional

    def eval(self, ctx):
        return _attr(self.obj.eval(ctx), self.name, self.optional)

    def kind(self, scope):
        return ANY

    def to_js(self, scope):
        fn = "rx.get" if self.optional else "rx.attr"
        return f"{fn}({self.obj.to_js(scope)}, {json.dumps(self.name)})"

    def children(self):
        return [self.obj]

    def to_json(self) -> dict:
        return {
            "type": "Attr",
            "obj": self.obj.to_json(),
            "name": self.name,
            "optional": self.optional,
        }


class Index(Expr):
    """Subscript: list/string position (negative from the end) or record key."""

    def __init__(self, obj: Expr, key: Expr):
        self.obj = _wrap(obj)
        self.key = _wrap(key)

    def eval(self, ctx):
        return _index(self.obj.eval(ctx), self.key.eval(ctx))

    def kind(self, scope):
        return ANY

    def to_js(self, scope):
        return f"rx.index({self.obj.to_js(scope)}, {self.key.to_js(scope)})"

    def children(self):
        return [self.obj, self.key]

    def to_json(self) -> dict:
        return {"type": "Index", "obj": self.obj.to_json(), "key": self.key.to_json()}


# ---------------------------------------------------------------------------
# Composite nodes
# ---------------------------------------------------------------------------

_BINARY = {
    "+": _add,
    "-": _sub,
    "*": _mul,
    "/": _div,
    "//": _floordiv,
    "%": _mod,
    "**": _pow,
    "==": operator.eq,
    "!=": operator.ne,
    "<": lambda l, r: _compare("<", l, r),
    "<=": lambda l, r: _compare("<=", l, r),
    ">": lambda l, r: _compare(">", l, r),
    ">=": lambda l, r: _compare(">=", l, r),
    "in": lambda l, r: _contains(r, l),
}

_RX_BINARY = {
    "+": "add", "-": "sub", "*": "mul", "/": "div", "//": "floordiv", "%": "mod",
    "<": "lt", "<=": "le", ">": "gt", ">=": "ge",
}

BINARY_OPS = frozenset(_BINARY) | {"and", "or"}


class BinOp(Expr):
    """Binary operation: left op right. `and`/`or` short-circuit."""

    def __init__(self, op: str, left: Expr, right: Expr):
        if op not in BINARY_OPS:
            raise ValueError(f"Unknown binary op: {op}")
        self.op = op
        self.left = _wrap(left)
        self.right = _wrap(right)

    def eval(self, ctx):
        if self.op == "and":
            l = self.left.eval(ctx)
            return self.right.eval(ctx) if l else l
        if self.op == "or":
            l = self.left.eval(ctx)
            return l if l else self.right.eval(ctx)
        return _BINARY[self.op](self.left.eval(ctx), self.right.eval(ctx))

    def kind(self, scope):
        op = self.op
        if op in ("==", "!=", "<", "<=", ">", ">=", "in"):
            return BOOL
        lk, rk = self.left.kind(scope), self.right.kind(scope)
        if op in ("and", "or"):
            return lk if lk == rk else ANY
        if op == "+":
            return lk if lk == rk and lk in (NUMBER, STRING, LIST) else ANY
        return NUMBER if lk == rk == NUMBER else ANY

    def to_js(self, scope):
        op = self.op
        if op == "**":
            raise Untranspilable(self, "exponentiation is not bit-identical on the client")
        lk, rk = self.left.kind(scope), self.right.kind(scope)
        l = self.left.to_js(scope)
        r = self.right.to_js(scope)
        if op in ("and", "or"):
            if lk == BOOL:
                return f"({l} {'&&' if op == 'and' else '||'} {r})"
            # Keeps Python truthiness and short-circuit order.
            return f"rx.{op}({l}, () => {r})"
        if op in ("==", "!="):
            if NONE in (lk, rk):
                return f"({l} {op} {r})"
            if lk == rk and lk in (NUMBER, STRING, BOOL):
                return f"({l} {'===' if op == '==' else '!=='} {r})"
            return f"rx.eq({l}, {r})" if op == "==" else f"!rx.eq({l}, {r})"
        if op == "in":
            return f"rx.contains({r}, {l})"
        if op in ("<", "<=", ">", ">="):
            # Strings go through rx: native ordering compares UTF-16 units.
            if lk == rk == NUMBER:
                return f"({l} {op} {r})"
        elif op == "+":
            if lk == rk and lk in (NUMBER, STRING):
                return f"({l} + {r})"
        elif op in ("-", "*"):
            if lk == rk == NUMBER:
                return f"({l} {op} {r})"
        return f"rx.{_RX_BINARY[op]}({l}, {r})"

    def children(self):
        return [self.left, self.right]

    def to_json(self) -> dict:
        return {
            "type": "BinOp",
            "op": self.op,
            "left": self.left.to_json(),
            "right": self.right.to_json(),
        }


class UnaryOp(Expr):
    """Unary operation: neg, abs, not."""

    def __init__(self, op: str, operand: Expr):
        if op not in ("neg", "abs", "not"):
            raise ValueError(f"Unknown unary op: {op}")
        self.op = op
        self.operand = _wrap(operand)

    def eval(self, ctx):
        v = self.operand.eval(ctx)
        if self.op == "not":
            return not v
        if not _is_number(v):
            raise TypeError(f"bad operand type for {self.op}: '{_type(v)}'")
        if self.op == "neg":
            return -v
        return abs(v)

    def kind(self, scope):
        if self.op == "not":
            return BOOL
        return NUMBER if self.operand.kind(scope) == NUMBER else ANY

    def to_js(self, scope):
        o = self.operand.to_js(scope)
        numeric = self.operand.kind(scope) == NUMBER
        if self.op == "not":
            if self.operand.kind(scope) == BOOL:
                return f"(!{o})"
            return f"(!rx.truthy({o}))"
        if self.op == "neg":
            return f"(-{o})" if numeric else f"rx.neg({o})"
        return f"Math.abs({o})" if numeric else f"rx.abs({o})"

    def children(self):
        return [self.operand]

    def to_json(self) -> dict:
        return {
            "type": "UnaryOp",
            "op": self.op,
            "operand": self.operand.to_json(),
        }


class If(Expr):
    """Conditional: if condition then then_ else else_.

    Compiles to a ternary; non-boolean conditions go through rx.truthy so
    empty lists and records are falsy on both sides.
    """

    def __init__(self, condition: Expr, then_: Expr, else_: Expr):
        self.condition = _wrap(condition)
        self.then_ = _wrap(then_)
        self.else_ = _wrap(else_)

    def eval(self, ctx):
        if self.condition.eval(ctx):
            return self.then_.eval(ctx)
        return self.else_.eval(ctx)

    def kind(self, scope):
        tk, ek = self.then_.kind(scope), self.else_.kind(scope)
        return tk if tk == ek else ANY

    def to_js(self, scope):
        cond = self.condition.to_js(scope)
        if self.condition.kind(scope) != BOOL:
            cond = f"rx.truthy({cond})"
        return f"({cond} ? {self.then_.to_js(scope)} : {self.else_.to_js(scope)})"

    def children(self):
        return [self.condition, self.then_, self.else_]

    def to_json(self) -> dict:
        return {
            "type": "If",
            "condition": self.condition.to_json(),
            "then": self.then_.to_json(),
            "else": self.else_.to_json(),
        }


class Coalesce(Expr):
    """Return the first non-None value from a list of expressions."""

    def __init__(self, exprs: list):
        self.exprs = [_wrap(e) for e in exprs]

    def eval(self, ctx):
        for e in self.exprs:
            v = e.eval(ctx)
            if v is not None:
                return v
        return None

    def kind(self, scope):
        return ANY

    def to_js(self, scope):
        if not self.exprs:
            return "null"
        return "(" + " ?? ".join(e.to_js(scope) for e in self.exprs) + ")"

    def children(self):
        return list(self.exprs)

    def to_json(self) -> dict:
        return {
            "type": "Coalesce",
            "exprs": [e.to_json() for e in self.exprs],
        }


class IsNull(Expr):
    """Check if an expression evaluates to null/None."""

    def __init__(self, operand: Expr):
        self.operand = _wrap(operand)

    def eval(self, ctx):
        return self.operand.eval(ctx) is None

    def kind(self, scope):
        return BOOL

    def to_js(self, scope):
        return f"({self.operand.to_js(scope)} == null)"

    def children(self):
        return [self.operand]

    def to_json(self) -> dict:
        return {"type": "IsNull", "operand": self.operand.to_json()}


class IsBlank(Expr):
    """None, or a string holding only whitespace."""

    def __init__(self, operand: Expr):
        self.operand = _wrap(operand)

    def eval(self, ctx):
        return _blank(self.operand.eval(ctx))

    def kind(self, scope):
        return BOOL

    def to_js(self, scope):
        return f"rx.blank({self.operand.to_js(scope)})"

    def children(self):
        return [self.operand]

    def to_json(self) -> dict:
        return {"type": "IsBlank", "operand": self.operand.to_json()}


class StrOp(Expr):
    """String operation: upper, lower, trim, starts_with, ends_with."""

    _OPS = ("upper", "lower", "trim", "starts_with", "ends_with")

    def __init__(self, op: str, operand: Expr, arg: Expr = None):
        if op not in self._OPS:
            raise ValueError(f"Unknown string op: {op}")
        self.op = op
        self.operand = _wrap(operand)
        self.arg = _wrap(arg) if arg is not None else None

    def eval(self, ctx):
        v = _require_str(self.op, self.operand.eval(ctx))
        if self.op == "upper":
            return v.upper()
        if self.op == "lower":
            return v.lower()
        if self.op == "trim":
            return v.strip(_PY_SPACE)
        a = _require_str(self.op, self.arg.eval(ctx))
        if self.op == "starts_with":
            return v.startswith(a)
        return v.endswith(a)

    def kind(self, scope):
        return BOOL if self.arg is not None else STRING

    def to_js(self, scope):
        s = self.operand.to_js(scope)
        fn = {"starts_with": "startsWith", "ends_with": "endsWith"}.get(self.op, self.op)
        if self.arg is None:
            return f"rx.{fn}({s})"
        return f"rx.{fn}({s}, {self.arg.to_js(scope)})"

    def children(self):
        return [self.operand] + ([self.arg] if self.arg is not None else [])

    def to_json(self) -> dict:
        d = {"type": "StrOp", "op": self.op, "operand": self.operand.to_json()}
        if self.arg is not None:
            d["arg"] = self.arg.to_json()
        return d


class Func(Expr):
    """Named function call: floor, ceil, round, abs, min, max, sqrt, log, exp, decimal."""

    _PYTHON_FUNCS = {
        "floor": lambda v: math.floor(_finite("floor", v)),
        "ceil": lambda v: math.ceil(_finite("ceil", v)),
        "round": lambda v, *nd: round(_finite("round", v), *nd),
        "abs": lambda v: abs(_finite("abs", v)),
        "min": lambda *args: _pick("min", args),
        "max": lambda *args: _pick("max", args),
        "sqrt": math.sqrt,
        "log": math.log,
        "exp": math.exp,
        "decimal": _to_decimal,
    }

    # Client allow-list. Anything else is server-only.
    _JS_FUNCS = {
        "floor": "rx.floor", "ceil": "rx.ceil", "round": "rx.round",
        "abs": "rx.abs", "min": "rx.min", "max": "rx.max",
    }

    _SERVER_ONLY = {
        "sqrt": "transcendental results are not bit-identical on the client",
        "log": "transcendental results are not bit-identical on the client",
        "exp": "transcendental results are not bit-identical on the client",
        "decimal": "decimal arithmetic has no exact client equivalent",
    }

    def __init__(self, name: str, args: list):
        if name not in self._PYTHON_FUNCS:
            raise ValueError(f"Unknown function: {name}")
        self.name = name
        self.args = [_wrap(a) for a in args]

    def eval(self, ctx):
        fn = self._PYTHON_FUNCS[self.name]
        evaluated = [a.eval(ctx) for a in self.args]
        return fn(*evaluated)

    def kind(self, scope):
        if self.name == "decimal":
            return DECIMAL
        if self.name in ("min", "max"):
            kinds = {a.kind(scope) for a in self.args}
            return NUMBER if len(self.args) > 1 and kinds == {NUMBER} else ANY
        return NUMBER

    def to_js(self, scope):
        if self.name in self._SERVER_ONLY:
            raise Untranspilable(self, f"{self.name}(): {self._SERVER_ONLY[self.name]}")
        if self.name == "round" and len(self.args) > 1:
            raise Untranspilable(self, "round() with ndigits uses decimal rounding")
        args_js = ", ".join(a.to_js(scope) for a in self.args)
        return f"{self._JS_FUNCS[self.name]}({args_js})"

    def children(self):
        return list(self.args)

    def to_json(self) -> dict:
        return {
            "type": "Func",
            "name": self.name,
            "args": [a.to_json() for a in self.args],
        }


class HostCall(Expr):
    """Call to a registered server-only Python function. Never transpiled."""

    def __init__(self, name: str, fn, args: list):
        self.name = name
        self.fn = fn
        self.args = [_wrap(a) for a in args]

    def eval(self, ctx):
        return self.fn(*[a.eval(ctx) for a in self.args])

    def kind(self, scope):
        return ANY

    def to_js(self, scope):
        raise Untranspilable(self, f"'{self.name}' is a server-only function")

    def children(self):
        return list(self.args)

    def to_json(self) -> dict:
        return {
            "type": "HostCall",
            "name": self.name,
            "args": [a.to_json() for a in self.args],
        }


# ---------------------------------------------------------------------------
# Collection nodes
# ---------------------------------------------------------------------------

class Length(Expr):
    """Length of a string (code points), list or record."""

    def __init__(self, operand: Expr):
        self.operand = _wrap(operand)

    def eval(self, ctx):
        return _length(self.operand.eval(ctx))

    def kind(self, scope):
        return NUMBER

    def to_js(self, scope):
        return f"rx.len({self.operand.to_js(scope)})"

    def children(self):
        return [self.operand]

    def to_json(self) -> dict:
        return {"type": "Length", "operand": self.operand.to_json()}


class Sum(Expr):
    """Sum of a list of numbers, folded left to right from 0."""

    def __init__(self, operand: Expr):
        self.operand = _wrap(operand)

    def eval(self, ctx):
        return _sum(self.operand.eval(ctx))

    def kind(self, scope):
        return NUMBER

    def to_js(self, scope):
        return f"rx.sum({self.operand.to_js(scope)})"

    def children(self):
        return [self.operand]

    def to_json(self) -> dict:
        return {"type": "Sum", "operand": self.operand.to_json()}


class Join(Expr):
    """Join a list of strings with a separator."""

    def __init__(self, operand: Expr, sep: Expr):
        self.operand = _wrap(operand)
        self.sep = _wrap(sep)

    def eval(self, ctx):
        return _join(self.operand.eval(ctx), self.sep.eval(ctx))

    def kind(self, scope):
        return STRING

    def to_js(self, scope):
        return f"rx.join({self.operand.to_js(scope)}, {self.sep.to_js(scope)})"

    def children(self):
        return [self.operand, self.sep]

    def to_json(self) -> dict:
        return {"type": "Join", "operand": self.operand.to_json(), "sep": self.sep.to_json()}


class Lambda(Expr):
    """One-argument function body used by map/filter/reject."""

    def __init__(self, param: str, body: Expr):
        self.param = param
        self.body = _wrap(body)

    def call(self, ctx, item):
        return self.body.eval(ChainMap({("var", self.param): item}, ctx))

    def eval(self, ctx):
        raise TypeError("a lambda is only valid as a collection operation argument")

    def kind(self, scope):
        return ANY

    def to_js(self, scope):
        inner = scope.bind(self.param)
        param = Var(self.param).to_js(inner)
        return f"(({param}) => {self.body.to_js(inner)})"

    def children(self):
        return [self.body]

    def to_json(self) -> dict:
        return {"type": "Lambda", "param": self.param, "body": self.body.to_json()}


class Collection(Expr):
    """List operation with a lambda: map, filter, reject."""

    def __init__(self, op: str, collection: Expr, fn: Lambda):
        if op not in ("map", "filter", "reject"):
            raise ValueError(f"Unknown collection op: {op}")
        self.op = op
        self.collection = _wrap(collection)
        self.fn = fn

    def eval(self, ctx):
        items = _as_list(self.collection.eval(ctx))
        if self.op == "map":
            return [self.fn.call(ctx, x) for x in items]
        if self.op == "filter":
            return [x for x in items if self.fn.call(ctx, x)]
        return [x for x in items if not self.fn.call(ctx, x)]

    def kind(self, scope):
        return LIST

    def to_js(self, scope):
        items = f"rx.list({self.collection.to_js(scope)})"
        if self.op == "map":
            return f"{items}.map{self.fn.to_js(scope)}"
        inner = scope.bind(self.fn.param)
        param = Var(self.fn.param).to_js(inner)
        body = self.fn.body.to_js(inner)
        if self.fn.body.kind(inner) != BOOL:
            body = f"rx.truthy({body})"
        if self.op == "reject":
            body = f"!{body}"
        return f"{items}.filter(({param}) => {body})"

    def children(self):
        return [self.collection, self.fn]

    def to_json(self) -> dict:
        return {
            "type": "Collection",
            "op": self.op,
            "collection": self.collection.to_json(),
            "fn": self.fn.to_json(),
        }


class ListLit(Expr):
    """List literal built from expressions."""

    def __init__(self, items: list):
        self.items = [_wrap(i) for i in items]

    def eval(self, ctx):
        return [i.eval(ctx) for i in self.items]

    def kind(self, scope):
        return LIST

    def to_js(self, scope):
        return "[" + ", ".join(i.to_js(scope) for i in self.items) + "]"

    def children(self):
        return list(self.items)

    def to_json(self) -> dict:
        return {"type": "ListLit", "items": [i.to_json() for i in self.items]}


class RecordLit(Expr):
    """Record literal, optionally spreading a base record: {**base, "k": v}."""

    def __init__(self, entries, base: Expr = None):
        self.entries = [(k, _wrap(v)) for k, v in entries]
        self.base = _wrap(base) if base is not None else None

    def eval(self, ctx):
        out = {}
        if self.base is not None:
            b = self.base.eval(ctx)
            if not isinstance(b, dict):
                raise TypeError(f"cannot spread '{_type(b)}' into a record")
            out.update(b)
        for k, v in self.entries:
            out[k] = v.eval(ctx)
        return out

    def kind(self, scope):
        return RECORD

    def to_js(self, scope):
        parts = []
        if self.base is not None:
            parts.append(f"...rx.record({self.base.to_js(scope)})")
        for k, v in self.entries:
            parts.append(f"{json.dumps(k)}: {v.to_js(scope)}")
        return "({" + ", ".join(parts) + "})"

    def children(self):
        nodes = [self.base] if self.base is not None else []
        return nodes + [v for _, v in self.entries]

    def to_json(self) -> dict:
        d = {"type": "RecordLit", "entries": [[k, v.to_json()] for k, v in self.entries]}
        if self.base is not None:
            d["base"] = self.base.to_json()
        return d


# ---------------------------------------------------------------------------
# Static analysis
# ---------------------------------------------------------------------------

def walk(expr: Expr):
    """Yield every node of the tree, parents before children."""
    stack = [expr]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children()))


def field_refs(expr: Expr) -> tuple:
    """Names of every Field referenced by expr, in first-seen order."""
    seen = {}
    for node in walk(expr):
        if isinstance(node, Field):
            seen.setdefault(node.name, None)
    return tuple(seen)


# ---------------------------------------------------------------------------
# Deserialization
# ---------------------------------------------------------------------------

def from_json(data, functions=None) -> Expr:
    """Deserialize a JSON dict back to an Expr tree.

    `functions` maps HostCall names to their Python callables.
    """
    if isinstance(data, str):
        data = json.loads(data)

    def load(d):
        return from_json(d, functions)

    node_type = data["type"]

    if node_type == "Const":
        if data.get("remove"):
            return Const(REMOVE)
        if "decimal" in data:
            return Const(Decimal(data["decimal"]))
        return Const(data["value"])

    if node_type == "Field":
        return Field(data["name"])

    if node_type == "Var":
        return Var(data["name"])

    if node_type == "Attr":
        return Attr(load(data["obj"]), data["name"], data.get("optional", False))

    if node_type == "Index":
        return Index(load(data["obj"]), load(data["key"]))

    if node_type == "BinOp":
        return BinOp(data["op"], load(data["left"]), load(data["right"]))

    if node_type == "UnaryOp":
        return UnaryOp(data["op"], load(data["operand"]))

    if node_type == "If":
        return If(load(data["condition"]), load(data["then"]), load(data["else"]))

    if node_type == "Coalesce":
        return Coalesce([load(e) for e in data["exprs"]])

    if node_type == "IsNull":
        return IsNull(load(data["operand"]))

    if node_type == "IsBlank":
        return IsBlank(load(data["operand"]))

    if node_type == "StrOp":
        arg = load(data["arg"]) if "arg" in data else None
        return StrOp(data["op"], load(data["operand"]), arg)

    if node_type == "Func":
        return Func(data["name"], [load(a) for a in data["args"]])

    if node_type == "HostCall":
        name = data["name"]
        if not functions or name not in functions:
            raise ValueError(f"No host function registered for '{name}'")
        return HostCall(name, functions[name], [load(a) for a in data["args"]])

    if node_type == "Length":
        return Length(load(data["operand"]))

    if node_type == "Sum":
        return Sum(load(data["operand"]))

    if node_type == "Join":
        return Join(load(data["operand"]), load(data["sep"]))

    if node_type == "Lambda":
        return Lambda(data["param"], load(data["body"]))

    if node_type == "Collection":
        return Collection(data["op"], load(data["collection"]), load(data["fn"]))

    if node_type == "ListLit":
        return ListLit([load(i) for i in data["items"]])

    if node_type == "RecordLit":
        base = load(data["base"]) if "base" in data else None
        return RecordLit([(k, load(v)) for k, v in data["entries"]], base)

    raise ValueError(f"Unknown expression type: {node_type}")
