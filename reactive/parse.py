"""
Expression text → Expr tree.

Derivations and actions may be declared as text instead of operator-built
trees. The grammar is Python expression syntax restricted to a closed set of
constructs, plus `?.` for null-propagating access:

    parse("quantity * unit_price")
    parse("sum(map(lambda i: i['price'] * i['qty'], items))")
    parse("coalesce(user?.name, 'anonymous')")
    parse("current + [value]", variables=("current", "value"))

Bare names are field references unless listed in `variables` (action
arguments) or bound by an enclosing lambda. Anything outside the grammar
raises ExpressionSyntaxError at declaration time.
"""

import ast

from reactive.errors import ExpressionSyntaxError
from reactive.expr import (
    REMOVE, Attr, BinOp, Coalesce, Collection, Const, Field, Func, HostCall,
    If, Index, IsBlank, IsNull, Join, Lambda, Length, ListLit, RecordLit,
    StrOp, Sum, UnaryOp, Var,
)


_OPTIONAL_PREFIX = "_opt_"

_BINOPS = {
    ast.Add: "+",
    ast.Sub: "-",
    ast.Mult: "*",
    ast.Div: "/",
    ast.FloorDiv: "//",
    ast.Mod: "%",
    ast.Pow: "**",
}

_CMPOPS = {
    ast.Eq: "==",
    ast.NotEq: "!=",
    ast.Lt: "<",
    ast.LtE: "<=",
    ast.Gt: ">",
    ast.GtE: ">=",
    ast.In: "in",
}

_NUMERIC_FUNCS = ("floor", "ceil", "round", "abs", "min", "max", "sqrt", "log", "exp", "decimal")

# method name → (builder, number of arguments)
_METHODS = {
    "upper": (lambda o: StrOp("upper", o), 0),
    "lower": (lambda o: StrOp("lower", o), 0),
    "strip": (lambda o: StrOp("trim", o), 0),
    "trim": (lambda o: StrOp("trim", o), 0),
    "startswith": (lambda o, a: StrOp("starts_with", o, a), 1),
    "starts_with": (lambda o, a: StrOp("starts_with", o, a), 1),
    "endswith": (lambda o, a: StrOp("ends_with", o, a), 1),
    "ends_with": (lambda o, a: StrOp("ends_with", o, a), 1),
    "length": (lambda o: Length(o), 0),
    "sum": (lambda o: Sum(o), 0),
    "join": (lambda o, sep: Join(o, sep), 1),
    "contains": (lambda o, item: BinOp("in", item, o), 1),
}

_RESERVED_PARAMS = ("state", "rx")


def _rewrite_optional(source: str) -> str:
    """Replace `?.` outside string literals with a marker attribute prefix."""
    out = []
    quote = None
    i = 0
    while i < len(source):
        ch = source[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < len(source):
                out.append(source[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            out.append(ch)
        elif source.startswith("?.", i):
            out.append("." + _OPTIONAL_PREFIX)
            i += 2
            continue
        else:
            out.append(ch)
        i += 1
    return "".join(out)


class _Converter:
    """Walks a Python AST and builds the equivalent Expr tree."""

    def __init__(self, source, variables, functions):
        self.source = source
        self.variables = set(variables)
        self.functions = dict(functions or {})
        self.bound = []

    def fail(self, node, reason):
        col = getattr(node, "col_offset", None)
        raise ExpressionSyntaxError(self.source, reason, None if col is None else col + 1)

    def convert(self, node):
        handler = getattr(self, "_" + type(node).__name__, None)
        if handler is None:
            self.fail(node, f"{type(node).__name__} is not supported")
        return handler(node)

    # ── Leaves ─────────────────────────────────────────────────────

    def _Constant(self, node):
        v = node.value
        if v is None or isinstance(v, (bool, int, float, str)):
            return Const(v)
        self.fail(node, f"{type(v).__name__} literals are not supported")

    def _Name(self, node):
        name = node.id
        if name in self.bound or name in self.variables:
            return Var(name)
        if name == "REMOVE":
            return Const(REMOVE)
        if name.startswith(_OPTIONAL_PREFIX):
            self.fail(node, "'?.' must follow an expression")
        return Field(name)

    # ── Access ─────────────────────────────────────────────────────

    def _Attribute(self, node):
        obj = self.convert(node.value)
        if node.attr.startswith(_OPTIONAL_PREFIX):
            return Attr(obj, node.attr[len(_OPTIONAL_PREFIX):], optional=True)
        return Attr(obj, node.attr)

    def _Subscript(self, node):
        key = node.slice
        if isinstance(key, ast.Slice):
            self.fail(node, "slices are not supported")
        return Index(self.convert(node.value), self.convert(key))

    # ── Operators ──────────────────────────────────────────────────

    def _BinOp(self, node):
        op = _BINOPS.get(type(node.op))
        if op is None:
            self.fail(node, f"operator {type(node.op).__name__} is not supported")
        return BinOp(op, self.convert(node.left), self.convert(node.right))

    def _UnaryOp(self, node):
        if isinstance(node.op, ast.Not):
            return UnaryOp("not", self.convert(node.operand))
        if isinstance(node.op, (ast.USub, ast.UAdd)):
            operand = node.operand
            # Fold numeric literals so `-1` stays a constant.
            if (isinstance(operand, ast.Constant)
                    and isinstance(operand.value, (int, float))
                    and not isinstance(operand.value, bool)):
                return Const(-operand.value if isinstance(node.op, ast.USub) else operand.value)
            if isinstance(node.op, ast.UAdd):
                self.fail(node, "unary + is only supported on numeric literals")
            return UnaryOp("neg", self.convert(operand))
        self.fail(node, f"operator {type(node.op).__name__} is not supported")

    def _BoolOp(self, node):
        op = "and" if isinstance(node.op, ast.And) else "or"
        values = [self.convert(v) for v in node.values]
        result = values[0]
        for v in values[1:]:
            result = BinOp(op, result, v)
        return result

    def _Compare(self, node):
        left = self.convert(node.left)
        parts = []
        for op, comparator in zip(node.ops, node.comparators):
            if isinstance(op, (ast.Is, ast.IsNot)):
                if not (isinstance(comparator, ast.Constant) and comparator.value is None):
                    self.fail(node, "'is' only compares against None")
                check = IsNull(left)
                parts.append(UnaryOp("not", check) if isinstance(op, ast.IsNot) else check)
                right = Const(None)
            else:
                right = self.convert(comparator)
                if isinstance(op, ast.NotIn):
                    parts.append(UnaryOp("not", BinOp("in", left, right)))
                elif type(op) in _CMPOPS:
                    parts.append(BinOp(_CMPOPS[type(op)], left, right))
                else:
                    self.fail(node, f"comparison {type(op).__name__} is not supported")
            left = right
        result = parts[0]
        for p in parts[1:]:
            result = BinOp("and", result, p)
        return result

    def _IfExp(self, node):
        return If(self.convert(node.test), self.convert(node.body), self.convert(node.orelse))

    # ── Literals ───────────────────────────────────────────────────

    def _List(self, node):
        return ListLit([self.convert(e) for e in node.elts])

    _Tuple = _List

    def _Dict(self, node):
        base = None
        entries = []
        for i, (k, v) in enumerate(zip(node.keys, node.values)):
            if k is None:
                if i != 0:
                    self.fail(node, "a record spread must come first")
                base = self.convert(v)
                continue
            if not (isinstance(k, ast.Constant) and isinstance(k.value, str)):
                self.fail(k, "record keys must be string literals")
            entries.append((k.value, self.convert(v)))
        return RecordLit(entries, base)

    def _Lambda(self, node):
        self.fail(node, "lambdas are only allowed as map/filter/reject arguments")

    # ── Calls ──────────────────────────────────────────────────────

    def _lambda(self, node):
        if not isinstance(node, ast.Lambda):
            self.fail(node, "expected a one-argument lambda")
        args = node.args
        if (len(args.args) != 1 or args.vararg or args.kwarg
                or args.kwonlyargs or args.defaults or args.posonlyargs):
            self.fail(node, "collection lambdas take exactly one argument")
        param = args.args[0].arg
        if param in _RESERVED_PARAMS:
            self.fail(node, f"'{param}' cannot be used as a lambda parameter")
        self.bound.append(param)
        try:
            body = self.convert(node.body)
        finally:
            self.bound.pop()
        return Lambda(param, body)

    def _Call(self, node):
        if node.keywords:
            self.fail(node, "keyword arguments are not supported")
        if isinstance(node.func, ast.Attribute):
            return self._method(node)
        if not isinstance(node.func, ast.Name):
            self.fail(node, "only named functions can be called")

        name = node.func.id
        raw = node.args

        def arity(*counts):
            if len(raw) not in counts:
                self.fail(node, f"{name}() takes {' or '.join(map(str, counts))} argument(s)")

        if name in ("map", "filter", "reject"):
            arity(2)
            return Collection(name, self.convert(raw[1]), self._lambda(raw[0]))
        if name in self.functions:
            return HostCall(name, self.functions[name], [self.convert(a) for a in raw])

        args = [self.convert(a) for a in raw]
        if name in ("len", "length"):
            arity(1)
            return Length(args[0])
        if name == "sum":
            arity(1)
            return Sum(args[0])
        if name == "join":
            arity(1, 2)
            return Join(args[0], args[1] if len(args) > 1 else Const(","))
        if name == "blank":
            arity(1)
            return IsBlank(args[0])
        if name in ("is_nil", "is_none"):
            arity(1)
            return IsNull(args[0])
        if name == "coalesce":
            if not args:
                self.fail(node, "coalesce() needs at least one argument")
            return Coalesce(args)
        if name in ("upper", "lower", "trim"):
            arity(1)
            return StrOp(name, args[0])
        if name in ("starts_with", "ends_with"):
            arity(2)
            return StrOp(name, args[0], args[1])
        if name in _NUMERIC_FUNCS:
            if name in ("min", "max"):
                if not args:
                    self.fail(node, f"{name}() needs at least one argument")
            elif name == "round":
                arity(1, 2)
            else:
                arity(1)
            return Func(name, args)
        self.fail(node, f"unknown function '{name}'")

    def _method(self, node):
        target = node.func
        name = target.attr
        if name.startswith(_OPTIONAL_PREFIX):
            self.fail(node, "'?.' cannot be used on a method call")
        obj = self.convert(target.value)
        if name in ("map", "filter", "reject"):
            if len(node.args) != 1:
                self.fail(node, f".{name}() takes a single lambda")
            return Collection(name, obj, self._lambda(node.args[0]))
        if name not in _METHODS:
            self.fail(node, f"unknown method '.{name}()'")
        builder, count = _METHODS[name]
        if name == "join" and not node.args:
            return Join(obj, Const(","))
        if len(node.args) != count:
            self.fail(node, f".{name}() takes {count} argument(s)")
        return builder(obj, *[self.convert(a) for a in node.args])


def parse(source: str, variables=(), functions=None):
    """Parse expression text into an Expr tree.

    Args:
        source: expression text.
        variables: names bound as Vars instead of field references
            (e.g. an action's "current", "item", "value").
        functions: {name: callable} of server-only host functions;
            calls to them become HostCall nodes.
    """
    if not isinstance(source, str) or not source.strip():
        raise ExpressionSyntaxError(source, "expression text is empty")
    text = _rewrite_optional(source.strip())
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as e:
        raise ExpressionSyntaxError(source, e.msg, e.offset) from None
    return _Converter(source, variables, functions).convert(tree.body)
