"""
Tests for the expression tree: server evaluation semantics and the client
source each node emits.
"""

import operator
from decimal import Decimal
from functools import reduce

import pytest

from reactive.errors import Untranspilable
from reactive.expr import (
    ANY, BOOL, LIST, NUMBER, STRING, REMOVE,
    Attr, BinOp, Coalesce, Collection, Const, Field, Func, HostCall, If, Index,
    IsBlank, IsNull, Join, Lambda, Length, ListLit, RecordLit, StrOp, Sum,
    UnaryOp, Var, JsScope, field_refs, from_json, walk,
)


NUMBERS = JsScope({"a": NUMBER, "b": NUMBER, "s": STRING, "t": STRING, "ok": BOOL})
UNTYPED = JsScope()


# ===========================================================================
# Server evaluation
# ===========================================================================

class TestConst:
    def test_eval(self):
        assert Const(42).eval({}) == 42
        assert Const("hello").eval({}) == "hello"
        assert Const(None).eval({}) is None

    def test_to_js_literals(self):
        assert Const(42).to_js(UNTYPED) == "42"
        assert Const(1.5).to_js(UNTYPED) == "1.5"
        assert Const("it's").to_js(UNTYPED) == '"it\'s"'
        assert Const(True).to_js(UNTYPED) == "true"
        assert Const(None).to_js(UNTYPED) == "null"
        assert Const(REMOVE).to_js(UNTYPED) == "rx.REMOVE"

    def test_negative_numbers_are_parenthesized(self):
        assert Const(-1).to_js(UNTYPED) == "(-1)"
        assert Const(-0.5).to_js(UNTYPED) == "(-0.5)"

    def test_collection_literals(self):
        assert Const([1, "a", None]).to_js(UNTYPED) == '[1, "a", null]'
        assert Const({"k": 1}).to_js(UNTYPED) == '({"k": 1})'

    def test_decimal_is_untranspilable(self):
        with pytest.raises(Untranspilable, match="decimal"):
            Const(Decimal("1.10")).to_js(UNTYPED)

    def test_unsafe_integer_is_untranspilable(self):
        assert Const(2 ** 53).to_js(UNTYPED) == str(2 ** 53)
        with pytest.raises(Untranspilable, match="exact range"):
            Const(2 ** 53 + 1).to_js(UNTYPED)

    def test_non_finite_float_is_untranspilable(self):
        with pytest.raises(Untranspilable):
            Const(float("inf")).to_js(UNTYPED)


class TestArithmetic:
    def test_add_numbers_and_strings(self):
        assert (Field("a") + Field("b")).eval({"a": 1, "b": 2.5}) == 3.5
        assert (Field("s") + "!").eval({"s": "hi"}) == "hi!"
        assert (Field("xs") + Field("ys")).eval({"xs": [1], "ys": [2]}) == [1, 2]

    def test_add_rejects_mixed_types(self):
        with pytest.raises(TypeError, match="unsupported operand"):
            (Field("a") + Field("s")).eval({"a": 1, "s": "x"})

    def test_floor_division_and_modulo_follow_python(self):
        ctx = {"a": -7, "b": 2}
        assert (Field("a") // Field("b")).eval(ctx) == -4
        assert (Field("a") % Field("b")).eval(ctx) == 1

    def test_division_by_zero_fails(self):
        with pytest.raises(ZeroDivisionError):
            (Field("a") / Field("b")).eval({"a": 1, "b": 0})
        with pytest.raises(ZeroDivisionError):
            (Field("a") % Field("b")).eval({"a": 1, "b": 0})

    def test_repeat(self):
        assert (Field("s") * 3).eval({"s": "ab"}) == "ababab"
        with pytest.raises(TypeError):
            (Field("s") * 1.5).eval({"s": "ab"})

    def test_unary(self):
        assert (-Field("a")).eval({"a": 3}) == -3
        assert abs(Field("a")).eval({"a": -3}) == 3
        assert (~Field("a")).eval({"a": []}) is True
        with pytest.raises(TypeError):
            (-Field("s")).eval({"s": "x"})


class TestComparisons:
    def test_ordering(self):
        assert (Field("a") < Field("b")).eval({"a": 1, "b": 2}) is True
        assert (Field("s") >= "b").eval({"s": "c"}) is True

    def test_ordering_rejects_lists_and_mixed_types(self):
        with pytest.raises(TypeError):
            (Field("a") < Field("b")).eval({"a": [1], "b": [2]})
        with pytest.raises(TypeError):
            (Field("a") < Field("b")).eval({"a": 1, "b": "2"})

    def test_equality_is_structural(self):
        expr = BinOp("==", Field("a"), Field("b"))
        assert expr.eval({"a": [1, {"k": 2}], "b": [1, {"k": 2}]}) is True

    def test_membership(self):
        assert Field("tags").contains("x").eval({"tags": ["x", "y"]}) is True
        assert Field("s").is_in("haystack").eval({"s": "st"}) is True
        with pytest.raises(TypeError):
            Field("n").contains(1).eval({"n": 5})


class TestLogic:
    def test_and_or_return_operands(self):
        assert (Field("a") & Field("b")).eval({"a": 0, "b": 5}) == 0
        assert (Field("a") | Field("b")).eval({"a": "", "b": "d"}) == "d"

    def test_short_circuit(self):
        # The right side would raise if evaluated.
        expr = Field("a") & (Field("b") / 0)
        assert expr.eval({"a": 0, "b": 1}) == 0

    def test_if_uses_python_truthiness(self):
        expr = If(Field("flag"), "yes", "no")
        assert expr.eval({"flag": []}) == "no"
        assert expr.eval({"flag": {"k": 1}}) == "yes"


class TestAccess:
    def test_index(self):
        assert Field("xs")[-1].eval({"xs": [1, 2, 3]}) == 3
        assert Field("rec")["k"].eval({"rec": {"k": "v"}}) == "v"
        with pytest.raises(KeyError):
            Field("rec")["missing"].eval({"rec": {}})
        with pytest.raises(TypeError):
            Field("xs")["k"].eval({"xs": [1]})

    def test_integral_float_counts(self):
        # A float that crossed JSON as a whole number indexes and repeats.
        assert Field("xs")[Field("i")].eval({"xs": ["a", "b"], "i": 1.0}) == "b"
        assert (Field("s") * Field("n")).eval({"s": "ab", "n": 3.0}) == "ababab"
        assert (Field("n") * Field("xs")).eval({"n": 2.0, "xs": [1]}) == [1, 1]
        with pytest.raises(TypeError):
            Field("xs")[Field("i")].eval({"xs": ["a"], "i": 0.5})
        with pytest.raises(TypeError):
            (Field("s") * Field("n")).eval({"s": "ab", "n": 1.5})

    def test_attr(self):
        assert Field("user").attr("name").eval({"user": {"name": "ann"}}) == "ann"
        with pytest.raises(TypeError, match="of None"):
            Field("user").attr("name").eval({"user": None})

    def test_optional_attr_propagates_none(self):
        assert Field("user").maybe("name").eval({"user": None}) is None
        assert Field("user").maybe("name").eval({"user": {}}) is None


class TestNullHelpers:
    def test_coalesce(self):
        expr = Coalesce([Field("a"), Field("b"), "z"])
        assert expr.eval({"a": None, "b": None}) == "z"
        assert expr.eval({"a": None, "b": 0}) == 0

    def test_is_null(self):
        assert Field("a").is_null().eval({"a": None}) is True
        assert Field("a").is_null().eval({"a": 0}) is False

    def test_is_blank(self):
        assert Field("s").is_blank().eval({"s": None}) is True
        assert Field("s").is_blank().eval({"s": " \t" + chr(0x3000)}) is True
        assert Field("s").is_blank().eval({"s": " x "}) is False
        assert Field("s").is_blank().eval({"s": 0}) is False


class TestStrings:
    def test_case_and_trim(self):
        ctx = {"s": chr(0xA0) + " Hi " + chr(0x2003)}
        assert Field("s").trim().eval(ctx) == "Hi"
        assert Field("s").trim().upper().eval(ctx) == "HI"

    def test_prefix_suffix(self):
        assert Field("s").starts_with("ab").eval({"s": "abc"}) is True
        assert Field("s").ends_with("bc").eval({"s": "abc"}) is True

    def test_requires_strings(self):
        with pytest.raises(TypeError):
            Field("s").upper().eval({"s": 1})

    def test_length_counts_code_points(self):
        assert Field("s").length().eval({"s": chr(0x1F600) + "a"}) == 2


class TestCollections:
    ITEMS = [{"price": 2, "qty": 3, "done": True}, {"price": 1, "qty": 1, "done": False}]

    def test_map_and_sum(self):
        expr = Field("items").map(lambda i: i["price"] * i["qty"]).sum()
        assert expr.eval({"items": self.ITEMS}) == 7

    def test_filter_and_reject(self):
        done = Field("items").filter(lambda i: i["done"]).length()
        todo = Field("items").reject(lambda i: i["done"]).length()
        assert done.eval({"items": self.ITEMS}) == 1
        assert todo.eval({"items": self.ITEMS}) == 1

    def test_sum_folds_left(self):
        values = [0.1] * 10
        assert Sum(Const(values)).eval({}) == reduce(operator.add, values, 0)

    def test_sum_rejects_non_numbers(self):
        with pytest.raises(TypeError):
            Sum(Const([1, "2"])).eval({})

    def test_join(self):
        assert Field("tags").join(", ").eval({"tags": ["a", "b"]}) == "a, b"
        with pytest.raises(TypeError):
            Field("tags").join().eval({"tags": ["a", 1]})

    def test_lambda_is_not_a_value(self):
        with pytest.raises(TypeError):
            Lambda("x", Var("x")).eval({})

    def test_record_literal_spreads_base(self):
        expr = RecordLit([("qty", Var("item")["qty"] + 1)], base=Var("item"))
        ctx = {("var", "item"): {"id": 1, "qty": 1}}
        assert expr.eval(ctx) == {"id": 1, "qty": 2}

    def test_list_literal(self):
        assert ListLit([Field("a"), 2]).eval({"a": 1}) == [1, 2]


class TestFunctions:
    def test_round_is_bankers(self):
        assert Func("round", [2.5]).eval({}) == 2
        assert Func("round", [3.5]).eval({}) == 4

    def test_min_max(self):
        assert Func("max", [Field("a"), 5, 3]).eval({"a": 1}) == 5
        assert Func("min", [Field("xs")]).eval({"xs": [3, 1, 2]}) == 1
        with pytest.raises(ValueError):
            Func("min", [Field("xs")]).eval({"xs": []})

    def test_decimal(self):
        assert Func("decimal", [1.1]).eval({}) == Decimal("1.1")

    def test_unknown_function(self):
        with pytest.raises(ValueError):
            Func("nope", [1])

    def test_host_call(self):
        expr = HostCall("fx", lambda v: v * 2, [Field("a")])
        assert expr.eval({"a": 3}) == 6


# ===========================================================================
# Client emission
# ===========================================================================

class TestEmission:
    def test_native_operators_with_known_kinds(self):
        assert (Field("a") + Field("b")).to_js(NUMBERS) == "(state.a + state.b)"
        assert (Field("a") * 2).to_js(NUMBERS) == "(state.a * 2)"
        assert (Field("a") > 1).to_js(NUMBERS) == "(state.a > 1)"
        assert (Field("s") + Field("t")).to_js(NUMBERS) == "(state.s + state.t)"

    def test_helpers_with_unknown_kinds(self):
        assert (Field("a") + Field("b")).to_js(UNTYPED) == "rx.add(state.a, state.b)"
        assert (Field("a") - 1).to_js(UNTYPED) == "rx.sub(state.a, 1)"

    def test_division_always_uses_helpers(self):
        assert (Field("a") / Field("b")).to_js(NUMBERS) == "rx.div(state.a, state.b)"
        assert (Field("a") // 2).to_js(NUMBERS) == "rx.floordiv(state.a, 2)"
        assert (Field("a") % 2).to_js(NUMBERS) == "rx.mod(state.a, 2)"

    def test_string_ordering_goes_through_rx(self):
        assert (Field("s") < Field("t")).to_js(NUMBERS) == "rx.lt(state.s, state.t)"

    def test_equality(self):
        assert BinOp("==", Field("a"), Field("b")).to_js(NUMBERS) == "(state.a === state.b)"
        assert BinOp("!=", Field("x"), Field("y")).to_js(UNTYPED) == "!rx.eq(state.x, state.y)"
        assert BinOp("==", Field("x"), None).to_js(UNTYPED) == "(state.x == null)"

    def test_boolean_connectives(self):
        both = (Field("a") > 1) & (Field("b") > 2)
        assert both.to_js(NUMBERS) == "((state.a > 1) && (state.b > 2))"
        assert (Field("x") | Field("y")).to_js(UNTYPED) == "rx.or(state.x, () => state.y)"
        assert (~Field("ok")).to_js(NUMBERS) == "(!state.ok)"
        assert (~Field("x")).to_js(UNTYPED) == "(!rx.truthy(state.x))"

    def test_conditional(self):
        assert If(Field("x"), 1, 2).to_js(UNTYPED) == "(rx.truthy(state.x) ? 1 : 2)"
        assert If(Field("ok"), 1, 2).to_js(NUMBERS) == "(state.ok ? 1 : 2)"

    def test_access(self):
        assert Field("user").maybe("name").to_js(UNTYPED) == 'rx.get(state.user, "name")'
        assert Field("user").attr("name").to_js(UNTYPED) == 'rx.attr(state.user, "name")'
        assert Field("xs")[0].to_js(UNTYPED) == "rx.index(state.xs, 0)"
        assert Field("unit-price").to_js(UNTYPED) == 'state["unit-price"]'

    def test_collections(self):
        mapped = Field("items").map(lambda i: i["price"])
        assert mapped.to_js(UNTYPED) == 'rx.list(state.items).map((i) => rx.index(i, "price"))'
        kept = Field("items").filter(lambda i: i["done"])
        assert kept.to_js(UNTYPED) == (
            'rx.list(state.items).filter((i) => rx.truthy(rx.index(i, "done")))'
        )
        dropped = Field("nums").reject(lambda n: n > 2)
        assert dropped.to_js(UNTYPED) == "rx.list(state.nums).filter((n) => !rx.gt(n, 2))"

    def test_null_helpers(self):
        assert Coalesce([Field("a"), "z"]).to_js(UNTYPED) == '(state.a ?? "z")'
        assert IsNull(Field("a")).to_js(UNTYPED) == "(state.a == null)"
        assert IsBlank(Field("a")).to_js(UNTYPED) == "rx.blank(state.a)"

    def test_record_literal(self):
        expr = RecordLit([("qty", 2)], base=Var("item"))
        scope = UNTYPED.bind("item")
        assert expr.to_js(scope) == '({...rx.record(item), "qty": 2})'

    def test_server_only_nodes(self):
        with pytest.raises(Untranspilable, match="exponentiation"):
            (Field("a") ** 2).to_js(NUMBERS)
        with pytest.raises(Untranspilable, match="sqrt"):
            Func("sqrt", [Field("a")]).to_js(NUMBERS)
        with pytest.raises(Untranspilable, match="ndigits"):
            Func("round", [Field("a"), 2]).to_js(NUMBERS)
        with pytest.raises(Untranspilable, match="server-only"):
            HostCall("fx", abs, [Field("a")]).to_js(NUMBERS)

    def test_decimal_field_is_untranspilable(self):
        scope = JsScope({"price": "decimal"})
        with pytest.raises(Untranspilable, match="price"):
            (Field("price") * 2).to_js(scope)

    def test_unbound_variable(self):
        with pytest.raises(Untranspilable, match="unbound"):
            Var("item").to_js(UNTYPED)

    def test_reserved_lambda_parameter(self):
        expr = Collection("map", Field("xs"), Lambda("new", Var("new")))
        with pytest.raises(Untranspilable):
            expr.to_js(UNTYPED)


class TestKinds:
    def test_static_kinds(self):
        assert (Field("a") + Field("b")).kind(NUMBERS) == NUMBER
        assert (Field("a") + Field("x")).kind(NUMBERS) == ANY
        assert (Field("a") < 1).kind(NUMBERS) == BOOL
        assert Field("s").upper().kind(NUMBERS) == STRING
        assert Field("xs").map(lambda x: x).kind(UNTYPED) == LIST


# ===========================================================================
# Static analysis and serialization
# ===========================================================================

class TestAnalysis:
    def test_field_refs_in_first_seen_order(self):
        expr = Field("a") + Field("b") * Field("a")
        assert field_refs(expr) == ("a", "b")

    def test_lambda_variables_are_not_refs(self):
        expr = Field("items").map(lambda i: i["price"] * Field("rate"))
        assert field_refs(expr) == ("items", "rate")

    def test_walk_visits_parents_first(self):
        expr = Field("a") + 1
        kinds = [type(n).__name__ for n in walk(expr)]
        assert kinds == ["BinOp", "Field", "Const"]

    def test_expr_is_hashable(self):
        f = Field("a")
        assert {f: 1}[f] == 1


class TestSerialization:
    def test_from_json_rebuilds_an_equivalent_tree(self):
        expr = If(
            Field("items").filter(lambda i: i["done"]).length() > 0,
            Coalesce([Field("user").maybe("name"), StrOp("upper", Field("fallback"))]),
            Join(ListLit(["a", Field("b")]), "-"),
        )
        rebuilt = from_json(expr.to_json())
        assert rebuilt.to_js(UNTYPED) == expr.to_js(UNTYPED)
        ctx = {"items": [], "user": None, "fallback": "x", "b": "y"}
        assert rebuilt.eval(ctx) == expr.eval(ctx) == "a-y"

    def test_from_json_accepts_text(self):
        assert from_json('{"type": "Const", "value": 3}').eval({}) == 3

    def test_special_constants(self):
        assert from_json(Const(REMOVE).to_json()).eval({}) is REMOVE
        assert from_json(Const(Decimal("1.10")).to_json()).eval({}) == Decimal("1.10")

    def test_host_call_needs_registered_function(self):
        data = HostCall("fx", abs, [Const(-1)]).to_json()
        with pytest.raises(ValueError, match="fx"):
            from_json(data)
        assert from_json(data, functions={"fx": abs}).eval({}) == 1

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            from_json({"type": "Bogus"})

    def test_index_round_trip(self):
        expr = Index(Field("xs"), 0)
        assert from_json(expr.to_json()).eval({"xs": [9]}) == 9

    def test_attr_keeps_optional_flag(self):
        rebuilt = from_json(Attr(Field("u"), "n", optional=True).to_json())
        assert rebuilt.eval({"u": None}) is None

    def test_unary_and_length(self):
        rebuilt = from_json(UnaryOp("neg", Length(Field("s"))).to_json())
        assert rebuilt.eval({"s": "abc"}) == -3
