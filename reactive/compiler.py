"""
Dual-target compilation of derivation expressions.

    compiled = compile_expr(Field("quantity") * Field("unit_price"),
                            kinds={"quantity": "number", "unit_price": "number"})
    compiled.dependencies      # ("quantity", "unit_price")
    compiled.server_eval(ctx)  # Python value
    compiled.client_source     # "(state) => (state.quantity * state.unit_price)"

When any node has no exact client equivalent the client source becomes a
call to rx.untranspilable(...) and the reason is kept; the node still runs
on the server.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from reactive.errors import Untranspilable
from reactive.expr import Expr, JsScope, field_refs
from reactive.parse import parse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledExpr:
    """Both compiled forms of one expression, plus its static dependencies."""
    expr: Expr
    dependencies: tuple
    server_eval: Callable
    client_source: str
    untranspilable: Optional[str] = None

    @property
    def transpilable(self) -> bool:
        return self.untranspilable is None


@dataclass(frozen=True)
class Diagnostic:
    """A build-time finding about one named expression."""
    name: str
    reason: str
    kind: str = "untranspilable"


def untranspilable_marker(reason: str) -> str:
    return f"rx.untranspilable({json.dumps(reason)})"


def compile_expr(expr, kinds=None, variables=None, params=("state",)) -> CompiledExpr:
    """Compile an Expr (or expression text) to server and client forms.

    `variables` maps Var names to static kinds; `params` are the parameter
    names of the emitted client function.
    """
    if isinstance(expr, str):
        expr = parse(expr, variables=tuple(variables or ()))
    scope = JsScope(kinds, state="state", variables=variables)
    reason = None
    try:
        body = expr.to_js(scope)
    except Untranspilable as e:
        reason = e.reason
        body = untranspilable_marker(reason)
    return CompiledExpr(
        expr=expr,
        dependencies=field_refs(expr),
        server_eval=expr.eval,
        client_source=f"({', '.join(params)}) => {body}",
        untranspilable=reason,
    )


@dataclass
class Compiler:
    """Compiles the expressions of one component, collecting diagnostics."""
    kinds: dict = field(default_factory=dict)
    functions: dict = field(default_factory=dict)
    diagnostics: list = field(default_factory=list)

    def parse(self, source, variables=()):
        return parse(source, variables=variables, functions=self.functions)

    def compile(self, name, expr, variables=None, params=("state",)) -> CompiledExpr:
        if isinstance(expr, str):
            expr = self.parse(expr, variables=tuple(variables or ()))
        compiled = compile_expr(expr, self.kinds, variables, params)
        if not compiled.transpilable:
            logger.info("'%s' stays server-only: %s", name, compiled.untranspilable)
            self.diagnostics.append(Diagnostic(name, compiled.untranspilable))
        return compiled
