"""
Reactive derivation layer.

Expression tree compiles to Python eval (server) and JavaScript (client).
DependencyGraph orders derived values; Evaluator recomputes only what a
change can reach. Session (reactive.session) runs one instance.
"""

from reactive.expr import (
    Expr, Const, Field, Var, Attr, Index, BinOp, UnaryOp, If, Coalesce, IsNull,
    IsBlank, StrOp, Func, HostCall, Length, Sum, Join, Lambda, Collection,
    ListLit, RecordLit, REMOVE, from_json,
)
from reactive.parse import parse
from reactive.compiler import CompiledExpr, Compiler, compile_expr
from reactive.graph import DependencyGraph, DerivedNode
from reactive.evaluator import PENDING, Evaluator
from reactive.errors import (
    SchemaError, CyclicDependency, ExpressionSyntaxError, Untranspilable,
    ComputeFailure, UnknownAction, WireError, AnimationTimeout,
)
from reactive.config import EngineConfig, configure_logging
