"""
Component registry: enforced declaration catalog for one component type.

Every field, derived value and optimistic action of a component is declared
here once; build() validates the whole set, compiles the expressions and
closes the schema.

    cart = ComponentSchema("cart")
    cart.field("quantity", int, default=1, optimistic=True)
    cart.field("unit_price", float, default=0.0, optimistic=True)
    cart.derive("total", "quantity * unit_price", optimistic=True)
    cart.action("add_item", "items", "current + [value]")
    Cart = cart.build()

FieldDef captures:
  A. Core type (name, python_type, nullable, default)
  B. Lifetime partition (shareable, private, transient)
  C. Client behaviour (optimistic, animated, group)
"""

import copy
import dataclasses
import enum
from decimal import Decimal
from typing import Any, Optional

from reactive import expr as ex
from reactive.compiler import Compiler, Diagnostic
from reactive.config import EngineConfig
from reactive.errors import SchemaError
from reactive.graph import DependencyGraph, DerivedNode
from reactive.js_runtime import emit_module
from store.wire import WIRE_TYPES


class Lifetime(enum.Enum):
    """Storage partition of a field's value."""
    SHAREABLE = "shareable"     # survives across views, may be shared
    PRIVATE = "private"         # owned by one component instance
    TRANSIENT = "transient"     # never persisted


@dataclasses.dataclass(frozen=True)
class AnimatedConfig:
    """Animation metadata for a field whose null ↔ value change is animated.

    - async_field: field/derived whose arrival marks the content ready.
    - duration: seconds; None uses EngineConfig.default_duration.
    - preserve: keep showing the last value while exiting.
    """
    async_field: Optional[str] = None
    duration: Optional[float] = None
    preserve: bool = False


_KINDS = {
    int: ex.NUMBER,
    float: ex.NUMBER,
    str: ex.STRING,
    bool: ex.BOOL,
    list: ex.LIST,
    dict: ex.RECORD,
    Decimal: ex.DECIMAL,
}


@dataclasses.dataclass
class FieldDef:
    """Canonical definition of a single field of a component."""

    # ── A. Core Type ──────────────────────────────────────────────
    name: str
    python_type: type = object
    nullable: bool = True
    default: Any = None

    # ── B. Lifetime ───────────────────────────────────────────────
    lifetime: Lifetime = Lifetime.SHAREABLE

    # ── C. Client behaviour ───────────────────────────────────────
    optimistic: bool = False
    animated: Optional[AnimatedConfig] = None
    group: Optional[str] = None

    @property
    def kind(self) -> str:
        """Static kind used by the compiler for native-operator emission."""
        kind = _KINDS.get(self.python_type, ex.ANY)
        if self.nullable and kind != ex.DECIMAL:
            return ex.ANY
        return kind

    def check(self, value) -> None:
        """Raise SchemaError if value does not fit this field."""
        if value is None:
            if self.nullable:
                return
            raise SchemaError(
                f"Field '{self.name}': None not allowed (field is not nullable)"
            )
        t = self.python_type
        if t is object:
            return
        if t is float:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        elif t is int:
            ok = isinstance(value, int) and not isinstance(value, bool)
        else:
            ok = isinstance(value, t)
        if not ok:
            raise SchemaError(
                f"Field '{self.name}': expected {t.__name__}, "
                f"got {type(value).__name__} ({value!r})"
            )

    def initial(self):
        """A fresh copy of the default (defaults may be mutable)."""
        return copy.deepcopy(self.default)


class ComponentSchema:
    """
    Declaration catalog for one component type.

    Names are unique across fields and derived values. build()
    closes the schema; later declarations raise SchemaError.
    """

    def __init__(self, name: str, functions: Optional[dict] = None):
        self.name = name
        self.functions = dict(functions or {})
        self._fields: dict[str, FieldDef] = {}
        self._derived: dict[str, DerivedNode] = {}
        self._actions: dict = {}
        self._built = None

    # ── Declarations ──────────────────────────────────────────────

    def field(self, name: str, python_type: type = object, **kwargs) -> FieldDef:
        """Declare a field.

        Raises SchemaError if:
        - the name is already declared
        - the default does not fit python_type
        - the field is optimistic but its type cannot cross the wire
        """
        self._check_open()
        self._check_name(name)

        animated = kwargs.pop("animated", None)
        if animated is True:
            animated = AnimatedConfig()
        if animated is not None:
            kwargs["optimistic"] = True
        lifetime = kwargs.pop("lifetime", Lifetime.SHAREABLE)
        kwargs.setdefault("nullable", kwargs.get("default") is None)

        fd = FieldDef(
            name=name,
            python_type=python_type,
            lifetime=Lifetime(lifetime),
            animated=animated,
            **kwargs,
        )
        fd.check(fd.default)
        if fd.optimistic and python_type not in WIRE_TYPES:
            raise SchemaError(
                f"Field '{name}': optimistic fields must hold JSON-safe values, "
                f"not {python_type.__name__}"
            )
        self._fields[name] = fd
        return fd

    def derive(self, name: str, expr=None, **kwargs) -> DerivedNode:
        """Declare a derived value from an expression (Expr or text) or compute=."""
        self._check_open()
        self._check_name(name)
        node = DerivedNode(name, expr, **kwargs)
        self._derived[name] = node
        return node

    def action(self, name: str, field: str, run, **kwargs):
        """Declare an optimistic action that rewrites `field`."""
        from sync.actions import OptimisticAction

        self._check_open()
        if name in self._actions:
            raise SchemaError(f"Action '{name}' is already declared on '{self.name}'")
        action = OptimisticAction(name, field, run, **kwargs)
        self._actions[name] = action
        return action

    def _check_open(self):
        if self._built is not None:
            raise SchemaError(f"Component '{self.name}' is already built")

    def _check_name(self, name):
        if name in self._fields:
            raise SchemaError(f"'{name}' is already declared as a field on '{self.name}'")
        if name in self._derived:
            raise SchemaError(f"'{name}' is already declared as derived on '{self.name}'")

    # ── Build ─────────────────────────────────────────────────────

    def build(self, config: Optional[EngineConfig] = None) -> "ComponentType":
        """Validate and compile every declaration. Performed once."""
        if self._built is not None:
            return self._built
        config = config or EngineConfig()

        compiler = Compiler(
            kinds={f.name: f.kind for f in self._fields.values()},
            functions=self.functions,
        )
        for node in self._derived.values():
            if isinstance(node.expr, str):
                node.expr = compiler.parse(node.expr)

        graph = DependencyGraph.build(self._derived.values(), fields=self._fields)
        extra = []
        mirrored = []
        for name in graph.topological_order():
            node = graph.nodes[name]
            if node.expr is None:
                compiler.kinds[name] = ex.ANY
                continue
            node.compiled = compiler.compile(name, node.expr)
            compiler.kinds[name] = node.expr.kind(ex.JsScope(compiler.kinds))
            if not node.optimistic:
                continue
            if not node.compiled.transpilable:
                continue
            blocked = [d for d in node.dependencies
                       if not (self._is_optimistic_field(d) or d in mirrored)]
            if blocked:
                reason = f"depends on server-only value '{blocked[0]}'"
                extra.append(Diagnostic(name, reason, kind="server_only"))
                continue
            mirrored.append(name)

        names = set(self._fields) | set(self._derived)
        for fd in self._fields.values():
            if fd.animated and fd.animated.async_field and fd.animated.async_field not in names:
                raise SchemaError(
                    f"Field '{fd.name}': animated async_field "
                    f"'{fd.animated.async_field}' is not declared"
                )

        for action in self._actions.values():
            target = self._fields.get(action.field)
            if target is None or not target.optimistic:
                raise SchemaError(
                    f"Action '{action.name}': '{action.field}' is not an optimistic field"
                )
            if action.max_field is not None and action.max_field not in names:
                raise SchemaError(
                    f"Action '{action.name}': max_field '{action.max_field}' is not declared"
                )
            action.bind(compiler, names)

        self._built = ComponentType(
            name=self.name,
            fields=dict(self._fields),
            graph=graph,
            actions=dict(self._actions),
            kinds=dict(compiler.kinds),
            client_mirrored=tuple(mirrored),
            diagnostics=compiler.diagnostics + extra,
            config=config,
        )
        return self._built

    def _is_optimistic_field(self, name):
        fd = self._fields.get(name)
        return fd is not None and fd.optimistic


class ComponentType:
    """Immutable result of ComponentSchema.build(); shared by all instances."""

    def __init__(self, name, fields, graph, actions, kinds, client_mirrored,
                 diagnostics, config):
        self.name = name
        self.fields = fields
        self.graph = graph
        self.actions = actions
        self.kinds = kinds
        self.client_mirrored = client_mirrored
        self.config = config
        self._diagnostics = list(diagnostics)
        self._module = None

    @property
    def derived(self) -> dict:
        return self.graph.nodes

    @property
    def compiled(self) -> dict:
        return {n: node.compiled for n, node in self.graph.nodes.items()
                if node.compiled is not None}

    def field(self, name) -> FieldDef:
        if name not in self.fields:
            raise SchemaError(f"'{name}' is not a field of '{self.name}'")
        return self.fields[name]

    def is_field(self, name) -> bool:
        return name in self.fields

    def is_derived(self, name) -> bool:
        return name in self.graph.nodes

    def diagnostics(self) -> list:
        """Build-time findings: untranspilable or server-only derivations."""
        return list(self._diagnostics)

    def list_dependents(self, name) -> tuple:
        """Every derived value downstream of `name`, in recompute order."""
        if name not in self.fields and name not in self.graph.nodes:
            raise SchemaError(f"'{name}' is not declared on '{self.name}'")
        return self.graph.transitive_dependents([name])

    def fields_for_resource(self, resource) -> tuple:
        """Derived values that read `resource` (re-run when it is invalidated)."""
        return self.graph.order_within(
            n for n, node in self.graph.nodes.items() if resource in node.reads
        )

    def group_members(self, group) -> tuple:
        return tuple(f.name for f in self.fields.values() if f.group == group)

    def optimistic_fields(self) -> tuple:
        return tuple(f.name for f in self.fields.values() if f.optimistic)

    def client_module(self) -> str:
        """The emitted client ES module (runtime prelude + mirrored code)."""
        if self._module is None:
            self._module = emit_module(self)
        return self._module

    def __repr__(self):
        return (f"ComponentType({self.name!r}, fields={len(self.fields)}, "
                f"derived={len(self.graph)}, actions={len(self.actions)})")
