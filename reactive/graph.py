"""
DependencyGraph: static dependency structure of a component's derived values.

Dependencies come from `depends_on` when a node declares them, otherwise from
a walk of the node's expression tree. Closures are never introspected.

    graph = DependencyGraph.build(
        [DerivedNode("subtotal", Field("quantity") * Field("unit_price")),
         DerivedNode("total", Field("subtotal") + Field("shipping"))],
        fields=["quantity", "unit_price", "shipping"],
    )
    graph.topological_order()             # ("subtotal", "total")
    graph.transitive_dependents(["quantity"])   # ("subtotal", "total")
"""

import heapq
from dataclasses import dataclass, field
from typing import Callable, Optional

from reactive.errors import CyclicDependency, SchemaError
from reactive.expr import Expr, field_refs
from reactive.parse import parse


@dataclass(eq=False)
class DerivedNode:
    """A named value computed from fields and other derived values.

    - expr: Expr tree or expression text. Compiled for server and client.
    - compute: opaque host callable taking {dependency: value}; needs
      depends_on, never mirrored to the client.
    - is_async: compute returns later (coroutine function or blocking call).
      The node reads PENDING until the result is accepted.
    - optimistic: mirror on the client so it recomputes without a round trip.
    - reads: resource names whose invalidation re-runs this node.
    """
    name: str
    expr: object = None
    compute: Optional[Callable] = None
    depends_on: Optional[tuple] = None
    is_async: bool = False
    optimistic: bool = False
    reads: tuple = ()

    # Filled in by DependencyGraph.build / ComponentSchema.build
    dependencies: tuple = field(default=(), init=False)
    compiled: object = field(default=None, init=False)

    def __post_init__(self):
        if (self.expr is None) == (self.compute is None):
            raise SchemaError(
                f"Derived '{self.name}': exactly one of expr or compute is required"
            )
        if self.compute is not None and self.depends_on is None:
            raise SchemaError(
                f"Derived '{self.name}': compute= requires depends_on "
                f"(dependencies are never inferred from closures)"
            )
        if self.is_async and self.compute is None:
            raise SchemaError(f"Derived '{self.name}': async nodes need compute=")
        if self.optimistic and self.expr is None:
            raise SchemaError(
                f"Derived '{self.name}': optimistic nodes need an expression"
            )
        if self.depends_on is not None:
            self.depends_on = tuple(self.depends_on)
        if isinstance(self.reads, str):
            self.reads = (self.reads,)
        self.reads = tuple(self.reads)

    def evaluate(self, inputs: dict):
        """Run a synchronous node against its dependency values."""
        if self.compute is not None:
            return self.compute(inputs)
        return self.expr.eval(inputs)


class DependencyGraph:
    """Validated, acyclic dependency graph with a cached topological order."""

    def __init__(self, nodes: dict, fields: tuple):
        self.nodes = nodes                  # name → DerivedNode (declaration order)
        self.fields = fields
        self._position = {name: i for i, name in enumerate(nodes)}
        self._dependents = {}               # name → [derived names that read it]
        for node in nodes.values():
            for dep in node.dependencies:
                self._dependents.setdefault(dep, []).append(node.name)
        self._order = None

    @classmethod
    def build(cls, nodes, fields=()) -> "DependencyGraph":
        """Resolve dependencies, reject unknown names and cycles.

        Raises:
            SchemaError: duplicate node or reference to an unknown name
            CyclicDependency: derived nodes depend on each other in a loop
        """
        by_name = {}
        for node in nodes:
            if node.name in by_name:
                raise SchemaError(f"Derived '{node.name}' is declared twice")
            by_name[node.name] = node
        fields = tuple(fields)
        known = set(fields) | set(by_name)

        for node in by_name.values():
            if node.name in fields:
                raise SchemaError(f"'{node.name}' is declared as both field and derived")
            if isinstance(node.expr, str):
                node.expr = parse(node.expr)
            if node.depends_on is not None:
                deps = node.depends_on
            elif isinstance(node.expr, Expr):
                deps = field_refs(node.expr)
            else:
                raise SchemaError(f"Derived '{node.name}': expr must be an Expr or text")
            for dep in deps:
                if dep not in known:
                    raise SchemaError(
                        f"Derived '{node.name}' references unknown name '{dep}'"
                    )
            node.dependencies = tuple(deps)

        _check_acyclic(by_name)
        return cls(by_name, fields)

    # ── Queries ───────────────────────────────────────────────────

    def is_derived(self, name) -> bool:
        return name in self.nodes

    def topological_order(self) -> tuple:
        """Kahn's algorithm; ties broken by declaration order."""
        if self._order is None:
            indegree = {
                name: sum(1 for d in node.dependencies if d in self.nodes)
                for name, node in self.nodes.items()
            }
            ready = [(self._position[n], n) for n, deg in indegree.items() if deg == 0]
            heapq.heapify(ready)
            order = []
            while ready:
                _, name = heapq.heappop(ready)
                order.append(name)
                for dependent in self._dependents.get(name, ()):
                    indegree[dependent] -= 1
                    if indegree[dependent] == 0:
                        heapq.heappush(ready, (self._position[dependent], dependent))
            self._order = tuple(order)
        return self._order

    def dependencies_of(self, name) -> tuple:
        return self.nodes[name].dependencies

    def dependents_of(self, name) -> tuple:
        """Derived nodes reading `name` directly, in topological order."""
        return self.order_within(self._dependents.get(name, ()))

    def transitive_dependents(self, names) -> tuple:
        """Every derived node downstream of `names`, in topological order.

        The seeds themselves are only included when another seed feeds them.
        """
        seen = set()
        stack = list(names)
        while stack:
            for dependent in self._dependents.get(stack.pop(), ()):
                if dependent not in seen:
                    seen.add(dependent)
                    stack.append(dependent)
        return self.order_within(seen)

    def order_within(self, names) -> tuple:
        """Restrict the topological order to `names`."""
        names = set(names)
        return tuple(n for n in self.topological_order() if n in names)

    def __contains__(self, name):
        return name in self.nodes or name in self.fields

    def __len__(self):
        return len(self.nodes)


def _check_acyclic(nodes: dict) -> None:
    """Depth-first search; revisiting a node on the current path is a cycle."""
    done = set()
    for root in nodes:
        if root in done:
            continue
        path = [root]
        on_path = {root}
        stack = [iter(nodes[root].dependencies)]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                stack.pop()
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
                continue
            if dep not in nodes or dep in done:
                continue
            if dep in on_path:
                start = path.index(dep)
                raise CyclicDependency(path[start:] + [dep])
            path.append(dep)
            on_path.add(dep)
            stack.append(iter(nodes[dep].dependencies))
