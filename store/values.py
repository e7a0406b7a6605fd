"""
ValueStore: current values of one component instance.

Field values live in one partition per Lifetime; derived values live in a
separate map written only by the evaluator.
"""

from reactive.errors import SchemaError
from store.registry import Lifetime


_MISSING = object()


def same_value(a, b) -> bool:
    """Type-aware equality: 1, 1.0 and True are different values."""
    if a is b:
        return True
    if type(a) is not type(b):
        return False
    if isinstance(a, list):
        return len(a) == len(b) and all(same_value(x, y) for x, y in zip(a, b))
    if isinstance(a, dict):
        return a.keys() == b.keys() and all(same_value(a[k], b[k]) for k in a)
    return a == b


class ValueStore:
    """Field and derived values of one instance of a ComponentType."""

    def __init__(self, component):
        self.component = component
        self._partitions = {lifetime: {} for lifetime in Lifetime}
        self._lifetime = {f.name: f.lifetime for f in component.fields.values()}
        self._derived = {}

    def hydrate(self, initial=None) -> "ValueStore":
        """Load defaults, then the supplied initial values."""
        for fd in self.component.fields.values():
            self._partitions[fd.lifetime][fd.name] = fd.initial()
        for name, value in (initial or {}).items():
            self.set(name, value)
        return self

    def get(self, name, default=_MISSING):
        lifetime = self._lifetime.get(name)
        if lifetime is not None:
            return self._partitions[lifetime][name]
        if name in self._derived:
            return self._derived[name]
        if default is not _MISSING:
            return default
        if self.component.is_derived(name):
            return None
        raise KeyError(f"'{name}' is not declared on '{self.component.name}'")

    def set(self, name, value) -> bool:
        """Write a field. Returns whether the stored value changed.

        Raises SchemaError for derived or unknown names and for values that
        do not fit the field's type.
        """
        if self.component.is_derived(name):
            raise SchemaError(f"'{name}' is derived and cannot be written")
        fd = self.component.field(name)
        fd.check(value)
        partition = self._partitions[fd.lifetime]
        if name in partition and same_value(partition[name], value):
            return False
        partition[name] = value
        return True

    def put_derived(self, name, value) -> bool:
        if name in self._derived and same_value(self._derived[name], value):
            return False
        self._derived[name] = value
        return True

    def has_value(self, name) -> bool:
        return name in self._lifetime or name in self._derived

    def snapshot(self, names=None) -> dict:
        """Current values keyed by name (all fields and derived by default)."""
        if names is None:
            names = list(self._lifetime) + list(self.component.graph.topological_order())
        return {n: self.get(n) for n in names}

    def partition(self, lifetime) -> dict:
        return dict(self._partitions[Lifetime(lifetime)])
