"""
Error taxonomy for the derivation engine.

Build-time errors (SchemaError, CyclicDependency, ExpressionSyntaxError) are
raised to the developer with the offending name and reason. Untranspilable is
raised internally by the JS emitter and recorded as a diagnostic; the node
keeps working on the server. ComputeFailure is never raised by the evaluator:
it is recorded against the failing node while the session keeps serving the
last valid values.
"""


class SchemaError(Exception):
    """Raised when a field/derived/action declaration or a value is invalid."""


class CyclicDependency(SchemaError):
    """Raised when derived declarations form a dependency cycle."""

    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__(
            f"Cyclic dependency: {' -> '.join(self.cycle)}"
        )


class ExpressionSyntaxError(SchemaError):
    """Raised when expression text falls outside the supported grammar."""

    def __init__(self, source, reason, col=None):
        self.source = source
        self.reason = reason
        self.col = col
        where = f" at column {col}" if col is not None else ""
        super().__init__(f"{reason}{where} in expression {source!r}")


class Untranspilable(Exception):
    """Raised when an expression node has no exact client equivalent."""

    def __init__(self, node, reason):
        self.node = node
        self.reason = reason
        super().__init__(f"Cannot transpile {type(node).__name__}: {reason}")


class ComputeFailure(Exception):
    """Recorded when a derived node's compute raised.

    The node keeps its prior value; it and its dependents are retried on the
    next recompute.
    """

    def __init__(self, name, cause, revision):
        self.name = name
        self.cause = cause
        self.revision = revision
        super().__init__(
            f"Derived '{name}' failed at revision {revision}: "
            f"{type(cause).__name__}: {cause}"
        )


class UnknownAction(KeyError):
    """Raised when an optimistic action name is not declared."""

    def __init__(self, component, name):
        self.component = component
        self.name = name
        super().__init__(f"No action '{name}' on component '{component}'")


class WireError(ValueError):
    """Raised when a value cannot cross the optimistic boundary losslessly."""

    def __init__(self, name, value, reason):
        self.name = name
        self.value = value
        self.reason = reason
        super().__init__(f"{name}: {reason} ({value!r})")


class AnimationTimeout(Exception):
    """A phase fallback timer fired before the view reported transition end.

    Recovery, not failure: the machine advances as if the event arrived.
    """

    def __init__(self, name, phase, seconds):
        self.name = name
        self.phase = phase
        self.seconds = seconds
        super().__init__(
            f"'{name}' {phase}: no transition end after {seconds:.3f}s, advancing"
        )
