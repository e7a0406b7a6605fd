"""
Optimistic actions: named, declarative rewrites of one field.

The same action runs on the server (Session.run_action) and in the client
mirror (ClientRuntime.dispatch), so the user sees the result before the
round trip completes.

    # whole-value rewrite: `current` is the field value
    schema.action("add_tag", "tags", "current + [value]",
                  validate="not blank(value)", max_field="max_tags")

    # keyed rewrite: `item` is each element whose item[key] matches
    schema.action("toggle", "todos", "{**item, 'done': not item['done']}", key="id")
    schema.action("delete", "todos", "remove", key="id")
    schema.action("rename", "title", "set")

Keyed actions match against `arg` when given, otherwise against `value`.
Returning REMOVE from a keyed run drops the matched element.
"""

import json
from collections import ChainMap
from dataclasses import dataclass
from typing import Any, Optional

from reactive.errors import SchemaError
from reactive.expr import (
    ANY, REMOVE, Const, Expr, Var, _as_list, _compare, _index, _length, field_refs,
)


_SHORTHANDS = ("set", "remove")


@dataclass(frozen=True)
class ActionOutcome:
    applied: bool
    value: Any = None
    reason: Optional[str] = None


class OptimisticAction:
    """A declared action: `run` is expression text, an Expr, "set" or "remove"."""

    def __init__(self, name, field, run, validate=None, key=None, max_field=None):
        if isinstance(run, str) and run in _SHORTHANDS:
            if run == "remove" and key is None:
                raise SchemaError(f"Action '{name}': 'remove' needs key=")
        elif not isinstance(run, (str, Expr)):
            raise SchemaError(
                f"Action '{name}': run must be expression text, an Expr, 'set' or 'remove'"
            )
        self.name = name
        self.field = field
        self.run = run
        self.validate = validate
        self.key = key
        self.max_field = max_field

        self.run_expr = None
        self.validate_expr = None
        self.run_compiled = None
        self.validate_compiled = None
        self.client_ready = False

    @property
    def target_var(self) -> str:
        return "item" if self.key is not None else "current"

    # ── Build ─────────────────────────────────────────────────────

    def bind(self, compiler, names) -> None:
        """Parse and compile against the component's declared names."""
        run_vars = {self.target_var: ANY, "value": ANY}
        if isinstance(self.run, str) and self.run == "set":
            self.run_expr = Var("value")
        elif isinstance(self.run, str) and self.run == "remove":
            self.run_expr = Const(REMOVE)
        elif isinstance(self.run, str):
            self.run_expr = compiler.parse(self.run, variables=tuple(run_vars))
        else:
            self.run_expr = self.run

        if isinstance(self.validate, str):
            self.validate_expr = compiler.parse(self.validate, variables=("current", "value"))
        else:
            self.validate_expr = self.validate

        for expr in (self.run_expr, self.validate_expr):
            if expr is None:
                continue
            for ref in field_refs(expr):
                if ref not in names:
                    raise SchemaError(f"Action '{self.name}' references unknown name '{ref}'")

        self.run_compiled = compiler.compile(
            f"{self.name}.run", self.run_expr, variables=run_vars,
            params=("state", self.target_var, "value"),
        )
        ready = self.run_compiled.transpilable
        if self.validate_expr is not None:
            self.validate_compiled = compiler.compile(
                f"{self.name}.validate", self.validate_expr,
                variables={"current": ANY, "value": ANY},
                params=("state", "current", "value"),
            )
            ready = ready and self.validate_compiled.transpilable
        self.client_ready = ready

    # ── Apply ─────────────────────────────────────────────────────

    def apply(self, state, value, arg=None) -> ActionOutcome:
        """Compute the field's next value from a state mapping.

        Returns ActionOutcome(applied=False, reason=...) when the max_field
        limit is reached or validate is falsy; the state is never mutated.
        """
        if self.run_expr is None:
            raise SchemaError(f"Action '{self.name}' is not bound to a component")
        current = state[self.field]
        if self.max_field is not None:
            limit = state[self.max_field]
            if limit is not None and _compare(">=", _length(current), limit):
                return ActionOutcome(False, current, "max")
        if self.validate_expr is not None:
            ctx = ChainMap({("var", "current"): current, ("var", "value"): value}, state)
            if not self.validate_expr.eval(ctx):
                return ActionOutcome(False, current, "invalid")

        if self.key is None:
            result = self.run_expr.eval(
                ChainMap({("var", "current"): current, ("var", "value"): value}, state)
            )
            if result is REMOVE:
                raise ValueError(f"Action '{self.name}': REMOVE needs a keyed action")
            return ActionOutcome(True, result)

        target = value if arg is None else arg
        out = []
        for item in _as_list(current):
            if _index(item, self.key) != target:
                out.append(item)
                continue
            result = self.run_expr.eval(
                ChainMap({("var", "item"): item, ("var", "value"): value}, state)
            )
            if result is not REMOVE:
                out.append(result)
        return ActionOutcome(True, out)

    def to_js(self) -> str:
        """Client descriptor consumed by rx.applyAction."""
        validate = self.validate_compiled.client_source if self.validate_compiled else "null"
        return (
            f"{{ field: {json.dumps(self.field)}, key: {json.dumps(self.key)}, "
            f"maxField: {json.dumps(self.max_field)}, "
            f"validate: {validate}, run: {self.run_compiled.client_source} }}"
        )

    def __repr__(self):
        return f"OptimisticAction({self.name!r}, field={self.field!r}, run={self.run!r})"
