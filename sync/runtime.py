"""
ClientRuntime: the client's mirror of one component instance.

Optimistic fields are SyncedCells whose values feed reaktiv Signals; mirrored
derivations are reaktiv Computeds over those signals, so a local edit
recomputes its dependents without a round trip. Server payloads are routed
to confirm() (replies) or server_push() (everything else).

    runtime = ClientRuntime(Cart, instance_id, send=channel.send)
    runtime.mutate("quantity", 3)          # sends {"type": "set", ...}
    runtime.value("total")                 # recomputed locally
    runtime.receive(projection.values, projection.replies)

Runtimes are held in an explicit ClientStore keyed by instance id.
"""

import logging
from typing import Callable, Optional

from reaktiv import Computed, Signal, batch

from reactive.config import EngineConfig
from reactive.errors import SchemaError, UnknownAction
from store.values import same_value
from sync.cell import SyncedCell, SyncOutcome
from sync.phases import PhaseMachine
from sync.timers import AsyncioScheduler

logger = logging.getLogger(__name__)


class ClientStore:
    """Client runtimes keyed by component instance id."""

    def __init__(self):
        self._runtimes = {}

    def register(self, runtime: "ClientRuntime") -> "ClientRuntime":
        if runtime.instance_id in self._runtimes:
            raise KeyError(f"Instance '{runtime.instance_id}' is already registered")
        self._runtimes[runtime.instance_id] = runtime
        return runtime

    def get(self, instance_id) -> "ClientRuntime":
        if instance_id not in self._runtimes:
            raise KeyError(f"No runtime for instance '{instance_id}'")
        return self._runtimes[instance_id]

    def remove(self, instance_id) -> None:
        self._runtimes.pop(instance_id, None)

    def route(self, instance_id, values, replies=None) -> dict:
        """Deliver a server payload to the runtime it belongs to."""
        return self.get(instance_id).receive(values, replies)

    def __contains__(self, instance_id):
        return instance_id in self._runtimes

    def __len__(self):
        return len(self._runtimes)


class ClientRuntime:
    """
    Optimistic mirror of one component instance.

    Args:
        component: the built ComponentType
        instance_id: id of the server session this mirror talks to
        send: callable(message dict) carrying mutations to the server
        scheduler: timer scheduler for animated fields
        delegates: {field: delegate} receiving phase hooks
        store: ClientStore to register in
    """

    def __init__(self, component, instance_id, send: Optional[Callable] = None,
                 scheduler=None, config: Optional[EngineConfig] = None,
                 delegates: Optional[dict] = None, store: Optional[ClientStore] = None,
                 initial: Optional[dict] = None):
        self.component = component
        self.instance_id = instance_id
        self.send = send
        self.config = config or component.config
        self.scheduler = scheduler or AsyncioScheduler()
        delegates = delegates or {}
        initial = initial or {}

        self.cells = {}
        self._signals = {}
        for fd in component.fields.values():
            value = initial.get(fd.name, fd.initial())
            self._signals[fd.name] = Signal(value)
            if not fd.optimistic:
                continue
            machine = None
            if fd.animated is not None:
                machine = PhaseMachine(
                    fd.name, fd.animated, self.scheduler,
                    delegate=delegates.get(fd.name),
                    margin=self.config.animation_margin,
                    default_duration=self.config.default_duration,
                )
            self.cells[fd.name] = SyncedCell(
                fd.name, value, machine=machine, on_change=self._on_cell_change,
                preserve=bool(fd.animated and fd.animated.preserve),
            )

        # Server-computed derived values (not mirrored) arrive by push.
        for name in component.graph.topological_order():
            if name not in component.client_mirrored:
                self._signals[name] = Signal(initial.get(name))

        self._computeds = {name: Computed(self._compute_fn(name))
                           for name in component.client_mirrored}
        self._sources = {name: self._optimistic_sources(name)
                         for name in component.client_mirrored}
        self._last_good = {}

        if store is not None:
            store.register(self)

    # ── Reads ─────────────────────────────────────────────────────

    def value(self, name):
        if name in self._computeds:
            try:
                value = self._computeds[name]()
            except Exception as e:
                logger.warning("'%s' failed on the client, keeping last value: %s", name, e)
                return self._last_good.get(name)
            self._last_good[name] = value
            return value
        if name in self._signals:
            return self._signals[name]()
        raise SchemaError(f"'{name}' is not declared on '{self.component.name}'")

    def snapshot(self) -> dict:
        names = list(self._signals) + list(self._computeds)
        return {n: self.value(n) for n in names}

    def is_pending(self, name) -> bool:
        return self.cells[name].is_pending

    def phase(self, name):
        machine = self._cell(name).machine
        return machine.phase if machine is not None else None

    # ── Local edits ───────────────────────────────────────────────

    def mutate(self, name, value) -> SyncOutcome:
        """Apply an edit locally and send it with its version."""
        cell = self._cell(name)
        self.component.field(name).check(value)
        outcome = cell.local_mutate(value)
        if outcome is SyncOutcome.APPLIED and self.send is not None:
            self.send({
                "type": "set",
                "instance": self.instance_id,
                "changes": {name: value},
                "versions": {name: cell.version},
            })
        return outcome

    def dispatch(self, action_name, value=None, arg=None):
        """Run an optimistic action locally, then send it to the server."""
        action = self.component.actions.get(action_name)
        if action is None:
            raise UnknownAction(self.component.name, action_name)
        outcome = action.apply(self.snapshot(), value, arg)
        if not outcome.applied:
            return outcome
        cell = self._cell(action.field)
        if cell.local_mutate(outcome.value) is SyncOutcome.APPLIED and self.send is not None:
            self.send({
                "type": "action",
                "instance": self.instance_id,
                "name": action_name,
                "value": value,
                "arg": arg,
                "version": cell.version,
            })
        return outcome

    def recompute(self, name) -> dict:
        """Mirrored dependents of `name`, re-read in topological order."""
        return {n: self.value(n)
                for n in self.component.graph.transitive_dependents([name])
                if n in self._computeds}

    # ── Server payloads ───────────────────────────────────────────

    def confirm(self, name, reply, reply_version) -> SyncOutcome:
        return self._cell(name).confirm(reply, reply_version)

    def receive(self, values: dict, replies: Optional[dict] = None) -> dict:
        """Route a projection: replies confirm, the rest are pushes.

        Returns {name: SyncOutcome} for optimistic fields and mirrored
        derivations; server-only values are simply stored.
        """
        replies = replies or {}
        outcomes = {}
        arrived = []
        with batch():
            for name, value in values.items():
                if name in self.cells:
                    if name in replies:
                        outcomes[name] = self.confirm(name, value, replies[name])
                    else:
                        outcomes[name] = self._push(name, value)
                elif name in self._computeds:
                    outcomes[name] = self._push_derived(name, value)
                elif name in self._signals:
                    old = self._signals[name]()
                    self._signals[name].set(value)
                    if old is None and value is not None:
                        arrived.append(name)
                else:
                    logger.debug("Ignoring unknown value '%s'", name)
        for name in arrived:
            self._notify_async(name)
        return outcomes

    def _push(self, name, value) -> SyncOutcome:
        fd = self.component.field(name)
        if self.config.push_guard == "group" and fd.group is not None:
            busy = [n for n in self.component.group_members(fd.group)
                    if n in self.cells and self.cells[n].is_pending]
            if busy:
                logger.debug("'%s': push dropped, group '%s' has pending %s",
                             name, fd.group, busy)
                return SyncOutcome.STALE_PUSH
        old = self.cells[name].value
        outcome = self.cells[name].server_push(value)
        if outcome is SyncOutcome.APPLIED and old is None and value is not None:
            self._notify_async(name)
        return outcome

    def _push_derived(self, name, value) -> SyncOutcome:
        pending = [s for s in self._sources[name] if self.cells[s].is_pending]
        if pending:
            logger.debug("'%s': derived push dropped, sources %s pending", name, pending)
            return SyncOutcome.STALE_PUSH
        local = self.value(name)
        if not same_value(local, value):
            logger.warning(
                "'%s' diverged: client computed %r, server sent %r", name, local, value
            )
        return SyncOutcome.NOOP

    # ── Animation ─────────────────────────────────────────────────

    def transition_end(self, name) -> bool:
        """The view finished the CSS transition of an animated field."""
        machine = self._cell(name).machine
        return machine.transition_end() if machine is not None else False

    def async_ready(self, name) -> bool:
        """Content for an animated field is ready."""
        machine = self._cell(name).machine
        return machine.async_ready() if machine is not None else False

    def _notify_async(self, source):
        for cell in self.cells.values():
            machine = cell.machine
            if machine is not None and machine.config.async_field == source:
                machine.async_ready()

    def _on_cell_change(self, name, value):
        self._signals[name].set(value)
        cell = self.cells.get(name)
        if cell is None or cell.machine is None or value is None:
            return
        # Content may already be present when the field opens.
        source = cell.machine.config.async_field
        if source is not None and not cell.machine.is_async_ready:
            if self.value(source) is not None:
                cell.machine.async_ready()

    # ── Internals ─────────────────────────────────────────────────

    def _cell(self, name) -> SyncedCell:
        if name not in self.cells:
            raise SchemaError(f"'{name}' is not an optimistic field of '{self.component.name}'")
        return self.cells[name]

    def _compute_fn(self, name):
        node = self.component.graph.nodes[name]

        def compute():
            inputs = {d: self.value(d) for d in node.dependencies}
            return node.compiled.server_eval(inputs)

        return compute

    def _optimistic_sources(self, name) -> tuple:
        graph = self.component.graph
        seen = []
        stack = [name]
        while stack:
            for dep in graph.dependencies_of(stack.pop()):
                if graph.is_derived(dep):
                    stack.append(dep)
                elif dep in self.cells and dep not in seen:
                    seen.append(dep)
        return tuple(seen)
