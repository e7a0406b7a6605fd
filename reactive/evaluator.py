"""
Incremental evaluator: recomputes only what a change can reach.

    evaluator = Evaluator(component, store)
    evaluator.recompute_all()                   # at instance start
    store.set("quantity", 3)
    result = evaluator.recompute(["quantity"])  # RecomputeResult
    result.changed                              # {"subtotal": 30.0, "total": 35.0}

Async nodes are not run here: recompute() marks them PENDING and hands an
AsyncJob to the dispatcher. The session runs the job and reports back with
resolve()/reject(); a result whose token is no longer current is discarded.

A node whose dependency is PENDING is not computed; it reads PENDING too
until the async result arrives.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from reactive.errors import ComputeFailure
from reactive.graph import DerivedNode

logger = logging.getLogger(__name__)


class _Pending:
    """Placeholder value of an async node (or its dependents) while in flight."""

    __slots__ = ()

    def __repr__(self):
        return "PENDING"

    def __bool__(self):
        return False


PENDING = _Pending()


@dataclass(frozen=True)
class AsyncJob:
    """One dispatched run of an async node."""
    name: str
    node: DerivedNode
    inputs: dict
    token: int


@dataclass
class RecomputeResult:
    changed: dict = field(default_factory=dict)     # name → new value
    visited: tuple = ()
    failed: tuple = ()
    dispatched: tuple = ()
    stale: bool = False

    def merge(self, other: "RecomputeResult") -> "RecomputeResult":
        changed = dict(self.changed)
        changed.update(other.changed)
        return RecomputeResult(
            changed=changed,
            visited=self.visited + other.visited,
            failed=self.failed + other.failed,
            dispatched=self.dispatched + other.dispatched,
        )


class Evaluator:
    """Recompute engine for one component instance.

    - failures: name → ComputeFailure of the node's latest failed run
    - revision: bumped by every pass
    """

    def __init__(self, component, store, dispatcher: Optional[Callable] = None):
        self.component = component
        self.graph = component.graph
        self.store = store
        self.dispatcher = dispatcher
        self.failures = {}
        self.revision = 0
        self._retry = set()
        self._inflight = {}     # name → token of the current job
        self._settled = {}      # name → last non-PENDING value
        self._tokens = itertools.count(1)

    # ── Passes ────────────────────────────────────────────────────

    def recompute_all(self) -> RecomputeResult:
        """Evaluate every derived node in topological order."""
        self.revision += 1
        self._retry.clear()
        return self._run(self.graph.topological_order())

    def recompute(self, changed) -> RecomputeResult:
        """Recompute everything downstream of the changed names.

        Nodes that failed (or were skipped because of a failure) in an
        earlier pass are re-run as well.
        """
        return self._pass(changed, rerun=())

    def invalidate(self, names) -> RecomputeResult:
        """Re-run the named derived nodes themselves plus their dependents."""
        names = [n for n in names if self.graph.is_derived(n)]
        return self._pass(names, rerun=names)

    def _pass(self, changed, rerun) -> RecomputeResult:
        self.revision += 1
        retry = set(self._retry)
        self._retry.clear()
        seeds = set(changed) | retry
        dirty = set(self.graph.transitive_dependents(seeds)) | retry | set(rerun)
        return self._run(self.graph.order_within(dirty))

    def _run(self, order) -> RecomputeResult:
        changed = {}
        failed = []
        dispatched = []
        blocked = set()

        for name in order:
            node = self.graph.nodes[name]
            if name in blocked:
                self._retry.add(name)
                continue
            inputs = {d: self.store.get(d) for d in node.dependencies}

            if any(v is PENDING for v in inputs.values()):
                self._put(name, PENDING, changed)
                continue

            if node.is_async:
                job = AsyncJob(name, node, inputs, next(self._tokens))
                self._inflight[name] = job.token
                dispatched.append(job)
                self._put(name, PENDING, changed)
                continue

            try:
                value = node.evaluate(inputs)
            except Exception as e:
                self._fail(name, e, failed, blocked)
                continue
            self.failures.pop(name, None)
            self._put(name, value, changed)

        if self.dispatcher is not None:
            for job in dispatched:
                self.dispatcher(job)
        return RecomputeResult(changed, tuple(order), tuple(failed), tuple(dispatched))

    def _fail(self, name, error, failed, blocked):
        failure = ComputeFailure(name, error, self.revision)
        self.failures[name] = failure
        failed.append(name)
        self._retry.add(name)
        blocked.update(self.graph.transitive_dependents([name]))
        logger.warning("%s (keeping previous value)", failure)

    def _put(self, name, value, changed):
        if value is not PENDING:
            self._settled[name] = value
        if self.store.put_derived(name, value):
            changed[name] = value

    # ── Async completion ──────────────────────────────────────────

    def is_current(self, job: AsyncJob) -> bool:
        return self._inflight.get(job.name) == job.token

    def resolve(self, job: AsyncJob, value) -> RecomputeResult:
        """Accept an async result and recompute the node's dependents."""
        if not self.is_current(job):
            logger.debug("Discarding stale result for '%s' (token %s)", job.name, job.token)
            return RecomputeResult(stale=True)
        del self._inflight[job.name]
        self.failures.pop(job.name, None)
        self.revision += 1
        changed = {}
        self._put(job.name, value, changed)
        result = self._run(self.graph.transitive_dependents([job.name]))
        return RecomputeResult(changed).merge(result)

    def reject(self, job: AsyncJob, error: BaseException) -> RecomputeResult:
        """Record an async failure; restore the node and its pending dependents."""
        if not self.is_current(job):
            logger.debug("Discarding stale failure for '%s' (token %s)", job.name, job.token)
            return RecomputeResult(stale=True)
        del self._inflight[job.name]
        self.revision += 1
        failure = ComputeFailure(job.name, error, self.revision)
        self.failures[job.name] = failure
        self._retry.add(job.name)
        logger.warning("%s (keeping previous value)", failure)

        changed = {}
        for name in (job.name,) + self.graph.transitive_dependents([job.name]):
            if self.store.get(name) is PENDING and name not in self._inflight:
                self._put(name, self._settled.get(name), changed)
        return RecomputeResult(changed, failed=(job.name,))

    @property
    def inflight(self) -> dict:
        return dict(self._inflight)

    def pending(self) -> tuple:
        """Derived names currently reading PENDING."""
        return tuple(n for n in self.graph.topological_order()
                     if self.store.get(n) is PENDING)
