"""
Session: server-side evaluation context for one connected client.

Every mutation, push, invalidation and async completion is a message on one
asyncio.Queue, processed by a single loop task, so the store has a single
writer. After each message the changed values are handed to the projection
callback.

    session = Session(Cart, projection=channel.send)
    await session.start({"quantity": 1})
    await session.apply({"quantity": 3}, versions={"quantity": 1})
    await session.run_action("add_item", {"sku": "A1"}, version=2)
    session.push({"stock": 12})            # thread-safe, from a push channel
    await session.drain()
    await session.stop()

Async derivations run as coroutines on the loop, or in a thread pool when
their compute is a plain callable. Results are applied in completion order;
a result for a superseded run is discarded.
"""

import asyncio
import inspect
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

from reactive.config import EngineConfig
from reactive.errors import UnknownAction, WireError
from reactive.evaluator import PENDING, Evaluator
from store.values import ValueStore
from store.wire import client_payload

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True)
class Projection:
    """Values sent to the client after one processed message.

    - values: changed values, JSON-compatible
    - version: session message counter
    - source: "start", "apply", "action", "push", "async" or "invalidate"
    - replies: {field: client version} confirmed by this message
    - pending: derived names still waiting on async work
    - rejected: why a write was refused ("wire" when a value could not
      reach the client losslessly), or None
    """
    values: dict
    version: int
    source: str
    replies: dict = field(default_factory=dict)
    pending: tuple = ()
    rejected: Optional[str] = None


class Session:
    """Single-writer evaluation context for one component instance."""

    def __init__(self, component, projection: Optional[Callable] = None,
                 config: Optional[EngineConfig] = None, executor=None,
                 instance_id: Optional[str] = None):
        self.component = component
        self.config = config or component.config
        self.instance_id = instance_id or uuid.uuid4().hex
        self.projection = projection
        self.store = ValueStore(component)
        self.evaluator = Evaluator(component, self.store, dispatcher=self._dispatch)
        self.version = 0
        self._executor = executor
        self._owns_executor = executor is None
        self._loop = None
        self._queue = None
        self._task = None
        self._jobs = set()

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self, initial: Optional[dict] = None) -> Projection:
        """Hydrate, evaluate every derived value and start the message loop."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self.store.hydrate(initial)
        self.evaluator.recompute_all()
        projection = self._emit("start", self._payload(self.store.snapshot()), {})
        self._task = asyncio.create_task(self._run())
        return projection

    async def stop(self) -> None:
        if self._task is None:
            return
        self._queue.put_nowait((_STOP, None))
        await self._task
        self._task = None
        for job in list(self._jobs):
            job.cancel()
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def drain(self) -> None:
        """Wait until no message is queued and no async job is running."""
        while True:
            # Let pushes scheduled from other threads reach the queue.
            await asyncio.sleep(0)
            await self._queue.join()
            if not self._jobs:
                if self._queue.empty():
                    return
                continue
            await asyncio.wait(set(self._jobs))

    # ── Entry points ──────────────────────────────────────────────

    async def apply(self, changes: dict, versions: Optional[dict] = None) -> Projection:
        """Write field values (a client mutation when versions are given)."""
        return await self._submit(("apply", dict(changes), dict(versions or {})))

    async def run_action(self, name, value=None, arg=None, version=None) -> Projection:
        return await self._submit(("action", name, value, arg, version))

    async def invalidate(self, *names) -> Projection:
        """Re-run the named derived values and their dependents."""
        return await self._submit(("invalidate", names))

    async def invalidate_resource(self, resource) -> Projection:
        return await self.invalidate(*self.component.fields_for_resource(resource))

    async def handle(self, message: dict) -> Projection:
        """Process a wire message sent by a ClientRuntime."""
        kind = message.get("type")
        if kind == "set":
            return await self.apply(message["changes"], message.get("versions"))
        if kind == "action":
            return await self.run_action(
                message["name"], message.get("value"), message.get("arg"), message.get("version")
            )
        raise ValueError(f"Unknown message type {kind!r}")

    def push(self, changes: dict) -> None:
        """Queue a server-side write. Safe to call from any thread."""
        if self._task is None:
            raise RuntimeError("Session is not started")
        self._loop.call_soon_threadsafe(self._queue.put_nowait, (("push", dict(changes)), None))

    def subscribe(self, bus, topic) -> Callable:
        """Feed PushBus events on `topic` into this session. Returns the listener."""
        def listener(event):
            self.push(event.changes)
        bus.on(topic, listener)
        return listener

    def snapshot(self) -> dict:
        return self.store.snapshot()

    # ── Message loop ──────────────────────────────────────────────

    async def _submit(self, message) -> Projection:
        if self._task is None:
            raise RuntimeError("Session is not started")
        future = self._loop.create_future()
        self._queue.put_nowait((message, future))
        return await future

    async def _run(self):
        while True:
            message, future = await self._queue.get()
            try:
                if message is _STOP:
                    return
                result = self._process(message)
            except Exception as e:
                if future is None:
                    logger.exception("Session %s: %s message failed", self.instance_id, message[0])
                elif not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    def _process(self, message):
        kind = message[0]
        if kind == "apply":
            _, changes, versions = message
            return self._write("apply", changes, versions)
        if kind == "push":
            return self._write("push", message[1], {})
        if kind == "action":
            return self._action(*message[1:])
        if kind == "invalidate":
            result = self.evaluator.invalidate(message[1])
            return self._emit("invalidate", self._payload(result.changed), {})
        if kind == "async":
            _, job, value, error = message
            if error is None:
                result = self.evaluator.resolve(job, value)
            else:
                result = self.evaluator.reject(job, error)
            if result.stale:
                return None
            return self._emit("async", self._payload(result.changed), {})
        raise ValueError(f"Unknown message {kind!r}")

    def _write(self, source, changes, versions, rejected=None):
        for name, value in changes.items():
            self.component.field(name).check(value)
        before = {n: self.store.get(n) for n in changes}
        written = {n: v for n, v in changes.items() if self.store.set(n, v)}
        try:
            payload = self._recompute(written, versions)
        except WireError as e:
            # Replies then confirm the previous values.
            logger.warning("Session %s: %s rolled back: %s", self.instance_id, source, e)
            restored = {n: before[n] for n in written}
            for name, value in restored.items():
                self.store.set(name, value)
            payload = self._recompute(restored, versions)
            rejected = "wire"
        return self._emit(source, payload, versions, rejected)

    def _recompute(self, written, versions) -> dict:
        result = self.evaluator.recompute(written)
        values = dict(written)
        values.update(result.changed)
        # A reply always carries the field's value, changed or not.
        for name in versions:
            values.setdefault(name, self.store.get(name))
        return self._payload(values)

    def _action(self, name, value, arg, version):
        action = self.component.actions.get(name)
        if action is None:
            raise UnknownAction(self.component.name, name)
        versions = {action.field: version} if version is not None else {}
        outcome = action.apply(self.store.snapshot(), value, arg)
        if not outcome.applied:
            logger.debug("Action '%s' rejected: %s", name, outcome.reason)
            return self._write("action", {}, versions, rejected=outcome.reason)
        return self._write("action", {action.field: outcome.value}, versions)

    def _payload(self, values) -> dict:
        ready = {n: v for n, v in values.items() if v is not PENDING}
        return client_payload(self.component, ready)

    def _emit(self, source, payload, replies, rejected=None) -> Projection:
        self.version += 1
        projection = Projection(
            values=payload,
            version=self.version,
            source=source,
            replies=dict(replies),
            pending=self.evaluator.pending(),
            rejected=rejected,
        )
        if self.projection is not None and (projection.values or projection.replies
                                            or source == "start"):
            try:
                self.projection(projection)
            except Exception:
                logger.exception("Session %s: projection callback failed", self.instance_id)
        return projection

    # ── Async jobs ────────────────────────────────────────────────

    def _dispatch(self, job):
        compute = job.node.compute
        if inspect.iscoroutinefunction(compute):
            future = asyncio.ensure_future(compute(job.inputs))
        else:
            future = self._loop.run_in_executor(self._pool(), compute, job.inputs)
        self._jobs.add(future)
        future.add_done_callback(lambda f: self._job_done(job, f))

    def _job_done(self, job, future):
        self._jobs.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        value = None if error is not None else future.result()
        self._queue.put_nowait((("async", job, value, error), None))

    def _pool(self):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.async_workers,
                thread_name_prefix=f"session-{self.instance_id[:8]}",
            )
        return self._executor
