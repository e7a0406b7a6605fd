"""
Timer scheduling for animation phases.

A scheduler exposes call_later(delay, callback) returning a handle with
cancel(). AsyncioScheduler uses the running event loop; tests drive the
phase machine with a manual clock instead.
"""

import asyncio


class AsyncioScheduler:
    """Schedules callbacks on an asyncio event loop."""

    def __init__(self, loop=None):
        self._loop = loop

    @property
    def loop(self):
        return self._loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback):
        return self.loop.call_later(delay, callback)

    def now(self) -> float:
        return self.loop.time()
