"""
Shared fixtures: a manual scheduler with a virtual clock and a few small
components declared through ComponentSchema.
"""

import pytest

from store.registry import AnimatedConfig, ComponentSchema


# ---------------------------------------------------------------------------
# Manual scheduler
# ---------------------------------------------------------------------------

class _Timer:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """call_later() against a clock that only moves when advance() is called."""

    def __init__(self):
        self.clock = 0.0
        self._timers = []

    def call_later(self, delay, callback):
        timer = _Timer(self.clock + delay, callback)
        self._timers.append(timer)
        return timer

    def now(self):
        return self.clock

    def advance(self, seconds):
        """Move the clock forward, firing due timers in deadline order."""
        target = self.clock + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self.clock = timer.when
            timer.callback()
        self.clock = target

    @property
    def armed(self):
        return [t for t in self._timers if not t.cancelled]


@pytest.fixture
def scheduler():
    return ManualScheduler()


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

@pytest.fixture
def counter():
    """count → doubled → quadrupled, plus an unrelated branch."""
    schema = ComponentSchema("counter")
    schema.field("count", int, default=0, optimistic=True)
    schema.field("other", int, default=0)
    schema.derive("doubled", "count * 2", optimistic=True)
    schema.derive("quadrupled", "doubled * 2", optimistic=True)
    schema.derive("other_plus", "other + 1")
    return schema.build()


@pytest.fixture
def cart():
    """Optimistic cart with mirrored totals and a server-only stock check."""
    schema = ComponentSchema("cart")
    schema.field("quantity", int, default=1, optimistic=True)
    schema.field("unit_price", float, default=2.5, optimistic=True)
    schema.field("items", list, default=[], optimistic=True)
    schema.field("stock", int, default=0)
    schema.field("street", str, default="", optimistic=True, group="address")
    schema.field("city", str, default="", optimistic=True, group="address")
    schema.derive("total", "quantity * unit_price", optimistic=True)
    schema.derive("tax", "total * 0.2", optimistic=True)
    schema.derive("available", "stock >= quantity", optimistic=True)
    schema.derive("item_count", "sum(map(lambda i: i['qty'], items))", optimistic=True)
    schema.action(
        "decrement", "items",
        "REMOVE if item['qty'] <= 1 else {**item, 'qty': item['qty'] - 1}",
        key="id",
    )
    schema.action("add_item", "items", "current + [value]")
    schema.action("set_quantity", "quantity", "set", validate="value > 0")
    return schema.build()


@pytest.fixture
def modal():
    """An animated selection whose content arrives separately."""
    schema = ComponentSchema("modal")
    schema.field("selected_id", int, animated=AnimatedConfig(async_field="detail"))
    schema.field("detail", dict)
    schema.field("banner", str, animated=AnimatedConfig(preserve=True))
    return schema.build()
