"""
Declarative animation phase machine for an animated field.

A field whose value goes None → value opens (idle → entering); value → None
closes it (→ exiting). The view reports the end of its CSS transition with
transition_end(); if it never does, a fallback timer at duration + margin
advances the machine anyway. Exiting always ends on a timer: the element
is being torn down and cannot be relied on to report back.

    machine = PhaseMachine("details", AnimatedConfig(async_field="product"),
                           scheduler=AsyncioScheduler(), delegate=view)
    machine.open()              # idle → entering, fallback timer armed
    machine.transition_end()    # entering → loading (product not ready yet)
    machine.async_ready()       # loading → visible

Delegate hooks (all optional): on_entering, on_loading, on_visible,
on_exiting, on_idle, on_async_ready, on_content_ready_during_enter. Each is
called with the machine.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from reactive.errors import AnimationTimeout

logger = logging.getLogger(__name__)


class AnimationPhase(str, enum.Enum):
    IDLE = "idle"
    ENTERING = "entering"
    LOADING = "loading"
    VISIBLE = "visible"
    EXITING = "exiting"


class PhaseEvent(str, enum.Enum):
    OPEN = "open"
    CLOSE = "close"
    TRANSITION_END = "transition_end"
    ASYNC_READY = "async_ready"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Transition:
    """
    A single phase edge.

    - guard: callable(machine) that must be truthy for the edge to apply;
      edges are tried in table order.
    - notify: delegate hook to call when the edge keeps the phase unchanged.
    """
    from_phase: AnimationPhase
    event: PhaseEvent
    to_phase: AnimationPhase
    guard: Optional[Callable] = None
    notify: Optional[str] = None


def _awaiting_content(machine) -> bool:
    return machine.has_async and not machine.is_async_ready


P = AnimationPhase
E = PhaseEvent

TRANSITIONS = [
    Transition(P.IDLE, E.OPEN, P.ENTERING),
    Transition(P.ENTERING, E.TRANSITION_END, P.LOADING, guard=_awaiting_content),
    Transition(P.ENTERING, E.TRANSITION_END, P.VISIBLE),
    Transition(P.ENTERING, E.TIMEOUT, P.LOADING, guard=_awaiting_content),
    Transition(P.ENTERING, E.TIMEOUT, P.VISIBLE),
    Transition(P.ENTERING, E.ASYNC_READY, P.ENTERING, notify="on_content_ready_during_enter"),
    Transition(P.ENTERING, E.CLOSE, P.EXITING),
    Transition(P.LOADING, E.ASYNC_READY, P.VISIBLE),
    Transition(P.LOADING, E.CLOSE, P.EXITING),
    Transition(P.VISIBLE, E.ASYNC_READY, P.VISIBLE, notify="on_async_ready"),
    Transition(P.VISIBLE, E.CLOSE, P.EXITING),
    Transition(P.EXITING, E.TIMEOUT, P.IDLE),
    Transition(P.EXITING, E.OPEN, P.ENTERING),
]

del P, E

# Phases that arm a fallback timer on entry.
_TIMED = (AnimationPhase.ENTERING, AnimationPhase.EXITING)


class PhaseMachine:
    """Table-driven phase state for one animated field.

    Events with no edge from the current phase are ignored (returns False).
    """

    transitions = TRANSITIONS

    def __init__(self, name, config, scheduler, delegate=None,
                 margin: float = 0.05, default_duration: float = 0.2):
        self.name = name
        self.config = config
        self.scheduler = scheduler
        self.delegate = delegate
        self.margin = margin
        self.phase = AnimationPhase.IDLE
        self.is_async_ready = False
        self.history = []           # (from_phase, event, to_phase)
        self.timeouts = []          # AnimationTimeout recoveries
        self._duration = config.duration if config.duration is not None else default_duration
        self._timer = None

    @property
    def has_async(self) -> bool:
        return self.config.async_field is not None

    @property
    def duration(self) -> float:
        return self._duration

    # ── Events ────────────────────────────────────────────────────

    def open(self) -> bool:
        return self.dispatch(PhaseEvent.OPEN)

    def close(self) -> bool:
        return self.dispatch(PhaseEvent.CLOSE)

    def transition_end(self) -> bool:
        return self.dispatch(PhaseEvent.TRANSITION_END)

    def async_ready(self) -> bool:
        self.is_async_ready = True
        return self.dispatch(PhaseEvent.ASYNC_READY)

    def dispatch(self, event: PhaseEvent) -> bool:
        event = PhaseEvent(event)
        edge = self._find(event)
        if edge is None:
            logger.debug("'%s': %s ignored in phase %s", self.name, event.value, self.phase.value)
            return False

        before = self.phase
        self.history.append((before, event, edge.to_phase))
        if edge.to_phase is before:
            if edge.notify:
                self._notify(edge.notify)
            return True

        self._cancel_timer()
        if event is PhaseEvent.OPEN:
            self.is_async_ready = False
        self.phase = edge.to_phase
        if self.phase in _TIMED:
            self._arm_timer()
        self._notify(f"on_{self.phase.value}")
        return True

    def _find(self, event) -> Optional[Transition]:
        for t in self.transitions:
            if t.from_phase is self.phase and t.event is event:
                if t.guard is None or t.guard(self):
                    return t
        return None

    # ── Timers ────────────────────────────────────────────────────

    def _arm_timer(self):
        phase = self.phase
        seconds = self._duration + self.margin
        self._timer = self.scheduler.call_later(seconds, lambda: self._fire(phase, seconds))

    def _fire(self, phase, seconds):
        self._timer = None
        if self.phase is not phase:
            return
        if phase is AnimationPhase.ENTERING:
            recovery = AnimationTimeout(self.name, phase.value, seconds)
            self.timeouts.append(recovery)
            logger.debug("%s", recovery)
        self.dispatch(PhaseEvent.TIMEOUT)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ── Delegate ──────────────────────────────────────────────────

    def _notify(self, hook):
        fn = getattr(self.delegate, hook, None)
        if fn is None:
            return
        try:
            fn(self)
        except Exception:
            logger.exception("'%s': delegate %s failed", self.name, hook)

    def __repr__(self):
        return f"PhaseMachine({self.name!r}, phase={self.phase.value})"
