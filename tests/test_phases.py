"""
Tests for PhaseMachine transitions and fallback timers.
"""

import logging

import pytest

from reactive.errors import AnimationTimeout
from store.registry import AnimatedConfig
from sync.phases import AnimationPhase, PhaseEvent, PhaseMachine

P = AnimationPhase


class Recorder:
    """Delegate that records every hook it receives."""

    def __init__(self):
        self.calls = []

    def __getattr__(self, hook):
        if not hook.startswith("on_"):
            raise AttributeError(hook)
        return lambda machine: self.calls.append((hook, machine.phase))


@pytest.fixture
def delegate():
    return Recorder()


@pytest.fixture
def details(scheduler, delegate):
    return PhaseMachine("details", AnimatedConfig(async_field="product"),
                        scheduler, delegate=delegate)


@pytest.fixture
def plain(scheduler):
    return PhaseMachine("toast", AnimatedConfig(), scheduler)


class TestTransitions:
    def test_content_after_the_animation(self, details, delegate):
        details.open()
        assert details.phase is P.ENTERING
        details.transition_end()
        assert details.phase is P.LOADING
        details.async_ready()
        assert details.phase is P.VISIBLE
        assert [h for h, _ in delegate.calls] == ["on_entering", "on_loading", "on_visible"]

    def test_content_during_the_animation(self, details, delegate):
        details.open()
        details.async_ready()
        assert details.phase is P.ENTERING
        details.transition_end()
        assert details.phase is P.VISIBLE
        assert [h for h, _ in delegate.calls] == [
            "on_entering", "on_content_ready_during_enter", "on_visible",
        ]

    def test_without_async_content(self, plain):
        plain.open()
        plain.transition_end()
        assert plain.phase is P.VISIBLE

    def test_async_refresh_while_visible(self, details, delegate):
        details.open()
        details.async_ready()
        details.transition_end()
        assert details.async_ready()
        assert details.phase is P.VISIBLE
        assert delegate.calls[-1] == ("on_async_ready", P.VISIBLE)

    @pytest.mark.parametrize("steps", [
        [],
        ["transition_end"],
        ["transition_end", "async_ready"],
    ])
    def test_close_from_any_open_phase(self, details, steps):
        details.open()
        for step in steps:
            getattr(details, step)()
        assert details.close()
        assert details.phase is P.EXITING

    def test_ignored_events(self, details):
        assert not details.close()
        assert not details.transition_end()
        assert details.phase is P.IDLE
        details.open()
        assert not details.open()
        assert details.history == [(P.IDLE, PhaseEvent.OPEN, P.ENTERING)]

    def test_dispatch_accepts_event_names(self, plain):
        assert plain.dispatch("open")
        assert plain.phase is P.ENTERING


class TestTimers:
    def test_entering_fallback(self, details, scheduler):
        details.open()
        scheduler.advance(0.2)
        assert details.phase is P.ENTERING
        scheduler.advance(0.1)
        assert details.phase is P.LOADING

        [timeout] = details.timeouts
        assert isinstance(timeout, AnimationTimeout)
        assert timeout.phase == "entering"
        assert details.history[-1] == (P.ENTERING, PhaseEvent.TIMEOUT, P.LOADING)

    def test_fallback_goes_visible_when_content_is_ready(self, details, scheduler):
        details.open()
        details.async_ready()
        scheduler.advance(1.0)
        assert details.phase is P.VISIBLE

    def test_transition_end_cancels_the_fallback(self, plain, scheduler):
        plain.open()
        plain.transition_end()
        assert scheduler.armed == []
        scheduler.advance(1.0)
        assert plain.timeouts == []

    def test_exiting_ends_on_its_timer(self, plain, scheduler):
        plain.open()
        plain.transition_end()
        plain.close()
        assert not plain.transition_end()
        scheduler.advance(0.2)
        assert plain.phase is P.EXITING
        scheduler.advance(0.1)
        assert plain.phase is P.IDLE
        assert plain.timeouts == []

    def test_reopen_while_exiting(self, details, scheduler):
        details.open()
        details.async_ready()
        details.transition_end()
        details.close()
        details.open()
        assert details.phase is P.ENTERING
        assert not details.is_async_ready
        assert len(scheduler.armed) == 1

        # The cancelled exit timer must not close the reopened machine.
        scheduler.advance(0.2)
        assert details.phase is P.ENTERING
        scheduler.advance(0.1)
        assert details.phase is P.LOADING

    def test_duration_override(self, scheduler):
        machine = PhaseMachine("slow", AnimatedConfig(duration=1.0), scheduler, margin=0.1)
        assert machine.duration == 1.0
        machine.open()
        scheduler.advance(1.0)
        assert machine.phase is P.ENTERING
        scheduler.advance(0.2)
        assert machine.phase is P.VISIBLE

    def test_default_duration(self, scheduler):
        machine = PhaseMachine("quick", AnimatedConfig(), scheduler, default_duration=0.5)
        assert machine.duration == 0.5


class TestDelegate:
    def test_delegate_errors_are_logged(self, scheduler, caplog):
        class Broken:
            def on_entering(self, machine):
                raise RuntimeError("view gone")

        machine = PhaseMachine("m", AnimatedConfig(), scheduler, delegate=Broken())
        with caplog.at_level(logging.ERROR, logger="sync.phases"):
            assert machine.open()
        assert machine.phase is P.ENTERING
        assert "on_entering" in caplog.text

    def test_missing_hooks_are_fine(self, plain):
        plain.open()
        plain.transition_end()
        assert plain.phase is P.VISIBLE
