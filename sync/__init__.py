"""
Client synchronization runtime: optimistic cells, animation phases, actions.

Users import ClientRuntime and ClientStore; SyncedCell and PhaseMachine are
usable on their own.
"""

from sync.cell import SyncedCell, SyncOutcome
from sync.phases import AnimationPhase, PhaseEvent, PhaseMachine
from sync.actions import ActionOutcome, OptimisticAction
from sync.runtime import ClientRuntime, ClientStore
from sync.timers import AsyncioScheduler

__all__ = [
    "ClientRuntime", "ClientStore", "SyncedCell", "SyncOutcome", "AnimationPhase",
    "PhaseEvent", "PhaseMachine", "OptimisticAction", "ActionOutcome", "AsyncioScheduler",
]
