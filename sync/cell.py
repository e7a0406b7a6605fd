"""
SyncedCell: client-side state of one optimistic field.

Every local mutation bumps `version` and is sent to the server with that
version. The server's reply carries the version back; only the reply for
the latest mutation is accepted. Unsolicited server pushes are dropped while
a local mutation is unconfirmed, so a slow round trip never overwrites what
the user just typed.

    cell = SyncedCell("title", "draft")
    cell.local_mutate("draft 2")            # APPLIED, version 1
    cell.local_mutate("draft 3")            # APPLIED, version 2
    cell.confirm("draft 2", 1)              # STALE_CONFIRMATION
    cell.server_push("other")               # STALE_PUSH (still pending)
    cell.confirm("draft 3", 2)              # APPLIED, no longer pending
"""

import enum
import logging
from typing import Callable, Optional

from store.values import same_value
from sync.phases import AnimationPhase

logger = logging.getLogger(__name__)


class SyncOutcome(str, enum.Enum):
    APPLIED = "applied"
    NOOP = "noop"
    STALE_CONFIRMATION = "stale_confirmation"
    STALE_PUSH = "stale_push"


class SyncedCell:
    """Versioned optimistic value with an optional PhaseMachine."""

    def __init__(self, name, value=None, machine=None,
                 on_change: Optional[Callable] = None, preserve: bool = False):
        self.name = name
        self.value = value
        self.confirmed_value = value
        self.version = 0
        self.confirmed_version = 0
        self.machine = machine
        self.on_change = on_change
        self.preserve = preserve
        self._last_shown = value

    @property
    def is_pending(self) -> bool:
        return self.version != self.confirmed_version

    @property
    def display_value(self):
        """Value to render: the last non-None value while a preserving exit runs."""
        if self.value is None and self.preserve and self.machine is not None:
            if self.machine.phase is AnimationPhase.EXITING:
                return self._last_shown
        return self.value

    def local_mutate(self, value) -> SyncOutcome:
        """Apply a user edit immediately; the caller sends (value, self.version)."""
        if same_value(value, self.value):
            return SyncOutcome.NOOP
        self.version += 1
        self._assign(value)
        return SyncOutcome.APPLIED

    def confirm(self, reply, reply_version: int) -> SyncOutcome:
        """Accept the server's reply to the latest mutation; older replies are stale."""
        if reply_version != self.version:
            logger.debug(
                "'%s': stale confirmation v%s (current v%s)", self.name, reply_version, self.version
            )
            return SyncOutcome.STALE_CONFIRMATION
        self.confirmed_version = reply_version
        self.confirmed_value = reply
        # The server may have normalized the value; its reply wins.
        self._assign(reply)
        return SyncOutcome.APPLIED

    def server_push(self, value) -> SyncOutcome:
        """Apply an unsolicited server value unless a local edit is pending."""
        if self.is_pending:
            logger.debug("'%s': push dropped, v%s unconfirmed", self.name, self.version)
            return SyncOutcome.STALE_PUSH
        self.confirmed_value = value
        if same_value(value, self.value):
            return SyncOutcome.NOOP
        self._assign(value)
        return SyncOutcome.APPLIED

    def _assign(self, value):
        old = self.value
        if same_value(old, value):
            return
        if old is not None:
            self._last_shown = old
        self.value = value
        if self.machine is not None:
            if old is None and value is not None:
                self.machine.open()
            elif old is not None and value is None:
                self.machine.close()
        if self.on_change is not None:
            self.on_change(self.name, value)

    def __repr__(self):
        return (f"SyncedCell({self.name!r}, value={self.value!r}, "
                f"v{self.version}/{self.confirmed_version})")
