"""Plugin lifecycle states, allowed transitions and transition outcomes."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from plugkeep.errors import error_for
from plugkeep.protocol import ErrorKind

if TYPE_CHECKING:
    from plugkeep.plugins.validator import ValidationReport
    from plugkeep.security.policy import SecurityPolicy


class LifecycleState(str, Enum):
    """Lifecycle states of a plugin instance."""

    DISCOVERED = "discovered"
    VALIDATED = "validated"
    LOADED = "loaded"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    FAILED = "failed"
    UNLOADED = "unloaded"


# Reload re-enters Loaded from Loaded, Active or Deactivated
ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.DISCOVERED: frozenset({LifecycleState.VALIDATED, LifecycleState.FAILED}),
    LifecycleState.VALIDATED: frozenset({LifecycleState.LOADED, LifecycleState.FAILED}),
    LifecycleState.LOADED: frozenset({LifecycleState.ACTIVE, LifecycleState.LOADED}),
    LifecycleState.ACTIVE: frozenset(
        {LifecycleState.DEACTIVATED, LifecycleState.FAILED, LifecycleState.LOADED}
    ),
    LifecycleState.DEACTIVATED: frozenset(
        {LifecycleState.UNLOADED, LifecycleState.FAILED, LifecycleState.LOADED}
    ),
    LifecycleState.FAILED: frozenset(),
    LifecycleState.UNLOADED: frozenset(),
}

TERMINAL_STATES = frozenset({LifecycleState.FAILED, LifecycleState.UNLOADED})


def can_transition(old: LifecycleState, new: LifecycleState) -> bool:
    """Check whether a transition is an allowed edge."""
    return new in ALLOWED_TRANSITIONS[old]


@dataclass(frozen=True)
class LifecycleEvent:
    """Emitted for every committed lifecycle transition."""

    plugin: str
    old_state: LifecycleState
    new_state: LifecycleState
    reason: str
    policy: SecurityPolicy | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TransitionResult:
    """Structured outcome of a lifecycle call."""

    plugin: str
    success: bool
    from_state: LifecycleState
    to_state: LifecycleState
    kind: ErrorKind | None = None
    message: str = ""
    report: ValidationReport | None = None

    @classmethod
    def ok(
        cls,
        plugin: str,
        from_state: LifecycleState,
        to_state: LifecycleState,
        message: str = "",
        report: ValidationReport | None = None,
    ) -> TransitionResult:
        return cls(plugin, True, from_state, to_state, message=message, report=report)

    @classmethod
    def failure(
        cls,
        plugin: str,
        from_state: LifecycleState,
        to_state: LifecycleState,
        kind: ErrorKind,
        message: str,
        report: ValidationReport | None = None,
    ) -> TransitionResult:
        return cls(plugin, False, from_state, to_state, kind=kind, message=message, report=report)

    def raise_for_error(self) -> TransitionResult:
        """Raise the matching PlugkeepError if the call failed."""
        if not self.success and self.kind is not None:
            raise error_for(self.kind, self.message)
        return self
