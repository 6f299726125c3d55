"""Lifecycle of a share grant.

``issued`` -> ``viewed`` -> ``linked`` with ``issued`` -> ``linked`` allowed
directly.  ``expired`` is never stored: it is derived from the clock whenever
a grant is read, so no background job has to move grants around.  ``linked``
and ``expired`` are terminal.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Dict, FrozenSet

from rxshare.time_utils import ensure_utc


class GrantState(str, enum.Enum):
    """States a grant can be observed in."""

    ISSUED = "issued"
    VIEWED = "viewed"
    LINKED = "linked"
    EXPIRED = "expired"


# Stored states from which a link may still be claimed.
LINKABLE_STATES: FrozenSet[GrantState] = frozenset({GrantState.ISSUED, GrantState.VIEWED})

_TRANSITIONS: Dict[GrantState, FrozenSet[GrantState]] = {
    GrantState.ISSUED: frozenset({GrantState.VIEWED, GrantState.LINKED, GrantState.EXPIRED}),
    GrantState.VIEWED: frozenset({GrantState.LINKED, GrantState.EXPIRED}),
    GrantState.LINKED: frozenset(),
    GrantState.EXPIRED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a caller attempts a transition the lifecycle forbids."""

    def __init__(self, source: GrantState, target: GrantState) -> None:
        super().__init__(f"Cannot move grant from {source.value} to {target.value}")
        self.source = source
        self.target = target


def is_expired(expires_at: datetime, now: datetime) -> bool:
    """Return ``True`` once ``now`` is strictly past ``expires_at``."""

    return ensure_utc(now) > ensure_utc(expires_at)


def effective_state(stored: GrantState | str, expires_at: datetime, now: datetime) -> GrantState:
    """Return the observable state of a grant at ``now``.

    A linked grant stays linked for its owner and patient after the TTL
    elapses; any other grant reads as expired.
    """

    state = GrantState(stored)
    if state is GrantState.LINKED:
        return state
    if is_expired(expires_at, now):
        return GrantState.EXPIRED
    return state


def can_transition(source: GrantState, target: GrantState) -> bool:
    return target in _TRANSITIONS[GrantState(source)]


def require_transition(source: GrantState, target: GrantState) -> None:
    if not can_transition(source, target):
        raise InvalidTransitionError(GrantState(source), GrantState(target))


__all__ = [
    "GrantState",
    "InvalidTransitionError",
    "LINKABLE_STATES",
    "can_transition",
    "effective_state",
    "is_expired",
    "require_transition",
]
