from datetime import timedelta

import pytest

from rxshare.state import (
    GrantState,
    InvalidTransitionError,
    can_transition,
    effective_state,
    is_expired,
    require_transition,
)
from tests.factories import T0


EXPIRES = T0 + timedelta(hours=48)


def test_expiry_boundary_is_inclusive():
    assert not is_expired(EXPIRES, EXPIRES)
    assert is_expired(EXPIRES, EXPIRES + timedelta(microseconds=1))


@pytest.mark.parametrize('stored', [GrantState.ISSUED, GrantState.VIEWED])
def test_unlinked_grants_read_expired_after_ttl(stored):
    assert effective_state(stored, EXPIRES, T0) is stored
    assert effective_state(stored.value, EXPIRES, EXPIRES + timedelta(minutes=1)) is GrantState.EXPIRED


def test_linked_grant_stays_linked_after_ttl():
    later = EXPIRES + timedelta(days=30)
    assert effective_state(GrantState.LINKED, EXPIRES, later) is GrantState.LINKED


def test_naive_timestamps_are_treated_as_utc():
    naive = EXPIRES.replace(tzinfo=None)
    assert effective_state('issued', naive, T0) is GrantState.ISSUED
    assert effective_state('issued', naive, EXPIRES + timedelta(seconds=1)) is GrantState.EXPIRED


def test_transition_table():
    assert can_transition(GrantState.ISSUED, GrantState.VIEWED)
    assert can_transition(GrantState.ISSUED, GrantState.LINKED)
    assert can_transition(GrantState.VIEWED, GrantState.LINKED)
    assert not can_transition(GrantState.VIEWED, GrantState.ISSUED)
    assert not can_transition(GrantState.LINKED, GrantState.VIEWED)
    assert not can_transition(GrantState.EXPIRED, GrantState.LINKED)


def test_require_transition_raises_for_terminal_state():
    with pytest.raises(InvalidTransitionError) as excinfo:
        require_transition(GrantState.LINKED, GrantState.EXPIRED)
    assert excinfo.value.source is GrantState.LINKED
    assert 'linked' in str(excinfo.value)
