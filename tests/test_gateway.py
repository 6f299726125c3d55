from datetime import timedelta

import pytest

from rxshare.db.engine import session_scope
from rxshare.db.models import GrantEvent, ShareGrant
from rxshare.errors import ExpiredError, ForbiddenError, NotFoundError
from rxshare.identity import guest
from rxshare.notifier import record_topic
from rxshare.state import GrantState
from tests.factories import PATIENT_CONTACT, T0


def _grant(session_factory, token):
    with session_scope(session_factory) as session:
        grant = session.get(ShareGrant, token)
        return grant.state, grant.version


def _events(session_factory):
    with session_scope(session_factory) as session:
        return [(row.kind, row.sequence) for row in session.query(GrantEvent).order_by(GrantEvent.id)]


def test_resolve_returns_record_and_marks_viewed(issue, gateway, session_factory):
    issued = issue()

    resolved = gateway.resolve(issued.token)

    assert resolved.record.id == issued.record_id
    assert resolved.state is GrantState.VIEWED
    assert resolved.record.clinical_info['diagnosis'] == 'Acute sinusitis'
    assert _grant(session_factory, issued.token) == ('viewed', 2)
    assert _events(session_factory) == [('viewed', 2)]

    payload = resolved.to_payload()
    assert payload['state'] == 'viewed'
    assert payload['access'] == 'token'
    assert payload['timeRemaining'] == '2 days remaining'


def test_repeated_resolves_record_view_once(issue, gateway, session_factory, feed):
    issued = issue()
    subscription = feed.subscribe(record_topic(issued.record_id))

    for _ in range(3):
        assert gateway.resolve(issued.token).state is GrantState.VIEWED

    assert _events(session_factory) == [('viewed', 2)]
    items = subscription.drain()
    assert [item.kind.value for item in items] == ['viewed']


def test_resolve_just_before_expiry(issue, gateway, clock):
    issued = issue()
    clock.set(T0 + timedelta(hours=47, minutes=59))

    assert gateway.resolve(issued.token).state is GrantState.VIEWED


def test_resolve_at_exact_expiry_still_allowed(issue, gateway, clock):
    issued = issue()
    clock.set(issued.expires_at)

    assert gateway.resolve(issued.token).record.id == issued.record_id


def test_resolve_after_expiry_fails_forever(issue, gateway, clock, session_factory):
    issued = issue()
    clock.set(T0 + timedelta(hours=48, minutes=1))

    with pytest.raises(ExpiredError) as excinfo:
        gateway.resolve(issued.token)
    assert excinfo.value.status_code == 410
    assert 'ask your clinician' in excinfo.value.message
    assert excinfo.value.context['expiresAt'] == '2024-03-03T09:00:00Z'

    clock.advance(days=30)
    with pytest.raises(ExpiredError):
        gateway.resolve(issued.token)
    # The stored state is untouched; expiry is derived on read.
    assert _grant(session_factory, issued.token) == ('issued', 1)
    assert _events(session_factory) == []


@pytest.mark.parametrize('token', ['', 'not-a-real-token', 'x' * 43])
def test_resolve_unknown_token(issue, gateway, token):
    issue()
    with pytest.raises(NotFoundError):
        gateway.resolve(token)


def test_owner_can_read_without_token_after_expiry(issue, gateway, clinician, clock):
    issued = issue()
    clock.advance(days=10)

    resolved = gateway.resolve_by_owner(issued.record_id, clinician)

    assert resolved.access == 'owner'
    assert resolved.state is GrantState.EXPIRED
    assert resolved.record.id == issued.record_id


def test_linked_patient_reads_by_record_id(issue, gateway, linker, patient, clock):
    issued = issue()
    linker.link(issued.token, patient)
    clock.advance(days=5)

    resolved = gateway.resolve_by_owner(issued.record_id, patient)

    assert resolved.access == 'patient'
    assert resolved.state is GrantState.LINKED
    assert resolved.linked_account_id == patient.account_id


def test_other_accounts_and_guests_are_forbidden(issue, gateway, other_patient, register_account):
    issued = issue()
    other_clinician = register_account('Dr. Sen', '9000000002', 'clinician')

    for caller in (other_patient, other_clinician, guest('Asha', PATIENT_CONTACT)):
        with pytest.raises(ForbiddenError):
            gateway.resolve_by_owner(issued.record_id, caller)


def test_resolve_by_owner_unknown_record(gateway, clinician):
    with pytest.raises(NotFoundError):
        gateway.resolve_by_owner('missing', clinician)
