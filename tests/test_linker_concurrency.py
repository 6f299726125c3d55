"""Concurrent link attempts against a file-backed SQLite database."""

import threading
from collections import Counter

import pytest
import sqlalchemy as sa

from rxshare import accounts
from rxshare.db.engine import make_session_factory, session_scope
from rxshare.db.models import Base, GrantEvent, HealthRecordEntry, ShareGrant
from rxshare.linker import LinkStatus
from rxshare.notifier import ChangeFeed, record_topic
from rxshare.schemas import PrescriptionCreate
from rxshare.service import ShareService
from tests.factories import BASE_URL, PATIENT_CONTACT, prescription_payload

WORKERS = 8


@pytest.fixture
def file_service(tmp_path, clock):
    engine = sa.create_engine(
        f"sqlite:///{tmp_path / 'rxshare.db'}",
        future=True,
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    Base.metadata.create_all(engine)
    service = ShareService(
        make_session_factory(engine),
        base_url=BASE_URL,
        feed=ChangeFeed(buffer_size=64),
        clock=clock,
        require_contact_match=False,
    )
    try:
        yield service
    finally:
        engine.dispose()


def _account(service, name, contact, role=accounts.ROLE_PATIENT):
    with session_scope(service.session_factory) as session:
        return accounts.to_identity(
            accounts.register_account(session, name=name, contact=contact, password='secret-pw', role=role)
        )


def _issue(service):
    clinician = _account(service, 'Dr. Rao', '9000000001', accounts.ROLE_CLINICIAN)
    payload = PrescriptionCreate.model_validate(prescription_payload())
    return service.create_prescription(clinician, payload)


def _race(service, token, identities):
    barrier = threading.Barrier(len(identities))
    results = [None] * len(identities)
    errors = []

    def _worker(index, identity):
        barrier.wait()
        try:
            results[index] = service.link(token, identity)
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [
        threading.Thread(target=_worker, args=(index, identity))
        for index, identity in enumerate(identities)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert not errors, errors
    return results


def _linked_facts(service, token):
    with session_scope(service.session_factory) as session:
        grant = session.get(ShareGrant, token)
        return (
            grant.linked_account_id,
            grant.version,
            session.query(GrantEvent).filter_by(kind='linked').count(),
            session.query(HealthRecordEntry).count(),
        )


def test_concurrent_links_by_different_accounts_have_one_winner(file_service):
    issued = _issue(file_service)
    identities = [
        _account(file_service, f'Patient {index}', f'98000000{index:02d}')
        for index in range(WORKERS)
    ]
    subscription = file_service.feed.subscribe(record_topic(issued.record_id))

    results = _race(file_service, issued.token, identities)

    statuses = Counter(result.status for result in results)
    assert statuses == {LinkStatus.LINKED: 1, LinkStatus.LINK_CONFLICT: WORKERS - 1}
    winner = next(result for result in results if result.status is LinkStatus.LINKED)
    linked_account_id, version, events, history = _linked_facts(file_service, issued.token)
    assert linked_account_id == winner.linked_account_id
    assert version == 2
    assert events == 1
    assert history == 1
    assert [item.kind.value for item in subscription.drain()] == ['linked']


def test_concurrent_links_by_same_account_link_once(file_service):
    issued = _issue(file_service)
    patient = _account(file_service, 'Asha Verma', PATIENT_CONTACT)

    results = _race(file_service, issued.token, [patient] * WORKERS)

    statuses = Counter(result.status for result in results)
    assert statuses == {LinkStatus.LINKED: 1, LinkStatus.ALREADY_LINKED: WORKERS - 1}
    assert {result.linked_account_id for result in results} == {patient.account_id}
    assert _linked_facts(file_service, issued.token) == (patient.account_id, 2, 1, 1)
