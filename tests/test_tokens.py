import base64
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
import sqlalchemy as sa

from rxshare.db.engine import session_scope
from rxshare.db.models import ShareableRecord, ShareGrant
from rxshare.errors import GrantAlreadyIssuedError
from rxshare.tokens import (
    GRANT_TTL,
    TOKEN_LENGTH,
    TokenGenerationError,
    TokenIssuer,
    build_share_url,
    generate_token,
    render_qr_png,
    token_fingerprint,
)
from tests.factories import BASE_URL, PATIENT_CONTACT, T0


def _bare_record(session, owner_id):
    record = ShareableRecord(
        owner_id=owner_id,
        patient_info={'name': 'Asha'},
        patient_contact=PATIENT_CONTACT,
        medications=[],
        clinical_info={'diagnosis': 'Flu'},
        doctor_info={},
    )
    session.add(record)
    session.flush()
    return record


def test_generated_tokens_are_url_safe_and_unique():
    tokens = {generate_token() for _ in range(500)}
    assert len(tokens) == 500
    for token in tokens:
        assert len(token) == TOKEN_LENGTH
        assert set(token) <= set('ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_')


def test_share_url_carries_token():
    url = build_share_url(BASE_URL + '/', 'abc-_123')
    parsed = urlparse(url)
    assert parsed.path == '/prescription/view'
    assert parse_qs(parsed.query) == {'token': ['abc-_123']}


def test_fingerprint_does_not_reveal_token():
    token = generate_token()
    fingerprint = token_fingerprint(token)
    assert len(fingerprint) == 12
    assert fingerprint not in token
    assert fingerprint == token_fingerprint(token)


def test_issue_creates_grant_with_fixed_ttl(issue, session_factory):
    issued = issue()
    assert issued.issued_at == T0
    assert issued.expires_at == T0 + GRANT_TTL == T0 + timedelta(hours=48)
    assert issued.share_url == build_share_url(BASE_URL, issued.token)
    assert issued.qr_payload == issued.share_url

    with session_scope(session_factory) as session:
        grant = session.get(ShareGrant, issued.token)
        assert grant.record_id == issued.record_id
        assert grant.state == 'issued'
        assert grant.version == 1
        assert grant.linked_account_id is None

    payload = issued.to_payload()
    assert set(payload) == {'recordId', 'token', 'shareUrl', 'qrPayload', 'expiresAt'}
    assert payload['expiresAt'] == '2024-03-03T09:00:00Z'


def test_issue_refuses_second_grant_for_record(issue, service, session_factory):
    issued = issue()
    with pytest.raises(GrantAlreadyIssuedError):
        with session_scope(session_factory) as session:
            record = session.get(ShareableRecord, issued.record_id)
            service.issuer.issue(session, record)


def test_issue_regenerates_on_collision(issue, session_factory, clinician, clock):
    existing = issue().token
    fresh = generate_token()
    candidates = iter([existing, existing, fresh])
    issuer = TokenIssuer(base_url=BASE_URL, clock=clock, token_factory=lambda: next(candidates))

    with session_scope(session_factory) as session:
        issued = issuer.issue(session, _bare_record(session, clinician.account_id))

    assert issued.token == fresh
    with session_scope(session_factory) as session:
        grants = {grant.token: grant.record_id for grant in session.query(ShareGrant)}
    assert len(grants) == 2
    assert grants[fresh] == issued.record_id
    assert grants[existing] != issued.record_id


def test_concurrent_grant_for_same_record_is_refused(session_factory, clinician, clock):
    issuer = TokenIssuer(base_url=BASE_URL, clock=clock)

    with pytest.raises(GrantAlreadyIssuedError):
        with session_scope(session_factory) as session:
            record = _bare_record(session, clinician.account_id)
            assert record.grant is None
            session.execute(
                sa.insert(ShareGrant).values(
                    token=generate_token(),
                    record_id=record.id,
                    issued_at=T0,
                    expires_at=T0 + GRANT_TTL,
                    state='issued',
                    version=1,
                )
            )
            issuer.issue(session, record)

    with session_scope(session_factory) as session:
        assert session.query(ShareGrant).count() == 0


def test_issue_gives_up_after_repeated_collisions(issue, session_factory, clinician, clock):
    existing = issue().token
    issuer = TokenIssuer(base_url=BASE_URL, clock=clock, token_factory=lambda: existing)

    with pytest.raises(TokenGenerationError):
        with session_scope(session_factory) as session:
            issuer.issue(session, _bare_record(session, clinician.account_id))

    with session_scope(session_factory) as session:
        assert session.query(ShareableRecord).count() == 1


def test_issued_tokens_are_distinct_across_records(issue):
    tokens = [issue(diagnosis=f'Case {index}').token for index in range(5)]
    assert len(set(tokens)) == 5


def test_render_qr_png_returns_base64_png():
    encoded = render_qr_png(build_share_url(BASE_URL, generate_token()))
    raw = base64.b64decode(encoded)
    assert raw.startswith(b'\x89PNG\r\n\x1a\n')
    assert encoded.startswith('iVBOR')
