import os
import sys
from typing import Callable, Iterator

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the rxshare package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('JWT_SECRET', 'test-jwt-secret')

from rxshare import accounts  # noqa: E402
from rxshare.config import get_settings  # noqa: E402
from rxshare.db.engine import configure_database, make_session_factory, session_scope  # noqa: E402
from rxshare.db.models import Base  # noqa: E402
from rxshare.identity import AccountIdentity  # noqa: E402
from rxshare.notifier import ChangeFeed  # noqa: E402
from rxshare.schemas import PrescriptionCreate  # noqa: E402
from rxshare.service import ShareService  # noqa: E402
from rxshare.tokens import IssuedGrant  # noqa: E402
from tests.factories import BASE_URL, OTHER_CONTACT, PATIENT_CONTACT, MutableClock, prescription_payload  # noqa: E402

get_settings.cache_clear()


@pytest.fixture(scope='function')
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture(scope='function')
def engine() -> Iterator[sa.engine.Engine]:
    """Provide an isolated in-memory SQLite database for each test."""

    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope='function')
def session_factory(engine) -> sessionmaker:
    return make_session_factory(engine)


@pytest.fixture(scope='function')
def feed() -> ChangeFeed:
    return ChangeFeed(buffer_size=8)


@pytest.fixture(scope='function')
def service(session_factory, feed, clock) -> ShareService:
    return ShareService(session_factory, base_url=BASE_URL, feed=feed, clock=clock)


@pytest.fixture(scope='function')
def gateway(service):
    return service.gateway


@pytest.fixture(scope='function')
def linker(service):
    return service.linker


def _register(session_factory, **kwargs) -> AccountIdentity:
    with session_scope(session_factory) as session:
        account = accounts.register_account(session, password='secret-pw', **kwargs)
        return accounts.to_identity(account)


@pytest.fixture(scope='function')
def register_account(session_factory) -> Callable[..., AccountIdentity]:
    """Return a helper creating accounts directly in the store."""

    def _create(name: str, contact: str, role: str = accounts.ROLE_PATIENT) -> AccountIdentity:
        return _register(session_factory, name=name, contact=contact, role=role)

    return _create


@pytest.fixture(scope='function')
def clinician(register_account) -> AccountIdentity:
    return register_account('Dr. Rao', '9000000001', accounts.ROLE_CLINICIAN)


@pytest.fixture(scope='function')
def patient(register_account) -> AccountIdentity:
    return register_account('Asha Verma', PATIENT_CONTACT)


@pytest.fixture(scope='function')
def other_patient(register_account) -> AccountIdentity:
    return register_account('Ravi Kumar', OTHER_CONTACT)


@pytest.fixture(scope='function')
def issue(service, clinician) -> Callable[..., IssuedGrant]:
    """Create a prescription for the default clinician and return its grant."""

    def _issue(contact: str = PATIENT_CONTACT, diagnosis: str = 'Acute sinusitis') -> IssuedGrant:
        payload = PrescriptionCreate.model_validate(prescription_payload(contact, diagnosis))
        return service.create_prescription(clinician, payload)

    return _issue


@pytest.fixture(scope='function')
def api_client(service, session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI test client bound to the in-memory database."""

    from rxshare import main

    configure_database(session_factory)
    main.app.dependency_overrides[main.get_service] = lambda: service
    try:
        with TestClient(main.app) as client:
            yield client
    finally:
        main.app.dependency_overrides.pop(main.get_service, None)
