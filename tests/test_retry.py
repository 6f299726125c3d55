import pytest
from sqlalchemy.exc import OperationalError

from rxshare.db.engine import translate_store_errors
from rxshare.errors import NotFoundError, TransientStoreError
from rxshare.retry import BACKOFF_MAX, MAX_ATTEMPTS, calculate_backoff, retry_transient


def test_backoff_grows_and_is_capped():
    assert calculate_backoff(1) == pytest.approx(0.05)
    assert calculate_backoff(2) == pytest.approx(0.1)
    assert calculate_backoff(3) == pytest.approx(0.2)
    assert calculate_backoff(20) == BACKOFF_MAX


def test_transient_failures_are_retried():
    calls = []
    sleeps = []

    def _flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientStoreError(operation='test')
        return 'ok'

    assert retry_transient('test', _flaky, sleep=sleeps.append) == 'ok'
    assert len(calls) == 3
    assert sleeps == [calculate_backoff(1), calculate_backoff(2)]


def test_retry_gives_up_after_max_attempts():
    calls = []

    def _down():
        calls.append(1)
        raise TransientStoreError(operation='test')

    with pytest.raises(TransientStoreError) as excinfo:
        retry_transient('test', _down, sleep=lambda _: None)
    assert len(calls) == MAX_ATTEMPTS
    assert excinfo.value.retryable
    assert excinfo.value.status_code == 503


def test_non_transient_errors_propagate_immediately():
    calls = []

    def _missing():
        calls.append(1)
        raise NotFoundError()

    with pytest.raises(NotFoundError):
        retry_transient('test', _missing, sleep=lambda _: None)
    assert len(calls) == 1


def test_operational_errors_become_transient():
    with pytest.raises(TransientStoreError) as excinfo:
        with translate_store_errors('resolve'):
            raise OperationalError('SELECT 1', {}, Exception('database is locked'))
    assert excinfo.value.context == {'operation': 'resolve'}
