import pytest

from rxshare.config import get_settings


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv('ENVIRONMENT', 'production')
    monkeypatch.setenv('JWT_SECRET', 'prod-secret')
    monkeypatch.setenv('RXSHARE_BASE_URL', 'https://rx.example.com/')
    monkeypatch.setenv('RXSHARE_REQUIRE_CONTACT_MATCH', 'yes')
    monkeypatch.setenv('RXSHARE_FEED_BUFFER', '0')
    monkeypatch.setenv('LOG_LEVEL', 'debug')

    settings = get_settings()

    assert settings.base_url == 'https://rx.example.com'
    assert settings.jwt_secret == 'prod-secret'
    assert settings.require_contact_match is True
    assert settings.feed_buffer_size == 1
    assert settings.log_level == 'DEBUG'
    assert not settings.is_development


def test_missing_jwt_secret_outside_development(monkeypatch):
    monkeypatch.setenv('ENVIRONMENT', 'production')
    monkeypatch.delenv('JWT_SECRET', raising=False)
    with pytest.raises(RuntimeError):
        get_settings()


def test_development_generates_jwt_secret(monkeypatch):
    monkeypatch.setenv('ENVIRONMENT', 'development')
    monkeypatch.delenv('JWT_SECRET', raising=False)
    settings = get_settings()
    assert settings.is_development
    assert len(settings.jwt_secret) > 32


def test_contact_match_enforced_unless_disabled(monkeypatch):
    monkeypatch.delenv('RXSHARE_REQUIRE_CONTACT_MATCH', raising=False)
    assert get_settings().require_contact_match is True

    get_settings.cache_clear()
    monkeypatch.setenv('RXSHARE_REQUIRE_CONTACT_MATCH', 'false')
    assert get_settings().require_contact_match is False
