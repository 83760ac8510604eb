import pytest

from app.config import Settings
from app.utils import (
    UNKNOWN_CLIENT,
    bucket_start,
    client_identity,
    epoch_ms,
    format_reset,
    seconds_until,
)


def test_client_identity_prefers_forwarded_address():
    headers = {"x-forwarded-for": " 203.0.113.4 , 10.0.0.2"}
    assert client_identity(headers, "10.0.0.2") == "203.0.113.4"


def test_client_identity_falls_back_to_peer():
    assert client_identity({"x-forwarded-for": " , "}, "192.0.2.10") == "192.0.2.10"
    assert client_identity({"x-forwarded-for": "203.0.113.4"}, "192.0.2.10", trust_forwarded=False) == (
        "192.0.2.10"
    )


def test_client_identity_uses_shared_sentinel():
    assert client_identity({}, None) == UNKNOWN_CLIENT
    assert client_identity({}, "  ") == "unknown"


def test_bucket_start_is_epoch_aligned():
    assert bucket_start(86400 * 3 + 5, 86400) == 86400 * 3
    assert bucket_start(86400 * 3, 86400) == 86400 * 3


def test_seconds_until_rounds_up_and_has_floor():
    assert seconds_until(100.2, 40.0) == 61
    assert seconds_until(10.0, 20.0) == 1


def test_epoch_ms_and_format_reset():
    assert epoch_ms(1.5) == 1500
    assert epoch_ms(2) == 2000
    assert format_reset(0) == "1970-01-01T00:00:00+00:00"


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("IMAGE_API_KEY", "abc")
    monkeypatch.setenv("RATE_LIMIT_MINUTE_REQUESTS", "5")
    monkeypatch.setenv("RATE_LIMIT_FAIL_MODE", "OPEN")
    monkeypatch.setenv("TRUST_FORWARDED_FOR", "false")

    settings = Settings.from_env()

    assert settings.image_api_key == "abc"
    assert settings.rate_limit_minute_requests == 5
    assert settings.rate_limit_day_requests == 20
    assert settings.rate_limit_fail_mode == "open"
    assert settings.trust_forwarded_for is False


def test_settings_reject_invalid_values(monkeypatch):
    monkeypatch.setenv("IMAGE_API_KEY", "abc")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memcached")
    with pytest.raises(RuntimeError):
        Settings.from_env()

    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    monkeypatch.setenv("RATE_LIMIT_DAY_REQUESTS", "lots")
    with pytest.raises(RuntimeError):
        Settings.from_env()

    monkeypatch.delenv("IMAGE_API_KEY")
    monkeypatch.delenv("RATE_LIMIT_DAY_REQUESTS")
    with pytest.raises(RuntimeError):
        Settings.from_env()
