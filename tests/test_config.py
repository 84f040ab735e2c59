"""Tests for Settings parsing and validation."""

import base64

import pytest
from pydantic import ValidationError

from antares.config import MIN_SIGNING_KEY_BYTES, Settings, decode_signing_key

SECRET = "x" * 40


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.api_prefix == "/antares"
    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 604800
    assert settings.jwt_clock_skew_seconds == 60
    assert settings.login_max_attempts == 5
    assert settings.login_lock_seconds == 900
    assert settings.cookie_secure is True
    assert settings.login_lockout_fail_open is False


def test_secret_required():
    with pytest.raises(ValidationError):
        Settings()


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_base64_secret_decoded():
    raw = bytes(range(32))
    encoded = base64.b64encode(raw).decode()
    assert decode_signing_key(encoded) == raw
    assert Settings(jwt_secret=encoded).signing_key() == raw


def test_plain_secret_used_as_utf8():
    assert decode_signing_key(SECRET) == SECRET.encode()
    assert len(Settings(jwt_secret=SECRET).signing_key()) >= MIN_SIGNING_KEY_BYTES


def test_secret_hidden_from_repr():
    assert SECRET not in repr(Settings(jwt_secret=SECRET))


@pytest.mark.parametrize(
    "field,value",
    [
        ("access_token_ttl_seconds", 30),
        ("access_token_ttl_seconds", 7200),
        ("refresh_token_ttl_seconds", 60),
        ("refresh_token_ttl_seconds", 31 * 24 * 3600),
        ("jwt_clock_skew_seconds", 301),
        ("login_max_attempts", 0),
    ],
)
def test_out_of_range_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, **{field: value})


@pytest.mark.parametrize(
    "raw,expected", [("api", "/api"), ("/api/", "/api"), ("/", ""), ("", "")]
)
def test_api_prefix_normalized(raw, expected):
    assert Settings(jwt_secret=SECRET, api_prefix=raw).api_prefix == expected


def test_cors_origins_split():
    settings = Settings(
        jwt_secret=SECRET, cors_allow_origins="https://a.example.com, https://b.example.com,"
    )
    assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]


def test_blank_optional_values_become_none():
    settings = Settings(jwt_secret=SECRET, cookie_domain=" ", admin_email="")
    assert settings.cookie_domain is None
    assert settings.admin_email is None


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "300")
    monkeypatch.setenv("COOKIE_SECURE", "false")
    monkeypatch.setenv("LOGIN_MAX_ATTEMPTS", "3")
    settings = Settings.from_env()
    assert settings.access_token_ttl_seconds == 300
    assert settings.cookie_secure is False
    assert settings.login_max_attempts == 3


def test_from_env_reads_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("JWT_ISSUER", raising=False)
    (tmp_path / ".env").write_text("JWT_ISSUER=dotenv-issuer\n")
    assert Settings.from_env().jwt_issuer == "dotenv-issuer"


def test_environment_wins_over_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_ISSUER", "env-issuer")
    (tmp_path / ".env").write_text("JWT_ISSUER=dotenv-issuer\n")
    assert Settings.from_env().jwt_issuer == "env-issuer"
