import pytest
from pydantic import ValidationError as PydanticValidationError

from chirpauth.config import Settings, get_settings, reset_settings_cache
from chirpauth.service.passwords import PasswordHasher, validate_password_strength


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("WEB_SESSION_TIMEOUT_DAYS", "7")
    monkeypatch.setenv("SESSION_SLIDING_EXPIRATION", "true")
    monkeypatch.setenv("JWT_ISSUER", "chirp-test")
    reset_settings_cache()
    settings = get_settings()
    assert settings.web_session_timeout_days == 7
    assert settings.session_sliding_expiration is True
    assert settings.jwt_issuer == "chirp-test"
    assert get_settings() is settings


def test_missing_jwt_secret_is_generated():
    first = Settings()
    second = Settings()
    assert len(first.jwt_secret) >= 64
    assert first.jwt_secret != second.jwt_secret


def test_session_timeouts_must_be_positive():
    with pytest.raises(PydanticValidationError):
        Settings(mobile_session_timeout_days=0)


def test_google_oauth_configured():
    assert not Settings().google_oauth_configured
    assert Settings(
        google_client_id="id",
        google_client_secret="secret",
        google_callback_url="https://chirp.dev/cb",
    ).google_oauth_configured


@pytest.mark.parametrize("raw", ["0", "", "  "])
def test_username_attempts_can_be_unbounded(monkeypatch, raw):
    monkeypatch.setenv("MAX_USERNAME_ATTEMPTS", raw)
    assert Settings.from_env().max_username_attempts is None


def test_username_attempts_limits():
    assert Settings().max_username_attempts == 999
    assert Settings(max_username_attempts="25").max_username_attempts == 25
    assert Settings(max_username_attempts=None).max_username_attempts is None
    with pytest.raises(PydanticValidationError):
        Settings(max_username_attempts=-1)


class TestPasswords:
    def test_hash_and_verify(self):
        hasher = PasswordHasher()
        hashed = hasher.hash("Sup3r$ecret")
        assert hashed.startswith("$argon2id$")
        assert hasher.verify(hashed, "Sup3r$ecret")
        assert not hasher.verify(hashed, "wrong")
        assert not hasher.needs_rehash(hashed)

    def test_unverifiable_hash_is_false(self):
        hasher = PasswordHasher()
        assert not hasher.verify("not-a-hash", "Sup3r$ecret")
        assert not hasher.verify(None, "Sup3r$ecret")
        assert hasher.needs_rehash("not-a-hash")

    def test_strength_rules(self):
        assert validate_password_strength("Sup3r$ecret") == []
        problems = validate_password_strength("short")
        assert "Password must be at least 8 characters long" in problems
        assert "Password must contain at least one uppercase letter" in problems
        assert "Password must contain at least one number" in problems
        assert "Password must contain at least one special character" in problems
        assert validate_password_strength("Aa1!" * 40) == [
            "Password must not exceed 128 characters"
        ]
