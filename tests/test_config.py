import pytest

from authgate.config import IdentityBackend, Settings


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("SYNC_THRESHOLD_SECONDS", "60")
    monkeypatch.setenv("DEFAULT_TOKEN_BALANCE", "5")
    monkeypatch.setenv("IDENTITY_BACKEND", "memory")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")

    settings = Settings.from_env()

    assert settings.sync_threshold_seconds == 60
    assert settings.default_token_balance == 5
    assert settings.identity_backend == IdentityBackend.MEMORY
    assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]


def test_private_key_newlines_are_unescaped():
    settings = Settings(firebase_private_key="-----BEGIN-----\\nabc\\n-----END-----")

    assert settings.firebase_private_key == "-----BEGIN-----\nabc\n-----END-----"


def test_negative_threshold_rejected():
    with pytest.raises(ValueError):
        Settings(sync_threshold_seconds=-1)


def test_short_temporary_password_is_raised_to_minimum():
    assert Settings(temp_password_length=4).temp_password_length == 16


def test_defaults():
    settings = Settings()

    assert settings.default_token_balance == 3
    assert settings.sync_threshold_seconds == 300
    assert settings.identity_backend == IdentityBackend.FIREBASE
    assert settings.check_revoked_tokens is True
