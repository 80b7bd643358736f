import os
import stat

import pytest
from pydantic import ValidationError as PydanticValidationError

from tokengate.config import Settings, get_settings, parse_keyring, reset_settings_cache


def test_from_env_reads_declared_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "120")
    monkeypatch.setenv("JWT_PREVIOUS_KEYS", "v0:an-old-key-that-was-retired-long-ago")
    reset_settings_cache()

    settings = get_settings()

    assert settings.access_token_ttl_minutes == 5
    assert settings.refresh_ttl_days == 90
    assert settings.signing_keys["v0"] == "an-old-key-that-was-retired-long-ago"
    assert settings.signing_keys["v1"] == os.environ["JWT_SECRET"]


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings() is not first


def test_short_secret_rejected(tmp_path):
    with pytest.raises(PydanticValidationError):
        Settings(shared_fs_root=str(tmp_path), jwt_secret="too-short")


def test_non_positive_ttl_rejected(tmp_path):
    with pytest.raises(PydanticValidationError):
        Settings(
            shared_fs_root=str(tmp_path),
            jwt_secret="x" * 40,
            access_token_ttl_minutes=0,
        )


def test_missing_secret_is_generated_and_persisted(tmp_path):
    first = Settings(shared_fs_root=str(tmp_path))
    second = Settings(shared_fs_root=str(tmp_path))

    secret_path = tmp_path / ".jwt_secret"
    assert first.jwt_secret == second.jwt_secret
    assert len(first.jwt_secret) >= 32
    assert secret_path.read_text() == first.jwt_secret
    assert stat.S_IMODE(secret_path.stat().st_mode) == 0o600


def test_parse_keyring():
    assert parse_keyring(None) == {}
    assert parse_keyring(" a:one , b:two ,") == {"a": "one", "b": "two"}
    with pytest.raises(ValueError):
        parse_keyring("missing-separator")
