import pytest
from pydantic import ValidationError

from authflow.config import MIN_TOKEN_SECRET_BYTES, Settings, get_settings, reset_settings_cache


def test_short_token_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(token_secret="too-short")


def test_missing_secret_is_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings()
    second = Settings()

    assert len(first.token_secret.encode()) >= MIN_TOKEN_SECRET_BYTES
    assert first.token_secret == second.token_secret
    assert (tmp_path / ".token_secret").read_text() == first.token_secret


def test_persisted_secret_that_is_too_short_is_replaced(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    (tmp_path / ".token_secret").write_text("short")

    settings = Settings()

    assert settings.token_secret != "short"
    assert (tmp_path / ".token_secret").read_text() == settings.token_secret


@pytest.mark.parametrize(
    "field", ["access_token_ttl_minutes", "refresh_token_ttl_minutes", "verification_token_ttl_minutes"]
)
def test_non_positive_ttl_rejected(field):
    with pytest.raises(ValidationError):
        Settings(token_secret="s" * MIN_TOKEN_SECRET_BYTES, **{field: 0})


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("SUPERSEDE_VERIFICATION_TOKENS", "false")
    monkeypatch.setenv("REFRESH_COOKIE_NAME", "session_rt")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.supersede_verification_tokens is False
    assert settings.refresh_cookie_name == "session_rt"


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("RECOVERY_CODE_COUNT", "3")
    reset_settings_cache()
    try:
        assert get_settings().recovery_code_count == 3
    finally:
        monkeypatch.delenv("RECOVERY_CODE_COUNT")
        reset_settings_cache()


def test_settings_are_immutable():
    settings = Settings(token_secret="s" * MIN_TOKEN_SECRET_BYTES)
    with pytest.raises(ValidationError):
        settings.access_token_ttl_minutes = 1
