import pytest
from pydantic import ValidationError

from siteguard.config import Settings, get_settings, reset_settings_cache


def test_environment_overrides_defaults(monkeypatch):
    monkeypatch.setenv("SESSION_IDLE_TIMEOUT_MINUTES", "45")
    monkeypatch.setenv("MAX_SESSIONS_BY_ROLE", "Editor:2, moderator:3")
    monkeypatch.setenv("PRIVILEGED_ROLES", "admin")
    reset_settings_cache()

    settings = get_settings()

    assert settings.session_idle_timeout_minutes == 45
    assert settings.role_session_limits == {"editor": 2, "moderator": 3}
    assert settings.privileged_role_set == {"admin"}
    reset_settings_cache()


def test_settings_are_cached_until_reset():
    reset_settings_cache()
    first = get_settings()

    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first


def test_invalid_role_limits_are_rejected():
    with pytest.raises(ValidationError):
        Settings(app_key="k" * 40, max_sessions_by_role="editor:zero")


def test_blank_redis_url_disables_redis():
    assert Settings(app_key="k" * 40, redis_url="").redis_url is None


def test_generated_app_key_is_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(app_key=None)
    second = Settings(app_key=None)

    assert len(first.app_key) >= 32
    assert first.app_key == second.app_key
    assert (tmp_path / ".app_key").read_text() == first.app_key


def test_timeouts_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(app_key="k" * 40, session_idle_timeout_minutes=0)
