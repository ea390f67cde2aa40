from __future__ import annotations

import os

from salon_admin.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_parses_reminder_overrides() -> None:
    previous = {
        "REMINDER_DEFAULT_CHANNELS": _set_env("REMINDER_DEFAULT_CHANNELS", "sms, email"),
        "REMINDER_THROTTLE_SECONDS": _set_env("REMINDER_THROTTLE_SECONDS", "-2"),
        "NOTIFIER_SENDER_TYPE": _set_env("NOTIFIER_SENDER_TYPE", "STUB"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "bogus"),
        "CORS_ORIGINS": _set_env("CORS_ORIGINS", "https://salon.test, http://localhost:3000"),
    }
    try:
        settings = get_settings()
        assert settings.reminder_default_channels == ("sms", "email")
        assert settings.reminder_throttle_seconds == 0.0
        assert settings.notifier_sender_type == "stub"
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.cors_origins == ("https://salon.test", "http://localhost:3000")
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_defaults() -> None:
    previous = {
        "REMINDER_THROTTLE_SECONDS": _set_env("REMINDER_THROTTLE_SECONDS", None),
        "REMINDER_DEFAULT_CHANNELS": _set_env("REMINDER_DEFAULT_CHANNELS", None),
        "CLIENT_STORE_BACKEND": _set_env("CLIENT_STORE_BACKEND", None),
    }
    try:
        settings = get_settings()
        assert settings.reminder_throttle_seconds == 1.0
        assert settings.reminder_default_channels == ("sms",)
        assert settings.client_store_backend == "inmemory"
        assert settings.reminder_due_soon_days == 7
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_runtime_secret_issues_flags_placeholder_session_secret() -> None:
    issues = runtime_secret_issues(Settings())
    assert any("ADMIN_SESSION_SECRET" in issue for issue in issues)
    assert runtime_secret_issues(Settings(admin_session_secret="prod-admin-secret-001")) == ()


def test_runtime_secret_issues_flags_partial_twilio_credentials() -> None:
    partial = Settings(admin_session_secret="prod-admin-secret-001", twilio_account_sid="AC123")
    issues = runtime_secret_issues(partial)
    assert len(issues) == 1
    assert "must be set together" in issues[0]

    complete = Settings(
        admin_session_secret="prod-admin-secret-001",
        twilio_account_sid="AC123",
        twilio_auth_token="token",
        twilio_phone_number="+15555559999",
    )
    assert runtime_secret_issues(complete) == ()
    assert complete.twilio_configured() is True


def test_runtime_secret_issues_requires_database_url_for_postgres() -> None:
    settings = Settings(
        admin_session_secret="prod-admin-secret-001",
        client_store_backend="postgres",
        auth_store_backend="postgres",
    )
    issues = runtime_secret_issues(settings)
    assert "DATABASE_URL is required when CLIENT_STORE_BACKEND=postgres" in issues
    assert "DATABASE_URL is required when AUTH_STORE_BACKEND=postgres" in issues
