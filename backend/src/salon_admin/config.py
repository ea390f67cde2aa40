from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Salon Admin"
    api_prefix: str = "/api/v1"
    client_store_backend: str = "inmemory"
    auth_store_backend: str = "inmemory"
    database_url: str = ""
    database_pool_size: int = 10
    admin_session_secret: str = "dev-admin-secret"
    admin_session_ttl_minutes: int = 480
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)
    runtime_secret_guard_mode: str = "warn"
    trust_proxy_headers: bool = False
    trusted_proxy_ips: tuple[str, ...] = ()
    # Notification channels. Twilio and Resend are only wired when credentials are present.
    notifier_sender_type: str = "live"
    notifier_timeout_seconds: int = 30
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    resend_api_key: str = ""
    reminder_email_from: str = "Salon Appointment <appointments@yoursalon.com>"
    reminder_default_channels: tuple[str, ...] = ("sms",)
    reminder_throttle_seconds: float = 1.0
    reminder_due_soon_days: int = 7

    def twilio_configured(self) -> bool:
        return bool(
            self.twilio_account_sid.strip()
            and self.twilio_auth_token.strip()
            and self.twilio_phone_number.strip()
        )

    def resend_configured(self) -> bool:
        return bool(self.resend_api_key.strip())


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("SALON_APP_NAME", "Salon Admin"),
        api_prefix=os.getenv("SALON_API_PREFIX", "/api/v1"),
        client_store_backend=os.getenv("CLIENT_STORE_BACKEND", "inmemory"),
        auth_store_backend=os.getenv("AUTH_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        database_pool_size=_as_int(os.getenv("DATABASE_POOL_SIZE"), 10),
        admin_session_secret=os.getenv("ADMIN_SESSION_SECRET", "dev-admin-secret"),
        admin_session_ttl_minutes=_as_int(os.getenv("ADMIN_SESSION_TTL_MINUTES"), 480),
        cors_origins=_as_csv_tuple(os.getenv("CORS_ORIGINS", "http://localhost:3000")),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        trust_proxy_headers=_as_bool(os.getenv("TRUST_PROXY_HEADERS"), False),
        trusted_proxy_ips=_as_csv_tuple(os.getenv("TRUSTED_PROXY_IPS")),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="live",
            allowed={"live", "stub"},
        ),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
        resend_api_key=os.getenv("RESEND_API_KEY", ""),
        reminder_email_from=os.getenv(
            "REMINDER_EMAIL_FROM", "Salon Appointment <appointments@yoursalon.com>"
        ),
        reminder_default_channels=_as_csv_tuple(os.getenv("REMINDER_DEFAULT_CHANNELS", "sms")) or ("sms",),
        reminder_throttle_seconds=max(0.0, _as_float(os.getenv("REMINDER_THROTTLE_SECONDS"), 1.0)),
        reminder_due_soon_days=_as_int(os.getenv("REMINDER_DUE_SOON_DAYS"), 7),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_session_secret,
        defaults={"dev-admin-secret", "change-me-in-production"},
    ):
        issues.append("ADMIN_SESSION_SECRET is empty or uses a development placeholder")
    twilio_values = (
        settings.twilio_account_sid.strip(),
        settings.twilio_auth_token.strip(),
        settings.twilio_phone_number.strip(),
    )
    if any(twilio_values) and not all(twilio_values):
        issues.append(
            "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER must be set together; "
            "SMS and WhatsApp reminders stay disabled until all three are present"
        )
    if settings.client_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when CLIENT_STORE_BACKEND=postgres")
    if settings.auth_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when AUTH_STORE_BACKEND=postgres")
    return tuple(issues)
