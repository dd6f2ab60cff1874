from __future__ import annotations

import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    if minimum is not None and parsed < minimum:
        return default
    if maximum is not None and parsed > maximum:
        return default
    return parsed


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
    app_name: str = "Future Letters Delivery"
    api_prefix: str = "/api/v1"
    environment: str = "development"
    log_level: str = "INFO"
    database_url: str = ""
    letter_store_backend: str = "inmemory"
    delivery_run_store_backend: str = "inmemory"
    # Reference time zone for the daily due window and the cron trigger.
    delivery_timezone: str = "UTC"
    delivery_schedule_enabled: bool = True
    delivery_schedule_hour: int = 0
    delivery_schedule_minute: int = 0
    notifier_sender_type: str = "stub"
    notifier_enabled: bool = False
    notifier_api_base_url: str = "https://api.resend.com"
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    email_from: str = ""
    email_from_name: str = ""
    runtime_config_guard_mode: str = "warn"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("LETTERS_APP_NAME", "Future Letters Delivery"),
        api_prefix=os.getenv("LETTERS_API_PREFIX", "/api/v1"),
        environment=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        database_url=os.getenv("DATABASE_URL", ""),
        letter_store_backend=os.getenv("LETTER_STORE_BACKEND", "inmemory"),
        delivery_run_store_backend=os.getenv(
            "DELIVERY_RUN_STORE_BACKEND", os.getenv("LETTER_STORE_BACKEND", "inmemory")
        ),
        delivery_timezone=os.getenv("DELIVERY_TIMEZONE", "UTC").strip() or "UTC",
        delivery_schedule_enabled=_as_bool(os.getenv("DELIVERY_SCHEDULE_ENABLED"), True),
        delivery_schedule_hour=_as_int(os.getenv("DELIVERY_SCHEDULE_HOUR"), 0, minimum=0, maximum=23),
        delivery_schedule_minute=_as_int(os.getenv("DELIVERY_SCHEDULE_MINUTE"), 0, minimum=0, maximum=59),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", "https://api.resend.com"),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", os.getenv("RESEND_API_KEY", "")),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30, minimum=1),
        email_from=os.getenv("EMAIL_FROM", ""),
        email_from_name=os.getenv("EMAIL_FROM_NAME", ""),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def email_config_flags(settings: Settings) -> dict[str, bool]:
    return {
        "has_api_key": not _is_placeholder(settings.notifier_api_key, defaults={"re_your_api_key_here"}),
        "has_from_email": not _is_placeholder(settings.email_from, defaults={"noreply@yourdomain.com"}),
        "has_from_name": bool(settings.email_from_name.strip()),
    }


def email_config_issues(settings: Settings) -> tuple[str, ...]:
    flags = email_config_flags(settings)
    issues: list[str] = []
    if not flags["has_api_key"]:
        issues.append("NOTIFIER_API_KEY is empty or uses a placeholder value")
    if not flags["has_from_email"]:
        issues.append("EMAIL_FROM is empty or uses a placeholder value")
    if not flags["has_from_name"]:
        issues.append("EMAIL_FROM_NAME is empty")
    return tuple(issues)


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown time zone: {name}") from exc


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    try:
        resolve_timezone(settings.delivery_timezone)
    except ValueError:
        issues.append(f"DELIVERY_TIMEZONE is not a known time zone: {settings.delivery_timezone}")
    if settings.notifier_sender_type == "http":
        issues.extend(email_config_issues(settings))
    for backend_name, value in (
        ("LETTER_STORE_BACKEND", settings.letter_store_backend),
        ("DELIVERY_RUN_STORE_BACKEND", settings.delivery_run_store_backend),
    ):
        if value.strip().lower() == "postgres" and not settings.database_url.strip():
            issues.append(f"DATABASE_URL is required when {backend_name}=postgres")
    return tuple(issues)
