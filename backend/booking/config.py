from __future__ import annotations

import os
from functools import lru_cache
import logging

from pydantic import BaseModel


class SchedulingSettings(BaseModel):
    # Travel/setup margin applied around every service window.
    buffer_before_minutes: int = 60
    buffer_after_minutes: int = 60
    hold_minutes: int = 10
    default_horizon_count: int = 6
    min_horizon_count: int = 2
    max_horizon_count: int = 12
    # Calendar arithmetic (weekday alignment, month steps) happens in this zone.
    timezone: str = "UTC"


class ReminderSettings(BaseModel):
    # Daily schedulers are imprecise, so the nominal 48h lead time is widened
    # to a 48h-72h window plus a drift buffer on both sides.
    window_start_hours: int = 48
    window_end_hours: int = 72
    drift_buffer_minutes: int = 90


class PushSettings(BaseModel):
    provider: str = "stub"  # "stub" or "fcm"
    fcm_server_key: str | None = None
    fcm_endpoint: str = "https://fcm.googleapis.com/fcm/send"
    timeout_seconds: float = 10.0


class IdentitySettings(BaseModel):
    provider: str = "stub"  # "stub" or "remote"
    verify_url: str | None = None
    timeout_seconds: float = 5.0


class AppSettings(BaseModel):
    scheduling: SchedulingSettings = SchedulingSettings()
    reminders: ReminderSettings = ReminderSettings()
    push: PushSettings = PushSettings()
    identity: IdentitySettings = IdentitySettings()
    cron_secret: str | None = None
    use_db_repositories: bool = False
    generate_when_root_status_in: list[str] = ["accepted"]

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables with safe defaults."""
        scheduling = SchedulingSettings(
            buffer_before_minutes=int(os.getenv("BUFFER_BEFORE_MINUTES", "60")),
            buffer_after_minutes=int(os.getenv("BUFFER_AFTER_MINUTES", "60")),
            hold_minutes=int(os.getenv("HOLD_MINUTES", "10")),
            default_horizon_count=int(os.getenv("RECURRENCE_DEFAULT_HORIZON", "6")),
            min_horizon_count=int(os.getenv("RECURRENCE_MIN_HORIZON", "2")),
            max_horizon_count=int(os.getenv("RECURRENCE_MAX_HORIZON", "12")),
            timezone=os.getenv("SCHEDULING_TIMEZONE", "UTC"),
        )
        reminders = ReminderSettings(
            window_start_hours=int(os.getenv("REMINDER_WINDOW_START_HOURS", "48")),
            window_end_hours=int(os.getenv("REMINDER_WINDOW_END_HOURS", "72")),
            drift_buffer_minutes=int(os.getenv("REMINDER_DRIFT_BUFFER_MINUTES", "90")),
        )
        push = PushSettings(
            provider=os.getenv("PUSH_PROVIDER", "stub"),
            fcm_server_key=os.getenv("FCM_SERVER_KEY"),
            fcm_endpoint=os.getenv(
                "FCM_ENDPOINT", "https://fcm.googleapis.com/fcm/send"
            ),
            timeout_seconds=float(os.getenv("PUSH_TIMEOUT_SECONDS") or "10"),
        )
        identity = IdentitySettings(
            provider=os.getenv("IDENTITY_PROVIDER", "stub"),
            verify_url=os.getenv("IDENTITY_VERIFY_URL"),
            timeout_seconds=float(os.getenv("IDENTITY_TIMEOUT_SECONDS") or "5"),
        )
        cron_secret = (os.getenv("CRON_SECRET") or "").strip() or None
        use_db_repositories = (
            os.getenv("USE_DB_REPOSITORIES", "false").lower() == "true"
        )
        generate_statuses = [
            s.strip().lower()
            for s in (os.getenv("SERIES_GENERATE_STATUSES", "accepted") or "").split(",")
            if s.strip()
        ]
        return cls(
            scheduling=scheduling,
            reminders=reminders,
            push=push,
            identity=identity,
            cron_secret=cron_secret,
            use_db_repositories=use_db_repositories,
            generate_when_root_status_in=generate_statuses or ["accepted"],
        )

    def validate_combinations(self) -> None:
        """Warn when non-stub providers are misconfigured to avoid runtime surprises."""
        logger = logging.getLogger(__name__)
        warnings: list[str] = []

        if self.push.provider == "fcm" and not self.push.fcm_server_key:
            warnings.append("FCM_SERVER_KEY is required when PUSH_PROVIDER=fcm.")
        if self.identity.provider == "remote" and not self.identity.verify_url:
            warnings.append(
                "IDENTITY_VERIFY_URL is required when IDENTITY_PROVIDER=remote."
            )
        sched = self.scheduling
        if sched.min_horizon_count > sched.max_horizon_count:
            warnings.append(
                "RECURRENCE_MIN_HORIZON is greater than RECURRENCE_MAX_HORIZON."
            )
        if self.reminders.window_end_hours <= self.reminders.window_start_hours:
            warnings.append(
                "REMINDER_WINDOW_END_HOURS must be greater than REMINDER_WINDOW_START_HOURS."
            )
        if not self.cron_secret:
            warnings.append("CRON_SECRET is not set; batch endpoints are open.")
        if warnings:
            for msg in warnings:
                logger.warning("configuration_warning", extra={"detail": msg})


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return application settings loaded from the environment.

    The result is cached for the lifetime of the process so configuration
    is stable and we avoid repeatedly parsing environment variables.
    """
    settings = AppSettings.from_env()
    settings.validate_combinations()
    return settings
