import os
import socket
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./tokenlife.db"
    log_level: str = "INFO"
    log_json: bool = True

    # Internal API security
    admin_api_key: str = ""

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None

    # Task scheduler
    task_scheduler_enabled: bool = False
    task_schedule_path: str = "config/schedules.toml"
    task_scheduler_timezone: str = "UTC"
    task_execution_retention_days: int = 7
    task_history_limit: int = 20

    # Missed-run recovery
    task_recovery_enabled: bool = True
    task_recovery_delay_seconds: float = 10.0

    # Optional storage-backed lease guarding scheduled runs across instances
    scheduler_lease_enabled: bool = False
    scheduler_lease_ttl_seconds: int = 15 * 60
    scheduler_instance_id: str = Field(default_factory=_default_instance_id)

    # Plans and grants
    free_plan_slug: str = "free"
    free_plan_name: str = "Free"
    free_plan_token_quota: int = 1000
    free_plan_validity_days: int = 365
    invitation_plan_slug: str = "pro"
    invitation_reward_days: int = 30
    trial_plan_slug: str = "pro"
    trial_days: int = 14

    # Reporting
    expiring_tokens_window_days: int = 7


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
