"""Configuration loader for recurring job schedules."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib


@dataclass(slots=True)
class JobDefinition:
    """Describe a scheduled job as written in the schedule file."""

    id: str
    task: str
    cron: str
    description: str = ""
    enabled: bool = True
    timezone: str | None = None
    kwargs: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0
    recoverable: bool = True
    recovery_period_seconds: float | None = None


@dataclass(slots=True)
class ScheduleConfig:
    """Root schedule configuration."""

    timezone: str
    jobs: list[JobDefinition]


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Load job definitions from a TOML schedule file."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    timezone = data.get("timezone", "UTC")
    job_entries = data.get("jobs", {})
    jobs: list[JobDefinition] = []
    for key, payload in job_entries.items():
        if not isinstance(payload, dict):
            continue
        job_id = payload.get("id") or key
        task = payload.get("task")
        cron = payload.get("cron")
        kwargs = payload.get("kwargs", {})
        if not isinstance(task, str) or not isinstance(cron, str):
            continue
        if not isinstance(kwargs, dict):
            kwargs = {}

        recovery_period = payload.get("recovery_period_seconds")
        jobs.append(
            JobDefinition(
                id=str(job_id),
                task=task,
                cron=cron,
                description=str(payload.get("description", "")),
                enabled=bool(payload.get("enabled", True)),
                timezone=payload.get("timezone"),
                kwargs=kwargs,
                max_attempts=max(int(payload.get("max_attempts", 1) or 1), 1),
                base_backoff_seconds=max(float(payload.get("base_backoff_seconds", 5.0) or 0), 0.0),
                backoff_multiplier=max(float(payload.get("backoff_multiplier", 2.0) or 1), 1.0),
                max_backoff_seconds=max(float(payload.get("max_backoff_seconds", 60.0) or 0), 0.0),
                jitter_seconds=max(float(payload.get("jitter_seconds", 1.0) or 0), 0.0),
                recoverable=bool(payload.get("recoverable", True)),
                recovery_period_seconds=float(recovery_period) if recovery_period is not None else None,
            )
        )

    return ScheduleConfig(timezone=str(timezone), jobs=jobs)


__all__ = ["JobDefinition", "ScheduleConfig", "load_job_definitions"]
