"""Scheduling utilities for recurring lifecycle jobs."""

from .config import JobDefinition, ScheduleConfig, load_job_definitions
from .lease import SchedulerLeaseManager
from .recovery import RecoveryDecision, RecoveryStrategy, TaskRecoveryPlanner
from .scheduler import TaskRunOutcome, TaskScheduler, TaskStatus

__all__ = [
    "JobDefinition",
    "RecoveryDecision",
    "RecoveryStrategy",
    "ScheduleConfig",
    "SchedulerLeaseManager",
    "TaskRecoveryPlanner",
    "TaskRunOutcome",
    "TaskScheduler",
    "TaskStatus",
    "load_job_definitions",
]
