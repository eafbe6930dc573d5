"""Background workers."""

from .task_recovery import TaskRecoveryWorker

__all__ = ["TaskRecoveryWorker"]
