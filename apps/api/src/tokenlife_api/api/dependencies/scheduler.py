"""Access to the task scheduler owned by the running application."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from tokenlife_api.scheduling.scheduler import TaskScheduler


def get_task_scheduler(request: Request) -> TaskScheduler:
    scheduler = getattr(request.app.state, "task_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Task scheduler not initialised",
        )
    return scheduler
