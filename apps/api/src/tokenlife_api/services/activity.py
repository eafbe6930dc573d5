"""Activity log writes for lifecycle transitions."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.core.clock import Clock, utcnow
from tokenlife_api.models.activity import UserActivity


class ActivityLogService:
    """Append user activity records inside the caller's transaction."""

    def __init__(self, db_session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._db = db_session
        self._clock = clock or utcnow

    def record(
        self,
        user_id: UUID,
        action: str,
        *,
        resource: str,
        metadata: dict[str, Any] | None = None,
    ) -> UserActivity:
        activity = UserActivity(
            user_id=user_id,
            action=action,
            resource=resource,
            metadata_json=metadata or {},
            occurred_at=self._clock(),
        )
        self._db.add(activity)
        return activity

    async def list_for_user(self, user_id: UUID, *, limit: int = 50) -> list[UserActivity]:
        stmt = (
            select(UserActivity)
            .where(UserActivity.user_id == user_id)
            .order_by(UserActivity.occurred_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


__all__ = ["ActivityLogService"]
