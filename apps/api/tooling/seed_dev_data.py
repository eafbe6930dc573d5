"""Seed development plans and users into the API database."""

from __future__ import annotations

import asyncio
import os
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tokenlife_api.core.settings import settings
from tokenlife_api.models.plan import Plan
from tokenlife_api.models.user import User
from tokenlife_api.services.subscriptions import SubscriptionService


class SeedPlan(TypedDict):
    slug: str
    name: str
    token_quota: int
    duration_days: int
    is_free: bool


class SeedUser(TypedDict):
    email: str
    display_name: str


DEV_PLANS: list[SeedPlan] = [
    {
        "slug": settings.free_plan_slug,
        "name": settings.free_plan_name,
        "token_quota": settings.free_plan_token_quota,
        "duration_days": settings.free_plan_validity_days,
        "is_free": True,
    },
    {
        "slug": "pro",
        "name": "Pro",
        "token_quota": 10_000,
        "duration_days": 30,
        "is_free": False,
    },
]

DEV_USERS: list[SeedUser] = [
    {
        "email": os.getenv("DEV_SEED_PRIMARY_EMAIL", "member@tokenlife.dev").lower(),
        "display_name": "Member QA",
    },
    {
        "email": os.getenv("DEV_SEED_INVITER_EMAIL", "inviter@tokenlife.dev").lower(),
        "display_name": "Inviter QA",
    },
]


async def seed_plans(session: AsyncSession) -> None:
    for plan in DEV_PLANS:
        existing = await session.execute(select(Plan).where(Plan.slug == plan["slug"]))
        record = existing.scalar_one_or_none()
        if record:
            record.name = plan["name"]
            record.token_quota = plan["token_quota"]
            record.duration_days = plan["duration_days"]
            record.is_free = plan["is_free"]
            record.is_active = True
        else:
            session.add(Plan(**plan, is_active=True))
    await session.commit()


async def seed_users(session: AsyncSession) -> None:
    subscriptions = SubscriptionService(session)
    for user in DEV_USERS:
        existing = await session.execute(select(User).where(User.email == user["email"]))
        record = existing.scalar_one_or_none()
        if record is None:
            record = User(email=user["email"], display_name=user["display_name"], status="active")
            session.add(record)
            await session.flush()
        else:
            record.display_name = user["display_name"]
        await subscriptions.ensure_free_plan_subscription(record.id)
    await session.commit()


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            await seed_plans(session)
            await seed_users(session)
        print("Development plans and users ready")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
