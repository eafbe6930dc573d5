import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import tokenlife_api.models  # noqa: E402,F401
from tokenlife_api.app import create_app  # noqa: E402
from tokenlife_api.db.base import Base  # noqa: E402
from tokenlife_api.db.session import get_session  # noqa: E402
from tokenlife_api.models.plan import Plan  # noqa: E402
from tokenlife_api.models.user import User  # noqa: E402


class FrozenClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(session_factory):
    async def _make_user(email: str, display_name: str | None = None) -> User:
        async with session_factory() as session:
            user = User(email=email, display_name=display_name or email.split("@")[0])
            session.add(user)
            await session.commit()
            return user

    return _make_user


@pytest.fixture
def make_plan(session_factory):
    async def _make_plan(
        slug: str,
        *,
        name: str | None = None,
        token_quota: int = 0,
        duration_days: int = 30,
        is_free: bool = False,
    ) -> Plan:
        async with session_factory() as session:
            plan = Plan(
                slug=slug,
                name=name or slug.title(),
                token_quota=token_quota,
                duration_days=duration_days,
                is_free=is_free,
                is_active=True,
            )
            session.add(plan)
            await session.commit()
            return plan

    return _make_plan
