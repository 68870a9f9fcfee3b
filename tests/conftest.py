import pytest
import uuid
from datetime import date
from typing import AsyncGenerator

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.models import Base, PushDevice, RitualDay, RitualStatus, User
from app.providers.ritual_store import RitualStore


# Test database setup
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_factory) -> RitualStore:
    return RitualStore(session_factory)


# Test data factories
@pytest.fixture
def make_user(db_session: AsyncSession):
    async def _make_user(**overrides) -> User:
        fields = {
            "id": str(uuid.uuid4()),
            "display_name": "Ana",
            "locale": "pt-BR",
            "timezone": "UTC",
            "check_in_hour": 20,
            "check_in_minute": 0,
            "notifications_enabled": True,
            "sound_enabled": True,
        }
        fields.update(overrides)
        user = User(**fields)
        db_session.add(user)
        await db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_ritual(db_session: AsyncSession):
    async def _make_ritual(user: User, local_date: date, **overrides) -> RitualDay:
        fields = {
            "id": str(uuid.uuid4()),
            "user_id": user.id,
            "local_date": local_date,
            "title": "Caminhar 30 minutos",
            "status": RitualStatus.PLANNED,
        }
        fields.update(overrides)
        ritual = RitualDay(**fields)
        db_session.add(ritual)
        await db_session.commit()
        return ritual

    return _make_ritual


@pytest.fixture
def make_device(db_session: AsyncSession):
    async def _make_device(user: User, token: str, disabled: bool = False) -> PushDevice:
        device = PushDevice(user_id=user.id, token=token, disabled=disabled)
        db_session.add(device)
        await db_session.commit()
        return device

    return _make_device


@pytest.fixture
def reload(session_factory):
    """Read a row back through a fresh session."""

    async def _reload(model, row_id):
        async with session_factory() as session:
            return await session.get(model, row_id)

    return _reload
