# tests/conftest.py
import os
import tempfile

# config.py reads the environment at import, so it has to be ready first
_db_dir = tempfile.mkdtemp(prefix="club-events-tests-")
os.environ["BOT_TOKEN"] = "123456789:TEST-token-for-the-test-suite"
os.environ["CHIEF_ADMIN_IDS"] = "1000"
os.environ["DB_PATH"] = os.path.join(_db_dir, "test.db")

import itertools
import typing as t
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiogram.fsm.context import FSMContext
from aiogram.fsm.storage.base import StorageKey
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.types import Chat
from aiogram.types import User as AiogramUser

from database import (
    AsyncSessionLocal, Base, Club, ClubMember, ClubRole, ClubStatus, EligibilityRule, Event,
    EventStatus, Role, User, UserGroup, Visibility, engine
)
from notifications import Notifier
from sessions import SessionStore
from uploads import UploadWaiter
from wizard import EventWizard

ADMIN_TELEGRAM_ID = 1000


@pytest_asyncio.fixture
async def db() -> t.AsyncIterator[None]:
    """Fresh tables for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # pooled connections belong to this test's event loop
    await engine.dispose()


@pytest_asyncio.fixture
async def make_user(db: None) -> t.Callable[..., t.Awaitable[User]]:
    ids = itertools.count(2000)

    async def _make(
        telegram_id: int | None = None,
        *,
        full_name: str = "Test User",
        username: str | None = None,
        is_verified: bool = True,
        role: Role = Role.MEMBER,
        groups: t.Iterable[str] = (),
    ) -> User:
        async with AsyncSessionLocal() as session:
            user = User(
                telegram_id=telegram_id or next(ids),
                full_name=full_name,
                username=username,
                is_verified=is_verified,
                role=role.value,
            )
            user.groups = [UserGroup(group=g) for g in groups]
            session.add(user)
            await session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def admin(make_user) -> User:
    return await make_user(ADMIN_TELEGRAM_ID, full_name="Chief Admin", role=Role.ADMIN)


@pytest_asyncio.fixture
async def president(make_user) -> User:
    return await make_user(full_name="Club President", username="president")


@pytest_asyncio.fixture
async def make_club(db: None) -> t.Callable[..., t.Awaitable[Club]]:
    slugs = itertools.count(1)

    async def _make(
        president: User | None = None,
        *,
        slug: str | None = None,
        requires_event_approval: bool = True,
        status: ClubStatus = ClubStatus.ACTIVE,
        is_public: bool = True,
        members: t.Iterable[tuple[User, ClubRole]] = (),
    ) -> Club:
        slug = slug or f"club-{next(slugs)}"
        async with AsyncSessionLocal() as session:
            club = Club(
                name=slug.replace("-", " ").title(),
                slug=slug,
                status=status.value,
                requires_event_approval=requires_event_approval,
                is_public=is_public,
                president_id=president.id if president else None,
            )
            session.add(club)
            await session.flush()
            for user, role in members:
                session.add(ClubMember(club_id=club.id, user_id=user.id, role=role.value))
            await session.commit()
        return club

    return _make


@pytest_asyncio.fixture
async def club(make_club, president: User) -> Club:
    return await make_club(president, slug="robotics")


@pytest_asyncio.fixture
async def make_event(db: None) -> t.Callable[..., t.Awaitable[Event]]:
    async def _make(club: Club, creator: User, *, rules: t.Iterable[tuple[str, str | None]] = (), **fields: t.Any) -> Event:
        values = {
            "title": "Intro to Robotics",
            "description": "Build a line follower",
            "starts_at": datetime.now() + timedelta(days=7),
            "venue": "Hall B",
            "category": "workshop",
            "visibility": Visibility.PUBLIC.value,
            "status": EventStatus.SCHEDULED.value,
            "fee": 0,
        }
        values.update(fields)
        async with AsyncSessionLocal() as session:
            event = Event(club_id=club.id, created_by_id=creator.id, **values)
            event.rules = [EligibilityRule(kind=kind, group=group) for kind, group in rules]
            session.add(event)
            await session.commit()
        return event

    return _make


@pytest.fixture
def fetch() -> t.Callable[..., t.Awaitable[t.Any]]:
    """Load a fresh copy of a row in its own session."""

    async def _fetch(model: type, pk: int) -> t.Any:
        async with AsyncSessionLocal() as session:
            return await session.get(model, pk)

    return _fetch


@pytest.fixture
def notifier() -> MagicMock:
    """A Notifier whose Telegram calls all succeed."""
    mock = MagicMock(spec=Notifier)
    mock.send_to_user = AsyncMock(return_value=MagicMock(message_id=500))
    mock.send_to_surface = AsyncMock(return_value=MagicMock(message_id=777))
    mock.send_document = AsyncMock(return_value=MagicMock(message_id=501))
    mock.create_topic = AsyncMock(return_value=55)
    mock.edit_announcement = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def code_sender() -> AsyncMock:
    sender = AsyncMock()
    sender.send_code.return_value = "token"
    return sender


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def wizard(store: SessionStore, code_sender: AsyncMock) -> EventWizard:
    return EventWizard(store, code_sender)


@pytest.fixture
def uploads() -> UploadWaiter:
    return UploadWaiter()


@pytest.fixture
def aiogram_user() -> AiogramUser:
    return AiogramUser(id=3001, is_bot=False, first_name="Test", last_name="User", username="testuser")


@pytest.fixture
def chat(aiogram_user: AiogramUser) -> Chat:
    return Chat(id=aiogram_user.id, type="private")


@pytest.fixture
def fsm_context(aiogram_user: AiogramUser, chat: Chat) -> FSMContext:
    key = StorageKey(bot_id=1, chat_id=chat.id, user_id=aiogram_user.id)
    return FSMContext(storage=MemoryStorage(), key=key)


@pytest.fixture
def mock_message(aiogram_user: AiogramUser, chat: Chat) -> AsyncMock:
    message = AsyncMock()
    message.from_user = aiogram_user
    message.chat = chat
    message.text = ""
    message.document = None
    message.photo = None
    return message


@pytest.fixture
def mock_callback(aiogram_user: AiogramUser, mock_message: AsyncMock) -> AsyncMock:
    callback = AsyncMock()
    callback.from_user = aiogram_user
    callback.message = mock_message
    callback.data = ""
    return callback
