"""
Pytest configuration and fixtures for the reminder dispatch tests.
"""

import asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, List, Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.domain.delivery import DeliveryResult, ReminderMessage
from app.domain.dispatch_attempt import DispatchAttempt  # noqa: F401 - needed for table creation
from app.domain.notification import Notification  # noqa: F401 - needed for table creation
from app.domain.reminder import Base, ChannelType, Reminder, ReminderStatus, TriggerType
from app.domain.task import Task, TaskStatus, UserIntegration
from app.infrastructure.channels import ChannelAdapter
from app.infrastructure.reminder_store import ReminderStore
from app.infrastructure.whatsapp_gateway import ChatClient


# Use a separate in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock for dispatch scenarios
T0 = datetime(2025, 3, 10, 9, 0, 0)
USER_ID = "user-1"
ORG_ID = "org-1"


class FakeChatClient(ChatClient):
    """Scriptable ChatClient: start() emits whatever events the test queued."""

    def __init__(self, events=None, stored_session: bool = False):
        super().__init__()
        self.events = list(events or [])
        self.stored_session = stored_session
        self.sent: List[tuple] = []
        self.send_error: Optional[Exception] = None
        self.send_delay: float = 0.0
        self.start_error: Optional[Exception] = None
        self.hang_on_start = False
        self.logged_out = False
        self.destroyed = False
        self.closed = False

    async def start(self) -> None:
        if self.start_error:
            raise self.start_error
        if self.hang_on_start:
            await asyncio.sleep(3600)
        for event in self.events:
            self.emit(*event)

    async def send_text(self, chat_id: str, text: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error:
            raise self.send_error
        self.sent.append((chat_id, text))

    async def logout(self) -> None:
        self.logged_out = True

    async def destroy(self) -> None:
        self.destroyed = True

    async def has_stored_session(self) -> bool:
        return self.stored_session

    async def close(self) -> None:
        self.closed = True


class FakeAdapter(ChannelAdapter):
    """Channel adapter returning scripted results and recording sends."""

    def __init__(self, channel: ChannelType, provider: str, results=None):
        super().__init__("UTC")
        self.channel = channel
        self.provider = provider
        self.results = list(results or [])
        self.calls: List[tuple] = []

    async def send(self, target: str, message: ReminderMessage) -> DeliveryResult:
        self.calls.append((target, message))
        if not self.results:
            return DeliveryResult.success()
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_factory) -> ReminderStore:
    return ReminderStore(session_factory, max_attempts=5, retry_backoff_seconds=60)


@pytest.fixture
def fake_client_class():
    return FakeChatClient


@pytest.fixture
def fake_adapter_class():
    return FakeAdapter


@pytest.fixture
def make_task(session_factory):
    """Insert a task; returns the persisted row."""
    async def _make_task(
        task_id: str = "task-1",
        title: str = "Submit quarterly report",
        status: TaskStatus = TaskStatus.TODO,
        due_date: Optional[datetime] = T0 + timedelta(hours=2),
        deleted_at: Optional[datetime] = None,
        **kwargs
    ) -> Task:
        task = Task(
            id=task_id,
            organization_id=ORG_ID,
            created_by_id=USER_ID,
            title=title,
            status=status,
            due_date=due_date,
            deleted_at=deleted_at,
            **kwargs
        )
        async with session_factory() as session:
            session.add(task)
            await session.commit()
        return task

    return _make_task


@pytest.fixture
def make_reminder(session_factory):
    """Insert a reminder; returns the persisted row."""
    async def _make_reminder(
        reminder_id: str = "reminder-1",
        task_id: str = "task-1",
        scheduled_at: datetime = T0,
        channels: Optional[List[str]] = None,
        trigger_type: TriggerType = TriggerType.ONE_SHOT,
        recurrence_rule: Optional[str] = None,
        status: ReminderStatus = ReminderStatus.PENDING,
        **kwargs
    ) -> Reminder:
        reminder = Reminder(
            id=reminder_id,
            task_id=task_id,
            organization_id=ORG_ID,
            user_id=USER_ID,
            scheduled_at=scheduled_at,
            channels=channels,
            trigger_type=trigger_type,
            recurrence_rule=recurrence_rule,
            status=status,
            **kwargs
        )
        async with session_factory() as session:
            session.add(reminder)
            await session.commit()
        return reminder

    return _make_reminder


@pytest.fixture
def make_integration(session_factory):
    """Insert a user destination for a provider."""
    async def _make_integration(
        provider: str = "whatsapp",
        external_id: str = "+14155550123",
        user_id: str = USER_ID,
        is_active: bool = True,
        display_name: Optional[str] = "Sam"
    ) -> UserIntegration:
        integration = UserIntegration(
            user_id=user_id,
            provider=provider,
            external_id=external_id,
            is_active=is_active,
            display_name=display_name,
        )
        async with session_factory() as session:
            session.add(integration)
            await session.commit()
        return integration

    return _make_integration


@pytest.fixture
def load_reminder(session_factory):
    """Read a reminder back in a fresh session."""
    async def _load(reminder_id: str) -> Optional[Reminder]:
        async with session_factory() as session:
            return await session.get(Reminder, reminder_id)

    return _load


@pytest.fixture
def mock_twilio_client():
    """Mock Twilio client for testing."""
    mock_client = MagicMock()
    mock_message = MagicMock()
    mock_message.sid = "SM123456789"
    mock_client.messages.create.return_value = mock_message
    return mock_client
