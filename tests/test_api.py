"""
Integration tests for the HTTP endpoints.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from app.api import cron
from app.domain.delivery import DeliveryResult, FailureReason
from app.domain.notification import Notification
from app.domain.reminder import ReminderStatus
from app.infrastructure.database import get_session
from app.infrastructure.reminder_store import (
    AttemptRecord,
    ClaimedReminder,
    StoreUnavailableError,
    get_reminder_store,
)
from app.infrastructure.session_manager import MessagingSessionManager, get_session_manager
from app.main import app
from app.usecases.dispatch_service import TickResult

from conftest import T0, USER_ID, FakeChatClient


class TestCronReminders:
    """Tests for the reminders cron trigger."""

    @pytest.fixture
    def client(self):
        """Create a test client."""
        return TestClient(app)

    @patch("app.api.cron.run_reminder_tick", new_callable=AsyncMock)
    def test_runs_tick_and_reports_counts(self, mock_tick, client):
        mock_tick.return_value = TickResult(claimed=3, sent=2, failed=1, skipped=0)

        with patch.object(cron.settings, "cron_secret", None):
            response = client.get("/api/cron/reminders")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["processed"] == 3
        assert data["claimed"] == 3
        assert data["sent"] == 2
        assert data["failed"] == 1
        assert data["timestamp"].endswith("Z")

    @patch("app.api.cron.run_reminder_tick", new_callable=AsyncMock)
    def test_rejects_missing_secret_without_side_effects(self, mock_tick, client):
        with patch.object(cron.settings, "cron_secret", "s3cret"):
            response = client.get("/api/cron/reminders")
            wrong = client.post("/api/cron/reminders", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert wrong.status_code == 401
        mock_tick.assert_not_called()

    @patch("app.api.cron.run_reminder_tick", new_callable=AsyncMock)
    def test_accepts_bearer_secret(self, mock_tick, client):
        mock_tick.return_value = TickResult()

        with patch.object(cron.settings, "cron_secret", "s3cret"):
            response = client.post("/api/cron/reminders", headers={"Authorization": "Bearer s3cret"})

        assert response.status_code == 200
        assert response.json()["processed"] == 0
        mock_tick.assert_awaited_once()

    @patch("app.api.cron.run_reminder_tick", new_callable=AsyncMock)
    def test_claim_failure_is_500(self, mock_tick, client):
        mock_tick.side_effect = StoreUnavailableError("database is locked")

        with patch.object(cron.settings, "cron_secret", None):
            response = client.get("/api/cron/reminders")

        assert response.status_code == 500
        assert response.json()["success"] is False

    @patch("app.api.cron.send_daily_summaries", new_callable=AsyncMock)
    def test_daily_summary(self, mock_daily, client):
        mock_daily.return_value = {"sent": 2, "total": 3}

        with patch.object(cron.settings, "cron_secret", None):
            response = client.get("/api/cron/daily-whatsapp")

        assert response.status_code == 200
        assert response.json()["sent"] == 2
        assert response.json()["total"] == 3


class TestWhatsAppSessionEndpoints:
    """Tests for the pairing endpoints."""

    @pytest.fixture
    def fake_client(self):
        return FakeChatClient(events=[("qr", "2@pairing")])

    @pytest.fixture
    def client(self, fake_client):
        manager = MessagingSessionManager(lambda: fake_client, auto_reconnect=False)
        app.dependency_overrides[get_session_manager] = lambda: manager
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_status_and_qr(self, client):
        response = client.get("/api/v1/integrations/whatsapp")
        assert response.json()["status"] == "DISCONNECTED"
        assert response.json()["qr"] is None

        started = client.post("/api/v1/integrations/whatsapp", json={"action": "initialize"})
        assert started.status_code == 200
        assert started.json()["success"] is True

        response = client.get("/api/v1/integrations/whatsapp")
        assert response.json()["status"] == "QR_PENDING"
        assert response.json()["qr"] == "2@pairing"

    def test_logout(self, client, fake_client):
        client.post("/api/v1/integrations/whatsapp", json={"action": "initialize"})

        response = client.post("/api/v1/integrations/whatsapp", json={"action": "logout"})

        assert response.status_code == 200
        assert response.json()["session"]["status"] == "DISCONNECTED"
        assert fake_client.logged_out is True

    def test_send_test_requires_number(self, client):
        response = client.post("/api/v1/integrations/whatsapp", json={"action": "send_test"})

        assert response.status_code == 400

    def test_send_test_when_disconnected(self, client):
        response = client.post(
            "/api/v1/integrations/whatsapp",
            json={"action": "send_test", "phoneNumber": "+14155550123"},
        )

        assert response.status_code == 500
        assert response.json()["reason"] == FailureReason.CHANNEL_UNAVAILABLE.value

    def test_invalid_action(self, client):
        response = client.post("/api/v1/integrations/whatsapp", json={"action": "reboot"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid action"


class TestReminderEndpoints:
    """Tests for the operator reminder endpoints, against the test database."""

    @pytest_asyncio.fixture
    async def client(self, store, session_factory):
        async def override_session():
            async with session_factory() as session:
                yield session

        app.dependency_overrides[get_reminder_store] = lambda: store
        app.dependency_overrides[get_session] = override_session
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            yield http
        app.dependency_overrides.clear()

    @pytest.mark.asyncio
    async def test_summary(self, client, make_task, make_reminder):
        await make_task()
        await make_reminder(scheduled_at=T0)

        response = await client.get("/api/v1/reminders/summary")

        assert response.status_code == 200
        assert response.json()["counts"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_get_reminder_with_attempts(self, client, store, make_task, make_reminder):
        await make_task()
        await make_reminder()
        token = await store.try_claim("reminder-1", T0, timedelta(seconds=300))
        claimed = ClaimedReminder(await store.get_reminder("reminder-1"), token)
        failure = DeliveryResult.failure(FailureReason.TIMEOUT, "slow")
        await store.mark_failed(claimed, [AttemptRecord("whatsapp", failure, T0)], T0, retryable=True)

        response = await client.get("/api/v1/reminders/reminder-1")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "failed"
        assert data["attempt_count"] == 1
        assert data["attempts"][0]["failure_reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_get_missing_reminder(self, client):
        response = await client.get("/api/v1/reminders/nope")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_requeue(self, client, make_task, make_reminder, load_reminder):
        await make_task()
        await make_reminder(status=ReminderStatus.FAILED, attempt_count=5, retryable=False)

        response = await client.post("/api/v1/reminders/reminder-1/requeue")

        assert response.status_code == 200
        reminder = await load_reminder("reminder-1")
        assert reminder.status == ReminderStatus.PENDING
        assert reminder.attempt_count == 0

    @pytest.mark.asyncio
    async def test_requeue_rejects_pending(self, client, make_task, make_reminder):
        await make_task()
        await make_reminder()

        response = await client.post("/api/v1/reminders/reminder-1/requeue")

        assert response.status_code == 409


class TestNotificationEndpoints:
    """Tests for the in-app notification endpoints."""

    @pytest_asyncio.fixture
    async def client(self, session_factory):
        async def override_session():
            async with session_factory() as session:
                yield session

        app.dependency_overrides[get_session] = override_session
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            yield http
        app.dependency_overrides.clear()

    @pytest_asyncio.fixture
    async def notifications(self, session_factory):
        rows = [
            Notification(id="n-old", user_id=USER_ID, title="Task Reminder", message="old",
                         created_at=T0 - timedelta(hours=1), is_read=True),
            Notification(id="n-new", user_id=USER_ID, title="Task Reminder", message="new",
                         created_at=T0),
            Notification(id="n-other", user_id="someone-else", title="Task Reminder", message="x",
                         created_at=T0),
        ]
        async with session_factory() as session:
            session.add_all(rows)
            await session.commit()
        return rows

    @pytest.mark.asyncio
    async def test_list_for_user(self, client, notifications):
        response = await client.get("/api/v1/notifications", params={"userId": USER_ID})

        assert response.status_code == 200
        data = response.json()
        assert [n["id"] for n in data["notifications"]] == ["n-new", "n-old"]
        assert data["unreadCount"] == 1

    @pytest.mark.asyncio
    async def test_unread_only(self, client, notifications):
        response = await client.get(
            "/api/v1/notifications", params={"userId": USER_ID, "unreadOnly": "true"}
        )

        assert [n["id"] for n in response.json()["notifications"]] == ["n-new"]

    @pytest.mark.asyncio
    async def test_mark_read(self, client, notifications):
        response = await client.post("/api/v1/notifications/n-new/read")

        assert response.status_code == 200
        assert response.json()["is_read"] is True
        listing = await client.get("/api/v1/notifications", params={"userId": USER_ID})
        assert listing.json()["unreadCount"] == 0

    @pytest.mark.asyncio
    async def test_mark_read_missing(self, client):
        response = await client.post("/api/v1/notifications/nope/read")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_mark_all_read(self, client, notifications):
        response = await client.post("/api/v1/notifications/read-all", params={"userId": USER_ID})

        assert response.json() == {"success": True, "updated": 1}
        other = await client.get("/api/v1/notifications", params={"userId": "someone-else"})
        assert other.json()["unreadCount"] == 1


class TestServiceEndpoints:

    @pytest.fixture
    def client(self):
        return TestClient(app)

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert "TaskFlow" in response.json()["name"]
