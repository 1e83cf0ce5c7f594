"""
Unit tests for ReminderService business logic.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from app.domain.reminder import ChannelType, ReminderCreate, ReminderStatus, TriggerType
from app.usecases.reminder_service import ReminderService

from conftest import T0, ORG_ID, USER_ID


def reminder_data(**overrides) -> ReminderCreate:
    fields = dict(
        task_id="task-1",
        organization_id=ORG_ID,
        user_id=USER_ID,
        scheduled_at=T0,
    )
    fields.update(overrides)
    return ReminderCreate(**fields)


class TestCreateReminder:
    """Tests for ReminderService.create_reminder."""

    @pytest_asyncio.fixture
    async def service(self, test_session):
        """Create a ReminderService instance with test session."""
        return ReminderService(test_session)

    @pytest.mark.asyncio
    async def test_creates_pending_reminder(self, service, make_task, load_reminder):
        await make_task()

        reminder = await service.create_reminder(reminder_data(channels=[ChannelType.TELEGRAM]))

        stored = await load_reminder(reminder.id)
        assert stored.status == ReminderStatus.PENDING
        assert stored.attempt_count == 0
        assert stored.channels == ["telegram"]

    @pytest.mark.asyncio
    async def test_aware_time_is_stored_as_utc(self, service, make_task, load_reminder):
        await make_task()
        karachi = timezone(timedelta(hours=5))

        reminder = await service.create_reminder(
            reminder_data(scheduled_at=datetime(2025, 3, 10, 14, 0, tzinfo=karachi))
        )

        stored = await load_reminder(reminder.id)
        assert stored.scheduled_at == T0

    @pytest.mark.asyncio
    async def test_recurring_requires_valid_rule(self, service, make_task):
        await make_task()

        with pytest.raises(ValueError):
            await service.create_reminder(reminder_data(trigger_type=TriggerType.RECURRING))
        with pytest.raises(ValueError):
            await service.create_reminder(
                reminder_data(trigger_type=TriggerType.RECURRING, recurrence_rule="FREQ=SOMETIMES")
            )

    @pytest.mark.asyncio
    async def test_recurring_reminder(self, service, make_task):
        await make_task()

        reminder = await service.create_reminder(
            reminder_data(trigger_type=TriggerType.RECURRING, recurrence_rule="FREQ=WEEKLY;BYDAY=MO")
        )

        assert reminder.recurrence_rule == "FREQ=WEEKLY;BYDAY=MO"

    @pytest.mark.asyncio
    async def test_unknown_task(self, service):
        with pytest.raises(ValueError):
            await service.create_reminder(reminder_data(task_id="missing"))


class TestTaskHooks:

    @pytest.mark.asyncio
    async def test_skip_reminders_for_task(self, test_session, make_task, make_reminder, load_reminder):
        await make_task()
        await make_reminder("pending-1")
        await make_reminder("pending-2", scheduled_at=T0 + timedelta(days=1))
        await make_reminder("sent", status=ReminderStatus.SENT)

        skipped = await ReminderService(test_session).skip_reminders_for_task("task-1", T0)

        assert skipped == 2
        assert (await load_reminder("pending-1")).status == ReminderStatus.SKIPPED
        assert (await load_reminder("pending-2")).status == ReminderStatus.SKIPPED
        assert (await load_reminder("sent")).status == ReminderStatus.SENT


class TestRequeue:

    @pytest.mark.asyncio
    async def test_requeue_failed_reminder(self, test_session, make_task, make_reminder, load_reminder):
        await make_task()
        await make_reminder(
            status=ReminderStatus.FAILED,
            attempt_count=5,
            retryable=False,
            last_error="whatsapp: timeout",
        )
        later = T0 + timedelta(hours=3)

        reminder = await ReminderService(test_session).requeue_reminder("reminder-1", later)

        assert reminder is not None
        stored = await load_reminder("reminder-1")
        assert stored.status == ReminderStatus.PENDING
        assert stored.attempt_count == 0
        assert stored.retryable is True
        assert stored.scheduled_at == later
        assert stored.last_error is None

    @pytest.mark.asyncio
    async def test_requeue_missing(self, test_session):
        assert await ReminderService(test_session).requeue_reminder("nope", T0) is None

    @pytest.mark.asyncio
    async def test_requeue_sent_is_refused(self, test_session, make_task, make_reminder):
        await make_task()
        await make_reminder(status=ReminderStatus.SENT)

        with pytest.raises(ValueError):
            await ReminderService(test_session).requeue_reminder("reminder-1", T0)
