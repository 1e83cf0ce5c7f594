"""
Reminder service for the task-side hooks and operator actions on reminders.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.reminder import Reminder, ReminderCreate, ReminderStatus, TriggerType
from app.domain.task import Task
from app.utils.time import to_naive_utc, utc_now, validate_recurrence_rule

logger = logging.getLogger(__name__)


class ReminderService:
    """Service class for reminder operations outside the dispatch loop."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_reminder(self, data: ReminderCreate) -> Reminder:
        """
        Create a PENDING reminder for a saved task.

        Args:
            data: Reminder fields from the task form

        Returns:
            The persisted reminder

        Raises:
            ValueError: If the task does not exist or the recurrence rule is unusable
        """
        task = await self.session.get(Task, data.task_id)
        if task is None or task.deleted_at is not None:
            raise ValueError(f"Task {data.task_id} not found")

        if data.trigger_type == TriggerType.RECURRING:
            if not data.recurrence_rule:
                raise ValueError("Recurring reminders need a recurrence rule")
            validate_recurrence_rule(data.recurrence_rule)

        reminder = Reminder(
            id=str(uuid4()),
            task_id=data.task_id,
            organization_id=data.organization_id,
            user_id=data.user_id,
            trigger_type=data.trigger_type,
            recurrence_rule=data.recurrence_rule if data.trigger_type == TriggerType.RECURRING else None,
            scheduled_at=to_naive_utc(data.scheduled_at),
            channels=[c.value for c in data.channels] if data.channels else None,
            status=ReminderStatus.PENDING,
        )

        self.session.add(reminder)
        await self.session.commit()

        logger.info(f"Created reminder: {reminder.id} for task {reminder.task_id} at {reminder.scheduled_at}")
        return reminder

    async def skip_reminders_for_task(self, task_id: str, now: Optional[datetime] = None) -> int:
        """
        Skip every PENDING reminder of a task that was completed or deleted.

        Reminders already claimed by a tick are left alone; the orchestrator
        re-checks the task before sending.

        Returns:
            Number of reminders skipped
        """
        now = now or utc_now()
        result = await self.session.execute(
            update(Reminder)
            .where(Reminder.task_id == task_id, Reminder.status == ReminderStatus.PENDING)
            .values(status=ReminderStatus.SKIPPED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        if result.rowcount:
            logger.info(f"Skipped {result.rowcount} reminder(s) for task {task_id}")
        return result.rowcount

    async def requeue_reminder(self, reminder_id: str, now: Optional[datetime] = None) -> Optional[Reminder]:
        """
        Put a FAILED reminder back in the queue with a fresh attempt budget.

        Args:
            reminder_id: Reminder to requeue
            now: New trigger time; defaults to the current time

        Returns:
            The requeued reminder, or None if it does not exist

        Raises:
            ValueError: If the reminder is not in FAILED state
        """
        now = now or utc_now()
        reminder = await self.get_reminder(reminder_id)
        if reminder is None:
            return None
        if reminder.status != ReminderStatus.FAILED:
            raise ValueError(f"Only failed reminders can be requeued (status is {reminder.status.value})")

        reminder.status = ReminderStatus.PENDING
        reminder.scheduled_at = now
        reminder.attempt_count = 0
        reminder.retryable = True
        reminder.next_attempt_at = None
        reminder.last_error = None
        reminder.claim_token = None
        reminder.claimed_at = None
        reminder.updated_at = now
        await self.session.commit()

        logger.info(f"Requeued reminder {reminder_id}")
        return reminder

    async def get_reminder(self, reminder_id: str) -> Optional[Reminder]:
        result = await self.session.execute(
            select(Reminder).where(Reminder.id == reminder_id)
        )
        return result.scalar_one_or_none()
