"""
Daily WhatsApp summary of the tasks each user has on for today.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, or_, select

from app.config.settings import get_settings
from app.domain.reminder import Reminder, ReminderStatus
from app.domain.task import CLOSED_TASK_STATUSES, Task, TaskPriority, UserIntegration
from app.infrastructure.database import async_session_factory
from app.infrastructure.session_manager import MessagingSessionManager, get_session_manager
from app.utils.time import day_bounds, format_time, to_local, utc_now

logger = logging.getLogger(__name__)

PRIORITY_EMOJI = {
    TaskPriority.HIGH: "🔴",
    TaskPriority.MEDIUM: "🟡",
    TaskPriority.LOW: "🟢",
    TaskPriority.NONE: "⚪",
}

_PRIORITY_RANK = {
    TaskPriority.HIGH: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.LOW: 2,
    TaskPriority.NONE: 3,
}


def build_daily_summary_message(
    user_name: str,
    tasks: List[Task],
    now: datetime,
    tz_name: str = "UTC"
) -> str:
    """Render the morning summary for one user."""
    today = to_local(now, tz_name).strftime("%A, %B %d")

    message = f"🌅 *Good Morning, {user_name}!*\n\n"
    message += f"📅 *Your tasks for {today}*\n\n"

    if not tasks:
        message += "_No tasks scheduled for today. Enjoy your day!_ ✨\n"
    else:
        for i, task in enumerate(tasks, 1):
            emoji = PRIORITY_EMOJI.get(task.priority, "⚪")
            message += f"{i}. {emoji} *{task.title}*\n"
            if task.due_date:
                message += f"   ⏰ {format_time(task.due_date, tz_name, include_date=False)}\n"
            message += "\n"

        high = sum(1 for task in tasks if task.priority == TaskPriority.HIGH)
        if high:
            message += f"⚠️ *{high} high priority task{'s' if high > 1 else ''}*\n\n"

    message += "_Have a productive day! 💪_\n"
    message += "_Powered by TaskFlow_"
    return message


class DailySummaryService:
    """Sends each WhatsApp-linked user a summary of today's tasks."""

    def __init__(
        self,
        session_factory,
        manager: MessagingSessionManager,
        timezone: str = "UTC"
    ):
        self.session_factory = session_factory
        self.manager = manager
        self.timezone = timezone

    async def tasks_for_today(self, session, user_id: str, now: datetime) -> List[Task]:
        """Open tasks due today, with a reminder today, or recurring."""
        start, end = day_bounds(now, self.timezone)
        reminded_today = (
            select(Reminder.task_id)
            .where(
                Reminder.user_id == user_id,
                Reminder.status == ReminderStatus.PENDING,
                Reminder.scheduled_at >= start,
                Reminder.scheduled_at < end,
            )
        )
        result = await session.execute(
            select(Task)
            .where(
                Task.created_by_id == user_id,
                Task.deleted_at.is_(None),
                Task.status.notin_(CLOSED_TASK_STATUSES),
                or_(
                    and_(Task.due_date >= start, Task.due_date < end),
                    Task.id.in_(reminded_today),
                    Task.is_recurring == True,  # noqa: E712
                ),
            )
        )
        tasks = list(result.scalars().all())
        tasks.sort(key=lambda t: (_PRIORITY_RANK.get(t.priority, 3), t.due_date or datetime.max))
        return tasks

    async def send_daily_summaries(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Send the daily summary to every active WhatsApp integration.

        Users with nothing on today get no message.

        Returns:
            {"sent": summaries delivered, "total": integrations considered}
        """
        now = now or utc_now()
        logger.info(f"Starting daily WhatsApp summaries for {now:%Y-%m-%d}")

        async with self.session_factory() as session:
            result = await session.execute(
                select(UserIntegration).where(
                    UserIntegration.provider == "whatsapp",
                    UserIntegration.is_active == True,  # noqa: E712
                    UserIntegration.external_id.isnot(None),
                )
            )
            integrations = list(result.scalars().all())

            sent = 0
            for integration in integrations:
                tasks = await self.tasks_for_today(session, integration.user_id, now)
                if not tasks:
                    continue

                message = build_daily_summary_message(
                    integration.display_name or "there",
                    tasks,
                    now,
                    self.timezone,
                )
                delivery = await self.manager.send_message(integration.external_id, message)
                if delivery.ok:
                    sent += 1
                    logger.info(f"Sent daily summary to {integration.external_id} ({len(tasks)} tasks)")
                else:
                    logger.warning(
                        f"Daily summary to {integration.external_id} failed: {delivery.reason.value}"
                    )

        logger.info(f"Daily summaries complete. Sent {sent} of {len(integrations)}")
        return {"sent": sent, "total": len(integrations)}


async def send_daily_summaries(now: Optional[datetime] = None) -> Dict[str, int]:
    """Entry point for the cron endpoint and the in-process scheduler."""
    settings = get_settings()
    service = DailySummaryService(async_session_factory, get_session_manager(), settings.timezone)
    return await service.send_daily_summaries(now)
