"""
Reminder store: the dispatch engine's narrow view of the reminders table.

Every status change is a single conditional UPDATE whose rowcount decides
who won, so overlapping ticks can share the table without a global lock.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.config.settings import get_settings
from app.domain.delivery import DeliveryResult
from app.domain.dispatch_attempt import DispatchAttempt
from app.domain.reminder import Reminder, ReminderStatus, TriggerType
from app.domain.task import CLOSED_TASK_STATUSES, Task, UserIntegration
from app.infrastructure.database import async_session_factory
from app.utils.time import next_occurrence

logger = logging.getLogger(__name__)

IN_APP_PROVIDER = "in_app"


class StoreUnavailableError(Exception):
    """Raised when the reminder store cannot be read or written."""


@dataclass
class ClaimedReminder:
    """A reminder this process holds the lease for."""
    reminder: Reminder
    token: str


@dataclass
class AttemptRecord:
    """Outcome of one channel attempt, before it is persisted."""
    channel: str
    result: DeliveryResult
    attempted_at: datetime


@dataclass
class ReminderContext:
    """What the orchestrator needs to know about a reminder's task and recipient."""
    task: Optional[Task]
    destinations: Dict[str, str] = field(default_factory=dict)


class ReminderStore:
    """Repository over reminders and their dispatch attempts."""

    def __init__(self, session_factory, max_attempts: int = 5, retry_backoff_seconds: int = 60):
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.retry_backoff = timedelta(seconds=retry_backoff_seconds)

    def _claimable(self, now: datetime, lease_timeout: timedelta):
        """Rows a tick may take: due PENDING, retry-eligible FAILED, or stale CLAIMED."""
        stale_before = now - lease_timeout
        return or_(
            and_(
                Reminder.status == ReminderStatus.PENDING,
                Reminder.scheduled_at <= now,
            ),
            and_(
                Reminder.status == ReminderStatus.FAILED,
                Reminder.retryable == True,  # noqa: E712
                Reminder.attempt_count < self.max_attempts,
                or_(Reminder.next_attempt_at.is_(None), Reminder.next_attempt_at <= now),
            ),
            and_(
                Reminder.status == ReminderStatus.CLAIMED,
                Reminder.claimed_at <= stale_before,
            ),
        )

    async def find_due(
        self,
        now: datetime,
        lease_timeout: timedelta,
        limit: int = 50
    ) -> List[Reminder]:
        """
        List reminders that can be claimed right now.

        Stale claims come first (crash recovery), then everything else by
        trigger time so the most overdue reminders are attempted first.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Reminder)
                .where(self._claimable(now, lease_timeout))
                .order_by(
                    case((Reminder.status == ReminderStatus.CLAIMED, 0), else_=1),
                    Reminder.scheduled_at.asc(),
                )
                .limit(limit)
            )
            return list(result.scalars().all())

    async def try_claim(
        self,
        reminder_id: str,
        now: datetime,
        lease_timeout: timedelta
    ) -> Optional[str]:
        """
        Atomically claim one reminder.

        Args:
            reminder_id: Reminder to claim
            now: Claim time, also the start of the lease
            lease_timeout: How long an existing claim is honoured

        Returns:
            A fresh claim token, or None if another tick got there first
        """
        token = str(uuid4())
        async with self.session_factory() as session:
            result = await session.execute(
                update(Reminder)
                .where(Reminder.id == reminder_id, self._claimable(now, lease_timeout))
                .values(
                    status=ReminderStatus.CLAIMED,
                    claim_token=token,
                    claimed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            return None
        return token

    async def get_reminder(self, reminder_id: str) -> Optional[Reminder]:
        async with self.session_factory() as session:
            return await session.get(Reminder, reminder_id)

    async def skip_orphaned(self, now: datetime) -> int:
        """
        Mark due PENDING reminders of missing, deleted or closed tasks SKIPPED.

        Returns:
            Number of reminders skipped
        """
        async with self.session_factory() as session:
            orphaned = (
                select(Reminder.id)
                .outerjoin(Task, Task.id == Reminder.task_id)
                .where(
                    Reminder.status == ReminderStatus.PENDING,
                    Reminder.scheduled_at <= now,
                    or_(
                        Task.id.is_(None),
                        Task.deleted_at.isnot(None),
                        Task.status.in_(CLOSED_TASK_STATUSES),
                    ),
                )
            )
            ids = list((await session.execute(orphaned)).scalars().all())
            if not ids:
                return 0

            result = await session.execute(
                update(Reminder)
                .where(Reminder.id.in_(ids), Reminder.status == ReminderStatus.PENDING)
                .values(status=ReminderStatus.SKIPPED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount:
            logger.info(f"Skipped {result.rowcount} reminder(s) for closed or deleted tasks")
        return result.rowcount

    async def load_context(self, reminder: Reminder) -> ReminderContext:
        """Load the reminder's task and the recipient's active destinations."""
        async with self.session_factory() as session:
            task = await session.get(Task, reminder.task_id)
            result = await session.execute(
                select(UserIntegration)
                .where(
                    UserIntegration.user_id == reminder.user_id,
                    UserIntegration.is_active == True,  # noqa: E712
                    UserIntegration.external_id.isnot(None),
                )
                .order_by(UserIntegration.created_at.desc())
            )
            destinations: Dict[str, str] = {}
            for integration in result.scalars().all():
                destinations.setdefault(integration.provider, integration.external_id)
            # Every user can receive in-app notifications
            destinations[IN_APP_PROVIDER] = reminder.user_id

        return ReminderContext(task=task, destinations=destinations)

    def _attempt_rows(
        self,
        reminder_id: str,
        attempt_number: int,
        attempts: List[AttemptRecord]
    ) -> List[DispatchAttempt]:
        return [
            DispatchAttempt(
                reminder_id=reminder_id,
                attempt_number=attempt_number,
                channel=record.channel,
                success=record.result.ok,
                failure_reason=record.result.reason.value if record.result.reason else None,
                error_detail=(record.result.detail or "")[:1000] or None,
                attempted_at=record.attempted_at,
            )
            for record in attempts
        ]

    async def mark_sent(
        self,
        claimed: ClaimedReminder,
        attempts: List[AttemptRecord],
        now: datetime
    ) -> bool:
        """
        Record a successful delivery.

        Attempts are logged even when the lease was lost, since the sends
        really happened. For recurring reminders the next occurrence is
        queued in the same transaction.

        Returns:
            True if this claim still owned the reminder
        """
        reminder = claimed.reminder
        attempt_number = reminder.attempt_count + 1

        async with self.session_factory() as session:
            session.add_all(self._attempt_rows(reminder.id, attempt_number, attempts))
            result = await session.execute(
                update(Reminder)
                .where(
                    Reminder.id == reminder.id,
                    Reminder.status == ReminderStatus.CLAIMED,
                    Reminder.claim_token == claimed.token,
                )
                .values(
                    status=ReminderStatus.SENT,
                    attempt_count=attempt_number,
                    last_attempt_at=now,
                    sent_at=now,
                    last_error=None,
                    retryable=False,
                    next_attempt_at=None,
                    claim_token=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            owned = result.rowcount == 1

            if owned and reminder.trigger_type == TriggerType.RECURRING:
                follow_up = self._next_recurrence(reminder, now)
                if follow_up is not None:
                    session.add(follow_up)

            await session.commit()

        if not owned:
            logger.warning(f"Lost lease on reminder {reminder.id} before marking it sent")
        return owned

    def _next_recurrence(self, reminder: Reminder, now: datetime) -> Optional[Reminder]:
        if not reminder.recurrence_rule:
            return None
        try:
            scheduled_at = next_occurrence(
                reminder.recurrence_rule,
                dtstart=reminder.scheduled_at,
                after=max(reminder.scheduled_at, now),
            )
        except ValueError as e:
            logger.error(f"Invalid recurrence rule on reminder {reminder.id}: {e}")
            return None

        if scheduled_at is None:
            logger.info(f"Recurrence for reminder {reminder.id} is exhausted")
            return None

        return Reminder(
            id=str(uuid4()),
            task_id=reminder.task_id,
            organization_id=reminder.organization_id,
            user_id=reminder.user_id,
            trigger_type=TriggerType.RECURRING,
            recurrence_rule=reminder.recurrence_rule,
            scheduled_at=scheduled_at,
            channels=reminder.channels,
            status=ReminderStatus.PENDING,
        )

    async def mark_failed(
        self,
        claimed: ClaimedReminder,
        attempts: List[AttemptRecord],
        now: datetime,
        retryable: bool
    ) -> bool:
        """
        Record a failed dispatch.

        The reminder stays retry-eligible only if the failure was transient
        and the attempt budget is not yet spent. A recurring reminder that
        fails for good still queues its next occurrence.

        Returns:
            True if this claim still owned the reminder
        """
        reminder = claimed.reminder
        attempt_number = reminder.attempt_count + 1
        will_retry = retryable and attempt_number < self.max_attempts
        errors = "; ".join(
            f"{record.channel}: {record.result.detail or record.result.reason.value}"
            for record in attempts
            if not record.result.ok
        )

        async with self.session_factory() as session:
            session.add_all(self._attempt_rows(reminder.id, attempt_number, attempts))
            result = await session.execute(
                update(Reminder)
                .where(
                    Reminder.id == reminder.id,
                    Reminder.status == ReminderStatus.CLAIMED,
                    Reminder.claim_token == claimed.token,
                )
                .values(
                    status=ReminderStatus.FAILED,
                    attempt_count=attempt_number,
                    last_attempt_at=now,
                    last_error=errors[:1000] or None,
                    retryable=will_retry,
                    next_attempt_at=now + self.retry_backoff if will_retry else None,
                    claim_token=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            owned = result.rowcount == 1

            # A terminal failure must not end the series
            if owned and not will_retry and reminder.trigger_type == TriggerType.RECURRING:
                follow_up = self._next_recurrence(reminder, now)
                if follow_up is not None:
                    session.add(follow_up)

            await session.commit()

        if not owned:
            logger.warning(f"Lost lease on reminder {reminder.id} before marking it failed")
        return owned

    async def mark_skipped(
        self,
        reminder_id: str,
        now: datetime,
        token: Optional[str] = None
    ) -> bool:
        """
        Mark a reminder SKIPPED.

        Without a token only a PENDING reminder is skipped; with one, the
        caller's own claim is released as SKIPPED.
        """
        if token is None:
            condition = Reminder.status == ReminderStatus.PENDING
        else:
            condition = and_(
                Reminder.status == ReminderStatus.CLAIMED,
                Reminder.claim_token == token,
            )

        async with self.session_factory() as session:
            result = await session.execute(
                update(Reminder)
                .where(Reminder.id == reminder_id, condition)
                .values(status=ReminderStatus.SKIPPED, claim_token=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def list_attempts(self, reminder_id: str) -> List[DispatchAttempt]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DispatchAttempt)
                .where(DispatchAttempt.reminder_id == reminder_id)
                .order_by(DispatchAttempt.attempt_number, DispatchAttempt.id)
            )
            return list(result.scalars().all())

    async def summary(self, now: datetime, lease_timeout: timedelta) -> Dict[str, int]:
        """Count reminders per status plus how many are claimable now."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Reminder.status, func.count(Reminder.id)).group_by(Reminder.status)
                )
                counts = {status.value: 0 for status in ReminderStatus}
                for status, count in result.all():
                    counts[status.value] = count

                due = await session.execute(
                    select(func.count(Reminder.id)).where(self._claimable(now, lease_timeout))
                )
                counts["due"] = due.scalar_one()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e
        return counts


# Process-wide store instance
reminder_store: Optional[ReminderStore] = None


def get_reminder_store() -> ReminderStore:
    """Get or create the store bound to the application database."""
    global reminder_store

    if reminder_store is None:
        settings = get_settings()
        reminder_store = ReminderStore(
            async_session_factory,
            max_attempts=settings.max_dispatch_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
        )

    return reminder_store
