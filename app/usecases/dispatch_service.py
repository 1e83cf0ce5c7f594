"""
Dispatch orchestrator: drives claimed reminders through their channels.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from app.config.settings import get_settings
from app.domain.delivery import DeliveryResult, FailureReason, ReminderMessage
from app.domain.reminder import ChannelType, Reminder
from app.domain.task import Task
from app.infrastructure.channels import ChannelAdapter, build_channel_adapters
from app.infrastructure.reminder_store import (
    AttemptRecord,
    ClaimedReminder,
    ReminderContext,
    ReminderStore,
    get_reminder_store,
)
from app.usecases.reminder_scanner import ReminderScanner
from app.utils.time import utc_now

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"
    LOST = "lost"  # lease expired and another tick took the reminder


@dataclass
class TickResult:
    """What one tick did; reported to the trigger for observability."""
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    unfinished: int = 0

    @property
    def processed(self) -> int:
        return self.sent + self.failed + self.skipped


class DispatchOrchestrator:
    """
    Runs one dispatch tick at a time over the reminder store.

    Reminders in a tick are processed concurrently; only sends on the
    WhatsApp Web session are serialized, inside the session manager.
    """

    def __init__(
        self,
        store: ReminderStore,
        adapters: Dict[ChannelType, ChannelAdapter],
        default_channels: Optional[List[str]] = None,
        lease_timeout_seconds: int = 300,
        batch_size: int = 50,
        max_concurrency: int = 4,
        tick_budget_seconds: float = 50.0,
        app_url: str = ""
    ):
        self.store = store
        self.scanner = ReminderScanner(store)
        self.adapters = adapters
        self.default_channels = list(default_channels or [ChannelType.WHATSAPP.value])
        self.lease_timeout = timedelta(seconds=lease_timeout_seconds)
        self.batch_size = batch_size
        self.max_concurrency = max(1, max_concurrency)
        self.tick_budget = tick_budget_seconds
        self.app_url = app_url.rstrip("/")

    async def run_tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Claim due reminders and dispatch them within the tick budget.

        Reminders still in flight when the budget runs out are cancelled and
        stay CLAIMED; a later tick reclaims them once the lease expires.

        Raises:
            StoreUnavailableError: If the claim step itself fails
        """
        now = now or utc_now()
        claimed = await self.scanner.claim_due(now, self.lease_timeout, self.batch_size)
        result = TickResult(claimed=len(claimed))
        if not claimed:
            return result

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def worker(item: ClaimedReminder) -> Optional[DispatchOutcome]:
            async with semaphore:
                return await self._dispatch_safely(item, now)

        tasks = [asyncio.create_task(worker(item)) for item in claimed]
        done, pending = await asyncio.wait(tasks, timeout=self.tick_budget)

        if pending:
            logger.warning(f"Tick budget exhausted; {len(pending)} reminder(s) left for lease reclaim")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            outcome = task.result()
            if outcome == DispatchOutcome.SENT:
                result.sent += 1
            elif outcome == DispatchOutcome.FAILED:
                result.failed += 1
            elif outcome == DispatchOutcome.SKIPPED:
                result.skipped += 1
            else:
                result.unfinished += 1
        result.unfinished += len(pending)

        logger.info(
            f"Dispatch tick: claimed={result.claimed} sent={result.sent} "
            f"failed={result.failed} skipped={result.skipped} unfinished={result.unfinished}"
        )
        return result

    async def _dispatch_safely(self, claimed: ClaimedReminder, now: datetime) -> Optional[DispatchOutcome]:
        try:
            return await self.dispatch(claimed, now)
        except Exception as e:
            # Left CLAIMED; the lease-reclaim path retries it
            logger.exception(f"Error dispatching reminder {claimed.reminder.id}: {e}")
            return None

    async def dispatch(self, claimed: ClaimedReminder, now: datetime) -> DispatchOutcome:
        """Deliver one claimed reminder and write its terminal state."""
        reminder = claimed.reminder
        context = await self.store.load_context(reminder)

        if context.task is None or not context.task.is_open:
            logger.info(f"Skipping reminder {reminder.id}: task is closed or deleted")
            owned = await self.store.mark_skipped(reminder.id, now, token=claimed.token)
            return DispatchOutcome.SKIPPED if owned else DispatchOutcome.LOST

        message = self.build_message(reminder, context.task)
        attempts: List[AttemptRecord] = []
        for channel_id in self.resolve_channels(reminder):
            attempted_at = utc_now()
            delivery = await self._send_on_channel(channel_id, context, message)
            attempts.append(AttemptRecord(channel=channel_id, result=delivery, attempted_at=attempted_at))
            if not delivery.ok:
                logger.warning(
                    f"Reminder {reminder.id} via {channel_id} failed: "
                    f"{delivery.reason.value} {delivery.detail or ''}".rstrip()
                )

        if any(attempt.result.ok for attempt in attempts):
            owned = await self.store.mark_sent(claimed, attempts, now)
            return DispatchOutcome.SENT if owned else DispatchOutcome.LOST

        retryable = any(attempt.result.retryable for attempt in attempts)
        owned = await self.store.mark_failed(claimed, attempts, now, retryable=retryable)
        return DispatchOutcome.FAILED if owned else DispatchOutcome.LOST

    def resolve_channels(self, reminder: Reminder) -> List[str]:
        """Reminder's own channel preference, else the configured default."""
        preferred = [str(getattr(c, "value", c)) for c in (reminder.channels or [])]
        channels = preferred or self.default_channels
        return list(dict.fromkeys(channels))

    def build_message(self, reminder: Reminder, task: Task) -> ReminderMessage:
        link = f"{self.app_url}/dashboard/tasks?taskId={task.id}" if self.app_url else None
        return ReminderMessage(
            title="Task Reminder",
            body=f'Don\'t forget: "{task.title}" is due soon!',
            task_title=task.title,
            due_date=task.due_date,
            link=link,
        )

    async def _send_on_channel(
        self,
        channel_id: str,
        context: ReminderContext,
        message: ReminderMessage
    ) -> DeliveryResult:
        try:
            adapter = self.adapters.get(ChannelType(channel_id))
        except ValueError:
            adapter = None
        if adapter is None:
            return DeliveryResult.failure(
                FailureReason.NOT_CONFIGURED,
                f"No adapter for channel '{channel_id}'",
            )

        target = context.destinations.get(adapter.provider)
        if not target:
            return DeliveryResult.failure(
                FailureReason.NO_DESTINATION,
                f"User has no active {adapter.provider} destination",
            )

        try:
            return await adapter.send(target, message)
        except Exception as e:
            logger.exception(f"Channel {channel_id} raised during send: {e}")
            return DeliveryResult.failure(FailureReason.NETWORK_ERROR, str(e))


# Process-wide orchestrator instance
orchestrator: Optional[DispatchOrchestrator] = None


def get_orchestrator() -> DispatchOrchestrator:
    """Get or create the orchestrator wired to the application database and channels."""
    global orchestrator

    if orchestrator is None:
        settings = get_settings()
        orchestrator = DispatchOrchestrator(
            store=get_reminder_store(),
            adapters=build_channel_adapters(),
            default_channels=settings.default_channels,
            lease_timeout_seconds=settings.claim_lease_seconds,
            batch_size=settings.dispatch_batch_size,
            max_concurrency=settings.dispatch_max_concurrency,
            tick_budget_seconds=settings.dispatch_tick_budget_seconds,
            app_url=settings.app_url,
        )

    return orchestrator


async def run_reminder_tick() -> TickResult:
    """Entry point for the cron endpoint and the in-process scheduler."""
    return await get_orchestrator().run_tick()
