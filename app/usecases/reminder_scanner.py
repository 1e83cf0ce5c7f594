"""
Reminder scanner: finds due reminders and claims them.
"""

import logging
from datetime import datetime, timedelta
from typing import List

from sqlalchemy.exc import SQLAlchemyError

from app.infrastructure.reminder_store import ClaimedReminder, ReminderStore, StoreUnavailableError

logger = logging.getLogger(__name__)


class ReminderScanner:
    """Claims due reminders one row at a time so overlapping ticks never share one."""

    def __init__(self, store: ReminderStore):
        self.store = store

    async def claim_due(
        self,
        now: datetime,
        lease_timeout: timedelta,
        limit: int = 50
    ) -> List[ClaimedReminder]:
        """
        Claim reminders whose trigger time has passed.

        Reminders of closed or deleted tasks are skipped first. Stale claims
        from crashed ticks are reclaimed ahead of fresh reminders; the rest
        go in trigger-time order.

        Args:
            now: Tick time
            lease_timeout: Age after which another tick's claim is reclaimed
            limit: Maximum reminders to claim in this tick

        Returns:
            Reminders this caller now holds the lease for

        Raises:
            StoreUnavailableError: If the store cannot be queried or updated
        """
        try:
            await self.store.skip_orphaned(now)
            candidates = await self.store.find_due(now, lease_timeout, limit)

            claimed: List[ClaimedReminder] = []
            for candidate in candidates:
                token = await self.store.try_claim(candidate.id, now, lease_timeout)
                if token is None:
                    logger.debug(f"Reminder {candidate.id} already claimed elsewhere")
                    continue

                reminder = await self.store.get_reminder(candidate.id)
                claimed.append(ClaimedReminder(reminder=reminder, token=token))
        except SQLAlchemyError as e:
            logger.exception(f"Reminder store unavailable: {e}")
            raise StoreUnavailableError(str(e)) from e

        if claimed:
            logger.info(f"Claimed {len(claimed)} of {len(candidates)} due reminder(s)")
        return claimed
