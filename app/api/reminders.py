"""
Operator endpoints for inspecting and requeueing reminders.
"""

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import get_settings
from app.domain.reminder import DispatchAttemptResponse, ReminderResponse
from app.infrastructure.database import get_session
from app.infrastructure.reminder_store import ReminderStore, StoreUnavailableError, get_reminder_store
from app.usecases.reminder_service import ReminderService
from app.utils.time import utc_now

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/reminders")
settings = get_settings()


@router.get("/summary")
async def reminders_summary(store: ReminderStore = Depends(get_reminder_store)):
    """Reminder counts per status, plus how many a tick would claim now."""
    now = utc_now()
    try:
        counts = await store.summary(now, timedelta(seconds=settings.claim_lease_seconds))
    except StoreUnavailableError as e:
        logger.error(f"Reminder summary failed: {e}")
        raise HTTPException(status_code=503, detail="Reminder store unavailable")

    return {"counts": counts, "timestamp": now.isoformat() + "Z"}


@router.get("/{reminder_id}", response_model=ReminderResponse)
async def get_reminder(reminder_id: str, store: ReminderStore = Depends(get_reminder_store)):
    """One reminder with its dispatch attempt log."""
    reminder = await store.get_reminder(reminder_id)
    if reminder is None:
        raise HTTPException(status_code=404, detail="Reminder not found")

    attempts = [
        DispatchAttemptResponse.model_validate(attempt)
        for attempt in await store.list_attempts(reminder_id)
    ]
    return ReminderResponse.model_validate(reminder).model_copy(update={"attempts": attempts})


@router.post("/{reminder_id}/requeue", response_model=ReminderResponse)
async def requeue_reminder(reminder_id: str, session: AsyncSession = Depends(get_session)):
    """Put a terminally failed reminder back in the queue."""
    service = ReminderService(session)
    try:
        reminder = await service.requeue_reminder(reminder_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if reminder is None:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder
