"""
Cron trigger endpoints.

An external scheduler calls these every minute (reminders) or once a day
(summary). They are safe to call concurrently with the in-process scheduler.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.config.settings import get_settings
from app.infrastructure.reminder_store import StoreUnavailableError
from app.usecases.daily_summary import send_daily_summaries
from app.usecases.dispatch_service import run_reminder_tick
from app.utils.time import utc_now

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron")
settings = get_settings()


def verify_cron_secret(authorization: Optional[str]) -> bool:
    """
    Check the bearer token against CRON_SECRET.

    Args:
        authorization: Raw Authorization header

    Returns:
        True if the caller may trigger jobs (always, when no secret is set)
    """
    if not settings.cron_secret:
        return True
    expected = f"Bearer {settings.cron_secret}"
    return hmac.compare_digest((authorization or "").encode(), expected.encode())


def _timestamp() -> str:
    return utc_now().isoformat() + "Z"


@router.api_route("/reminders", methods=["GET", "POST"])
async def process_reminders(authorization: Optional[str] = Header(default=None)):
    """Run one dispatch tick."""
    if not verify_cron_secret(authorization):
        logger.warning("Rejected reminders cron call with bad credentials")
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        result = await run_reminder_tick()
    except StoreUnavailableError as e:
        logger.error(f"[Cron Reminders] Claim step failed: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to process reminders"},
        )

    return {
        "success": True,
        "processed": result.processed,
        "claimed": result.claimed,
        "sent": result.sent,
        "failed": result.failed,
        "skipped": result.skipped,
        "timestamp": _timestamp(),
    }


@router.api_route("/daily-whatsapp", methods=["GET", "POST"])
async def daily_whatsapp(authorization: Optional[str] = Header(default=None)):
    """Send the daily WhatsApp task summaries."""
    if not verify_cron_secret(authorization):
        logger.warning("Rejected daily-whatsapp cron call with bad credentials")
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        result = await send_daily_summaries()
    except SQLAlchemyError as e:
        logger.error(f"[Cron Daily] Failed: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to send daily notifications"},
        )

    return {"success": True, **result, "timestamp": _timestamp()}
