"""
WhatsApp Web session endpoints used by the integrations settings page.

The page polls GET for status and the QR payload while pairing, and POSTs
actions to start, stop or test the session.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.domain.delivery import FailureReason
from app.domain.messaging_session import SessionSnapshot
from app.infrastructure.session_manager import MessagingSessionManager, get_session_manager

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/integrations/whatsapp")

TEST_MESSAGE = "👋 Hello! This is a test message from your Self-Hosted WhatsApp integration."


class SessionAction(BaseModel):
    """Body of a session action request."""
    action: str
    phone_number: Optional[str] = Field(None, alias="phoneNumber")

    class Config:
        populate_by_name = True


@router.get("", response_model=SessionSnapshot)
async def get_whatsapp_session(
    manager: MessagingSessionManager = Depends(get_session_manager)
):
    """Current session status and, while pairing, the QR payload."""
    return manager.snapshot()


@router.post("")
async def whatsapp_session_action(
    body: SessionAction,
    manager: MessagingSessionManager = Depends(get_session_manager)
):
    """
    Run a session action.

    initialize and logout are idempotent; send_test sends a fixed message to
    the given number.
    """
    if body.action == "initialize":
        snapshot = await manager.initialize()
        return {
            "success": snapshot.last_error is None,
            "message": "Initialization started",
            "session": snapshot.model_dump(mode="json"),
        }

    if body.action == "logout":
        snapshot = await manager.logout()
        return {
            "success": True,
            "message": "Logged out",
            "session": snapshot.model_dump(mode="json"),
        }

    if body.action == "send_test":
        if not body.phone_number:
            return JSONResponse(status_code=400, content={"error": "Phone number required"})

        result = await manager.send_message(body.phone_number, TEST_MESSAGE)
        if result.ok:
            return {"success": True, "message": "Test message sent!"}

        logger.warning(f"Test message failed: {result.reason.value} {result.detail}")
        status_code = 400 if result.reason == FailureReason.INVALID_DESTINATION else 500
        return JSONResponse(
            status_code=status_code,
            content={
                "error": "Failed to send message",
                "reason": result.reason.value,
                "detail": result.detail,
            },
        )

    return JSONResponse(status_code=400, content={"error": "Invalid action"})
