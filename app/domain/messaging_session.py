"""
Messaging session state exposed to the pairing UI.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class SessionStatus(str, Enum):
    """Lifecycle states of the WhatsApp Web session."""
    DISCONNECTED = "DISCONNECTED"
    INITIALIZING = "INITIALIZING"
    QR_PENDING = "QR_PENDING"
    CONNECTED = "CONNECTED"
    AUTH_FAILURE = "AUTH_FAILURE"
    LOGGED_OUT = "LOGGED_OUT"


# initialize() is a no-op in these states
ACTIVE_SESSION_STATUSES = (
    SessionStatus.INITIALIZING,
    SessionStatus.QR_PENDING,
    SessionStatus.CONNECTED,
)

# States in which the session is still waiting to be paired
PAIRING_STATUSES = (
    SessionStatus.INITIALIZING,
    SessionStatus.QR_PENDING,
)


class SessionSnapshot(BaseModel):
    """Point-in-time view of the session."""
    status: SessionStatus
    qr: Optional[str] = None
    last_connected_at: Optional[datetime] = None
    last_error: Optional[str] = None
