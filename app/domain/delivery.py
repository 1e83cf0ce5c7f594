"""
Delivery outcomes shared by every channel.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """Why a channel attempt did not deliver."""
    CHANNEL_UNAVAILABLE = "channel_unavailable"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    INVALID_DESTINATION = "invalid_destination"
    REJECTED = "rejected"
    NO_DESTINATION = "no_destination"
    NOT_CONFIGURED = "not_configured"

    @property
    def retryable(self) -> bool:
        """Transient failures may succeed on a later tick."""
        return self in _TRANSIENT_REASONS


_TRANSIENT_REASONS = frozenset({
    FailureReason.CHANNEL_UNAVAILABLE,
    FailureReason.TIMEOUT,
    FailureReason.NETWORK_ERROR,
})


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single send on a single channel."""
    ok: bool
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, detail: Optional[str] = None) -> "DeliveryResult":
        return cls(ok=True, detail=detail)

    @classmethod
    def failure(cls, reason: FailureReason, detail: Optional[str] = None) -> "DeliveryResult":
        return cls(ok=False, reason=reason, detail=detail)

    @property
    def retryable(self) -> bool:
        return not self.ok and self.reason is not None and self.reason.retryable


@dataclass(frozen=True)
class ReminderMessage:
    """Channel-neutral content of a reminder notification."""
    title: str
    body: str
    task_title: Optional[str] = None
    due_date: Optional[datetime] = None
    link: Optional[str] = None
