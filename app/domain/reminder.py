"""
Reminder domain model and schemas.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
)
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, Field

from app.utils.time import utc_now

Base = declarative_base()


class ReminderStatus(str, Enum):
    """Reminder status enumeration."""
    PENDING = "pending"
    CLAIMED = "claimed"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class TriggerType(str, Enum):
    """How a reminder fires."""
    ONE_SHOT = "one_shot"
    RECURRING = "recurring"


class ChannelType(str, Enum):
    """Delivery channels a reminder can be sent through."""
    WHATSAPP = "whatsapp"          # self-hosted WhatsApp Web session
    WHATSAPP_API = "whatsapp_api"  # Twilio WhatsApp API
    TELEGRAM = "telegram"
    EMAIL = "email"
    IN_APP = "in_app"              # dashboard notification dropdown


class Reminder(Base):
    """SQLAlchemy model for task reminders."""

    __tablename__ = "reminders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False, index=True)
    organization_id = Column(String(36), nullable=False)
    user_id = Column(String(36), nullable=False)
    trigger_type = Column(SQLEnum(TriggerType), default=TriggerType.ONE_SHOT, nullable=False)
    recurrence_rule = Column(String(255), nullable=True)
    scheduled_at = Column(DateTime, nullable=False, index=True)
    channels = Column(JSON, nullable=True)  # list of ChannelType values
    status = Column(SQLEnum(ReminderStatus), default=ReminderStatus.PENDING, nullable=False, index=True)
    attempt_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)
    retryable = Column(Boolean, default=True, nullable=False)
    next_attempt_at = Column(DateTime, nullable=True)
    claim_token = Column(String(36), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return f"<Reminder(id={self.id}, task_id={self.task_id}, status={self.status})>"


# Pydantic Schemas

class ReminderCreate(BaseModel):
    """Schema for creating a reminder when a task is saved."""
    task_id: str
    organization_id: str
    user_id: str
    scheduled_at: datetime
    trigger_type: TriggerType = TriggerType.ONE_SHOT
    recurrence_rule: Optional[str] = Field(None, max_length=255)
    channels: Optional[List[ChannelType]] = None


class DispatchAttemptResponse(BaseModel):
    """Schema for one logged channel attempt."""
    attempt_number: int
    channel: str
    success: bool
    failure_reason: Optional[str]
    error_detail: Optional[str]
    attempted_at: datetime

    class Config:
        from_attributes = True


class ReminderResponse(BaseModel):
    """Schema for reminder response."""
    id: str
    task_id: str
    organization_id: str
    user_id: str
    trigger_type: TriggerType
    recurrence_rule: Optional[str]
    scheduled_at: datetime
    channels: Optional[List[str]]
    status: ReminderStatus
    attempt_count: int
    last_attempt_at: Optional[datetime]
    last_error: Optional[str]
    retryable: bool
    next_attempt_at: Optional[datetime]
    sent_at: Optional[datetime]
    created_at: datetime
    attempts: List[DispatchAttemptResponse] = []

    class Config:
        from_attributes = True
