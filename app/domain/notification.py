"""
In-app notifications shown in the dashboard's notification dropdown.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, String

from app.domain.reminder import Base
from app.utils.time import utc_now


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notification(Base):
    """SQLAlchemy model for a user's in-app notification."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(SQLEnum(NotificationType), default=NotificationType.INFO, nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(String(2000), nullable=False)
    link = Column(String(1000), nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, user={self.user_id}, read={self.is_read})>"


class NotificationResponse(BaseModel):
    """Schema for notification response."""
    id: str
    type: NotificationType
    title: str
    message: str
    link: Optional[str]
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True
