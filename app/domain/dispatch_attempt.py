"""
Dispatch attempt log.
One row per channel attempt; used for observability and retry decisions.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from app.domain.reminder import Base
from app.utils.time import utc_now


class DispatchAttempt(Base):
    """SQLAlchemy model for a single channel delivery attempt."""
    
    __tablename__ = "dispatch_attempts"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    reminder_id = Column(String(36), ForeignKey("reminders.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    channel = Column(String(32), nullable=False)
    success = Column(Boolean, nullable=False)
    failure_reason = Column(String(32), nullable=True)
    error_detail = Column(String(1000), nullable=True)
    attempted_at = Column(DateTime, default=utc_now, nullable=False)
    
    def __repr__(self) -> str:
        return (
            f"<DispatchAttempt(reminder={self.reminder_id}, channel={self.channel}, "
            f"success={self.success})>"
        )
