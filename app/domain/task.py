"""
Task-domain tables the dispatch engine reads.

Tasks and integrations are owned by the task-management side of the
dashboard; only the columns reminders depend on are mapped here.
"""

import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, Integer, String

from app.domain.reminder import Base
from app.utils.time import utc_now


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Tasks in these states no longer need reminding
CLOSED_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


class Task(Base):
    """SQLAlchemy model for the subset of task fields used by reminders."""

    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), nullable=False)
    created_by_id = Column(String(36), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(String(2000), nullable=True)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.TODO, nullable=False)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.NONE, nullable=False)
    due_date = Column(DateTime, nullable=True)
    is_recurring = Column(Boolean, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)

    @property
    def is_open(self) -> bool:
        """Whether the task still warrants reminders."""
        return self.deleted_at is None and self.status not in CLOSED_TASK_STATUSES

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, title={self.title}, status={self.status})>"


class UserIntegration(Base):
    """
    Per-user messaging destination.

    provider is "whatsapp", "telegram" or "email"; external_id is the phone
    number, chat id or address on that provider.
    """

    __tablename__ = "user_integrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    external_id = Column(String(255), nullable=True)
    display_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return f"<UserIntegration(user={self.user_id}, provider={self.provider})>"
