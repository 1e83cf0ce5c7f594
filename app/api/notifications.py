"""
In-app notification endpoints backing the dashboard dropdown.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.notification import Notification, NotificationResponse
from app.infrastructure.database import get_session

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/notifications")


@router.get("")
async def list_notifications(
    user_id: str = Query(..., alias="userId"),
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    """Newest notifications for a user plus their unread count."""
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712
    result = await session.execute(query.order_by(Notification.created_at.desc()).limit(limit))

    unread = await session.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.is_read == False,  # noqa: E712
        )
    )

    return {
        "notifications": [
            NotificationResponse.model_validate(n) for n in result.scalars().all()
        ],
        "unreadCount": unread.scalar_one(),
    }


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(notification_id: str, session: AsyncSession = Depends(get_session)):
    notification = await session.get(Notification, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")

    notification.is_read = True
    await session.commit()
    return notification


@router.post("/read-all")
async def mark_all_read(
    user_id: str = Query(..., alias="userId"),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True)
    )
    await session.commit()
    logger.info(f"Marked {result.rowcount} notification(s) read for user {user_id}")
    return {"success": True, "updated": result.rowcount}
