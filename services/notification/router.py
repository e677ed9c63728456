"""
services/notification/router.py
In-app notification inbox. Rows are written by the booking flows through
NotificationEmitter; this router only reads and marks them.
"""

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, User
from shared.schemas.schemas import MessageResponse, NotificationResponse, UnreadCountResponse
from shared.utils.errors import NotFound

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=list[NotificationResponse])
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications, newest first."""
    query = (
        select(Notification)
        .where(Notification.user_id == current_user.id)
        .order_by(Notification.created_at.desc(), Notification.id)
    )

    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712

    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [NotificationResponse.model_validate(n) for n in result.scalars()]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.is_read == False,  # noqa: E712
        )
    )
    return UnreadCountResponse(unread_count=count or 0)


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == current_user.id)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    if result.rowcount == 0:
        raise NotFound("Notification not found", notification_id=str(notification_id))
    await db.commit()
    return MessageResponse(message="Marked as read")


@router.delete("", response_model=MessageResponse)
async def clear_all(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Remove every notification in my inbox."""
    result = await db.execute(delete(Notification).where(Notification.user_id == current_user.id))
    await db.commit()
    return MessageResponse(message=f"Cleared {result.rowcount} notification(s)")
