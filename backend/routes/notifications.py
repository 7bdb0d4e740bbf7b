# backend/routes/notifications.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.notification_log import NotificationLog
from schemas.notification import NotificationLogPage
from utils.tokenJWT import role_required

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("/logs", response_model=NotificationLogPage)
async def get_notification_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    recipient: Optional[str] = Query(None, description="Filter by recipient"),
    event_type: Optional[str] = Query(None, description="cart-email or user-registered"),
    correlation_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user=Depends(role_required("ADMIN")),
):
    query = select(NotificationLog)

    if recipient:
        query = query.where(NotificationLog.recipient.ilike(f"%{recipient}%"))
    if event_type:
        query = query.where(NotificationLog.event_type == event_type)
    if correlation_id:
        query = query.where(NotificationLog.correlation_id == correlation_id)
    if date_from:
        query = query.where(NotificationLog.sent_at >= date_from)
    if date_to:
        query = query.where(NotificationLog.sent_at <= date_to)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.scalars(
        query.order_by(NotificationLog.sent_at.desc(), NotificationLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )

    return {
        "items": list(result),
        "total": total,
        "page": page,
        "page_size": page_size,
    }
