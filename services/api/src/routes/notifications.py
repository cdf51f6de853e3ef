from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from models.operations.notifications import notification_get_by_user
from utils import log

from .dependencies import require_user

logger = log.get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    id: str
    type: str
    message: str
    metadata: Dict[str, Any]
    is_read: bool
    created_at: Optional[datetime] = None


@router.get("", response_model=List[NotificationResponse])
async def route_notifications_mine(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(require_user),
):
    """The caller's notifications, newest first."""
    notifications = await notification_get_by_user(user_id, limit=limit)
    return [
        NotificationResponse(
            id=n.id,
            type=n.data.type,
            message=n.data.message,
            metadata=n.data.metadata.model_dump(mode="json"),
            is_read=n.data.is_read,
            created_at=n.data.created_at,
        )
        for n in notifications
    ]
