from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class NotificationLogResponse(BaseModel):
    id: int
    recipient: str
    message: str
    sent_at: Optional[datetime] = None
    event_type: str
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class NotificationLogPage(BaseModel):
    items: List[NotificationLogResponse]
    total: int
    page: int
    page_size: int
