# backend/models/notification_log.py
from sqlalchemy import Column, DateTime, Integer, String, Text, func

from database import Base


# Append-only audit trail of processed notification events.
# Redelivered messages may produce duplicate rows; message_id ties them together.
class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, index=True)

    recipient = Column(String(256), nullable=False, index=True)
    message = Column(Text, nullable=False)
    sent_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    # Tracing context
    event_type = Column(String(50), nullable=False, index=True)
    message_id = Column(String(100), nullable=True, index=True)
    correlation_id = Column(String(100), nullable=True, index=True)
