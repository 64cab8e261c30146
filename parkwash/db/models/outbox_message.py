"""
Outbox Message Model - Transactional Outbox for customer notifications
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON

from parkwash.db.database import Base


class MessageChannel(str, enum.Enum):
    EMAIL = "email"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """Queued notification with retry tracking"""

    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)

    channel = Column(SQLEnum(MessageChannel), default=MessageChannel.EMAIL, nullable=False)
    recipient = Column(String(255), nullable=False)

    message_type = Column(String(50), nullable=False)  # e.g. "verification_code", "checkout_ticket"
    payload = Column(JSON, nullable=False)

    status = Column(SQLEnum(MessageStatus), default=MessageStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)

    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
