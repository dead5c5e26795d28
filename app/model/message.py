"""
Message model. One chat line inside an accepted ride request.
"""
from sqlalchemy import Column, String, Text, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
import uuid
from app.core.database import Base
from app.utils.timestamps import utcnow


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_receiver_unread", "receiver_id", "is_read"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    ride_request_id = Column(String(36), ForeignKey("ride_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    receiver_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    is_read = Column(Boolean, nullable=False, default=False)

    ride_request = relationship("RideRequest", back_populates="messages")
