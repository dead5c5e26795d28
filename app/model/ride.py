"""
Ride model. A driver-posted commute offer.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
import uuid
from app.core.database import Base
from app.utils.timestamps import utcnow


class Ride(Base):
    __tablename__ = "rides"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    driver_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    origin_location = Column(String, nullable=False)
    destination_university = Column(String, nullable=False)
    departure_time = Column(DateTime(timezone=True), nullable=False)
    return_time = Column(DateTime(timezone=True), nullable=True)
    available_seats = Column(Integer, nullable=False, default=1)
    recurrence_pattern = Column(String, nullable=False, default="One-off")
    status = Column(String, nullable=False, default="active")  # active | cancelled
    created_at = Column(DateTime(timezone=True), default=utcnow)

    driver = relationship("Profile", foreign_keys=[driver_id])
    requests = relationship("RideRequest", back_populates="ride", cascade="all, delete-orphan")
