"""
Ride request model. A passenger's bid for a seat on a ride.
"""
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import relationship
import uuid
from app.core.database import Base
from app.utils.timestamps import utcnow


class RideRequest(Base):
    __tablename__ = "ride_requests"
    __table_args__ = (
        # At most one non-cancelled request per (ride, passenger).
        Index(
            "uq_ride_requests_open",
            "ride_id",
            "passenger_id",
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    ride_id = Column(String(36), ForeignKey("rides.id", ondelete="CASCADE"), nullable=False, index=True)
    passenger_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String, nullable=False, default="pending")  # pending | accepted | rejected | cancelled
    created_at = Column(DateTime(timezone=True), default=utcnow)
    hidden_by_driver = Column(Boolean, nullable=False, default=False)
    hidden_by_passenger = Column(Boolean, nullable=False, default=False)

    ride = relationship("Ride", back_populates="requests")
    passenger = relationship("Profile", foreign_keys=[passenger_id])
    messages = relationship("Message", back_populates="ride_request", cascade="all, delete-orphan")
