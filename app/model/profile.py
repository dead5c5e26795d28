"""
Profile model. Public display data for drivers and passengers.
"""
from sqlalchemy import Column, String, DateTime
import uuid
from app.core.database import Base
from app.utils.timestamps import utcnow


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    full_name = Column(String, nullable=True)
    university_name = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
