"""
Ride request schemas: rows, denormalized views and request bodies.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from app.utils.timestamps import as_utc


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ViewerRole(str, Enum):
    DRIVER = "driver"
    PASSENGER = "passenger"


class ProfileSummary(BaseModel):
    """Display data of the other party."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    full_name: Optional[str] = None
    university_name: Optional[str] = None
    phone_number: Optional[str] = None
    avatar_url: Optional[str] = None


class RideSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    driver_id: str
    origin_location: str
    destination_university: str
    departure_time: datetime
    status: str = "active"

    @field_validator("departure_time")
    @classmethod
    def normalize_departure_time(cls, value: datetime) -> datetime:
        return as_utc(value)


class RideRequestRow(BaseModel):
    """Columns of ride_requests, as stored and as carried by change events."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    ride_id: str
    passenger_id: str
    status: RequestStatus
    created_at: datetime
    hidden_by_driver: bool = False
    hidden_by_passenger: bool = False

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    def hidden_for(self, role: ViewerRole) -> bool:
        if role is ViewerRole.DRIVER:
            return self.hidden_by_driver
        return self.hidden_by_passenger


class RequestView(RideRequestRow):
    """A request as one party sees it: ride summary, counterpart profile, UI flags."""
    ride: Optional[RideSummary] = None
    counterpart: Optional[ProfileSummary] = None
    pending_removal: bool = False


class RequestContext(BaseModel):
    """Everything needed to decide who may act on a request."""
    request: RideRequestRow
    ride: RideSummary
    driver: Optional[ProfileSummary] = None
    passenger: Optional[ProfileSummary] = None

    @property
    def driver_id(self) -> str:
        return self.ride.driver_id

    @property
    def passenger_id(self) -> str:
        return self.request.passenger_id

    def is_party(self, user_id: Optional[str]) -> bool:
        return user_id is not None and user_id in (self.driver_id, self.passenger_id)

    def counterpart_id(self, user_id: str) -> str:
        return self.passenger_id if user_id == self.driver_id else self.driver_id

    def view_for(self, role: ViewerRole) -> RequestView:
        counterpart = self.passenger if role is ViewerRole.DRIVER else self.driver
        return RequestView(
            **self.request.model_dump(),
            ride=self.ride,
            counterpart=counterpart,
        )


# --- Bodies / responses ---

class RequestCreateBody(BaseModel):
    """Body for POST /requests."""
    ride_id: str


class RequestStatusBody(BaseModel):
    """Body for POST /requests/{request_id}/status."""
    status: RequestStatus


class RequestListResponse(BaseModel):
    items: List[RequestView]
    total: int
