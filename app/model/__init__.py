from app.model.profile import Profile
from app.model.ride import Ride
from app.model.ride_request import RideRequest
from app.model.message import Message

__all__ = ["Profile", "Ride", "RideRequest", "Message"]
