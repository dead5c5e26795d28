from app.crud.ride_crud import ride_crud, profile_crud
from app.crud.ride_request_crud import ride_request_crud
from app.crud.message_crud import message_crud

__all__ = [
    "ride_crud",
    "profile_crud",
    "ride_request_crud",
    "message_crud",
]
