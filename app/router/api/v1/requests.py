"""
Ride request API: request a seat, accept / reject / cancel, archive.
"""
import logging

from fastapi import APIRouter, Depends, status

from app.core.dependencies import get_backend, get_current_user_id
from app.schema.ride_request import (
    RequestCreateBody,
    RequestListResponse,
    RequestStatusBody,
    RideRequestRow,
    ViewerRole,
)
from app.service.ride_backend import RideBackend

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=RequestListResponse)
async def list_requests(
    role: ViewerRole = ViewerRole.PASSENGER,
    user_id: str = Depends(get_current_user_id),
    backend: RideBackend = Depends(get_backend),
):
    """Requests as the driver dashboard or the passenger's trips page shows them."""
    if role is ViewerRole.DRIVER:
        _, items = await backend.list_driver_requests(user_id)
    else:
        items = await backend.list_passenger_requests(user_id)
    return RequestListResponse(items=items, total=len(items))


@router.post("", response_model=RideRequestRow, status_code=status.HTTP_201_CREATED)
async def create_request(
    body: RequestCreateBody,
    user_id: str = Depends(get_current_user_id),
    backend: RideBackend = Depends(get_backend),
):
    return await backend.create_request(body.ride_id, user_id)


@router.post("/{request_id}/status", response_model=RideRequestRow)
async def set_request_status(
    request_id: str,
    body: RequestStatusBody,
    user_id: str = Depends(get_current_user_id),
    backend: RideBackend = Depends(get_backend),
):
    """Driver: accepted / rejected. Passenger: cancelled."""
    return await backend.set_request_status(request_id, body.status, user_id)


@router.post("/{request_id}/hide", response_model=RideRequestRow)
async def hide_request(
    request_id: str,
    user_id: str = Depends(get_current_user_id),
    backend: RideBackend = Depends(get_backend),
):
    return await backend.hide_request(request_id, user_id)
