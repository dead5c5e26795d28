"""
Ride request CRUD.
"""
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy.orm import Session

from app.model.ride_request import RideRequest
from app.crud.base import CRUDBase


class CRUDRideRequest(CRUDBase[RideRequest, Dict[str, Any], Dict[str, Any]]):
    def get_open_for_passenger(
        self, db: Session, *, ride_id: str, passenger_id: str
    ) -> Optional[RideRequest]:
        """The passenger's non-cancelled request on this ride, if any."""
        return (
            db.query(self.model)
            .filter(
                self.model.ride_id == ride_id,
                self.model.passenger_id == passenger_id,
                self.model.status != "cancelled",
            )
            .first()
        )

    def list_for_driver(self, db: Session, *, ride_ids: Iterable[str]) -> List[RideRequest]:
        """Pending and accepted requests on the given rides that the driver has not archived."""
        ride_ids = list(ride_ids)
        if not ride_ids:
            return []
        return self.select(
            db,
            filters={
                "ride_id": ride_ids,
                "status": ("pending", "accepted"),
                "hidden_by_driver": False,
            },
            order_by=("-created_at",),
        )

    def list_for_passenger(self, db: Session, *, passenger_id: str) -> List[RideRequest]:
        return self.select(
            db,
            filters={"passenger_id": passenger_id, "hidden_by_passenger": False},
            order_by=("-created_at",),
        )


ride_request_crud = CRUDRideRequest(RideRequest)
