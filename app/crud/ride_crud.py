"""
Ride and profile CRUD. Ride posting lives elsewhere; these are read helpers
used to denormalize request views.
"""
from typing import Any, Dict, Iterable, List
from sqlalchemy.orm import Session

from app.model.profile import Profile
from app.model.ride import Ride
from app.crud.base import CRUDBase


class CRUDRide(CRUDBase[Ride, Dict[str, Any], Dict[str, Any]]):
    def list_active_by_driver(self, db: Session, *, driver_id: str) -> List[Ride]:
        return self.select(
            db,
            filters={"driver_id": driver_id, "status": "active"},
            order_by=("departure_time",),
        )

    def get_many(self, db: Session, *, ids: Iterable[str]) -> Dict[str, Ride]:
        ids = list(set(ids))
        if not ids:
            return {}
        return {ride.id: ride for ride in self.select(db, filters={"id": ids})}


class CRUDProfile(CRUDBase[Profile, Dict[str, Any], Dict[str, Any]]):
    def get_many(self, db: Session, *, ids: Iterable[str]) -> Dict[str, Profile]:
        ids = [i for i in set(ids) if i]
        if not ids:
            return {}
        return {p.id: p for p in self.select(db, filters={"id": ids})}


ride_crud = CRUDRide(Ride)
profile_crud = CRUDProfile(Profile)
