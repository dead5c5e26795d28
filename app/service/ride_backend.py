"""
Ride backend service.

The relational store as the realtime core sees it: ride requests, messages and
the unread aggregates, with row-level access rules. Every committed write is
re-emitted on the change broker so open views can reconcile.
"""
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Set, Tuple
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.database import SessionLocal
from app.core.exceptions import (
    AccessDenied,
    DuplicateRequest,
    EmptyMessage,
    InvalidTransition,
    NotFound,
    TransientNetworkFailure,
)
from app.crud import message_crud, profile_crud, ride_crud, ride_request_crud
from app.crud.base import RowChange
from app.model.profile import Profile
from app.model.ride_request import RideRequest
from app.realtime.broker import ChangeBroker, change_broker
from app.realtime.events import ChangeType
from app.schema.chat import MessageRow
from app.schema.ride_request import (
    ProfileSummary,
    RequestContext,
    RequestStatus,
    RequestView,
    RideRequestRow,
    RideSummary,
    ViewerRole,
)

logger = logging.getLogger(__name__)


def ensure_chat_access(context: RequestContext, user_id: Optional[str]) -> None:
    """A chat exists only between the two parties of an accepted request."""
    if not context.is_party(user_id):
        raise AccessDenied("You are not part of this ride request.")
    if context.request.status is not RequestStatus.ACCEPTED:
        raise AccessDenied("Chat opens once the driver accepts the request.")


def _profile(profile: Optional[Profile]) -> Optional[ProfileSummary]:
    return ProfileSummary.model_validate(profile) if profile else None


class RideBackend:
    """Async facade over the CRUD layer. Calls block briefly on the database."""

    def __init__(self, session_factory: sessionmaker, broker: ChangeBroker):
        self._session_factory = session_factory
        self.broker = broker

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Database call failed: %s", e)
            raise TransientNetworkFailure() from e
        finally:
            db.close()

    def _publish_updates(self, table: str, changes: List[RowChange]) -> None:
        for old, new in changes:
            self.broker.publish(table, ChangeType.UPDATE, new=new, old=old)

    def _context(self, db: Session, request: RideRequest) -> RequestContext:
        ride = request.ride
        profiles = profile_crud.get_many(db, ids=[ride.driver_id, request.passenger_id])
        return RequestContext(
            request=RideRequestRow.model_validate(request),
            ride=RideSummary.model_validate(ride),
            driver=_profile(profiles.get(ride.driver_id)),
            passenger=_profile(profiles.get(request.passenger_id)),
        )

    # --- Ride requests ---

    async def get_request_context(self, request_id: str) -> RequestContext:
        with self._session() as db:
            request = ride_request_crud.get(db, request_id)
            if not request:
                raise NotFound("Ride request")
            return self._context(db, request)

    async def get_request_view(self, request_id: str, viewer_id: str) -> Optional[RequestView]:
        """The request as viewer_id sees it, or None when they are not a party to it."""
        with self._session() as db:
            request = ride_request_crud.get(db, request_id)
            if not request:
                return None
            context = self._context(db, request)
        if viewer_id == context.driver_id:
            return context.view_for(ViewerRole.DRIVER)
        if viewer_id == context.passenger_id:
            return context.view_for(ViewerRole.PASSENGER)
        return None

    async def list_driver_requests(self, driver_id: str) -> Tuple[Set[str], List[RequestView]]:
        """Active ride ids of the driver, and the requests on them the driver still sees."""
        with self._session() as db:
            rides = {r.id: r for r in ride_crud.list_active_by_driver(db, driver_id=driver_id)}
            requests = ride_request_crud.list_for_driver(db, ride_ids=rides.keys())
            profiles = profile_crud.get_many(db, ids=[r.passenger_id for r in requests])
            views = [
                RequestView(
                    **RideRequestRow.model_validate(r).model_dump(),
                    ride=RideSummary.model_validate(rides[r.ride_id]),
                    counterpart=_profile(profiles.get(r.passenger_id)),
                )
                for r in requests
            ]
        return set(rides), views

    async def list_passenger_requests(self, passenger_id: str) -> List[RequestView]:
        with self._session() as db:
            requests = ride_request_crud.list_for_passenger(db, passenger_id=passenger_id)
            rides = ride_crud.get_many(db, ids=[r.ride_id for r in requests])
            profiles = profile_crud.get_many(db, ids=[ride.driver_id for ride in rides.values()])
            return [
                RequestView(
                    **RideRequestRow.model_validate(r).model_dump(),
                    ride=RideSummary.model_validate(rides[r.ride_id]),
                    counterpart=_profile(profiles.get(rides[r.ride_id].driver_id)),
                )
                for r in requests
            ]

    async def create_request(self, ride_id: str, passenger_id: str) -> RideRequestRow:
        with self._session() as db:
            ride = ride_crud.get(db, ride_id)
            if not ride:
                raise NotFound("Ride")
            if ride.driver_id == passenger_id:
                raise InvalidTransition("You cannot request a seat on your own ride.")
            if ride.status != "active" or (ride.available_seats or 0) <= 0:
                raise InvalidTransition("This ride is no longer taking requests.")
            if ride_request_crud.get_open_for_passenger(db, ride_id=ride_id, passenger_id=passenger_id):
                raise DuplicateRequest()
            try:
                row = ride_request_crud.insert(
                    db,
                    row={"ride_id": ride_id, "passenger_id": passenger_id, "status": RequestStatus.PENDING.value},
                )
            except IntegrityError:
                db.rollback()
                raise DuplicateRequest()
        logger.info(f"Ride request {row['id']} created for ride {ride_id}")
        self.broker.publish("ride_requests", ChangeType.INSERT, new=row)
        return RideRequestRow.model_validate(row)

    async def set_request_status(
        self, request_id: str, status: RequestStatus, actor_id: str
    ) -> RideRequestRow:
        """Accept/reject (driver, from pending) or cancel (passenger, from pending or accepted)."""
        status = RequestStatus(status)
        with self._session() as db:
            request = ride_request_crud.get(db, request_id)
            if not request:
                raise NotFound("Ride request")
            current = RequestStatus(request.status)
            if status in (RequestStatus.ACCEPTED, RequestStatus.REJECTED):
                if actor_id != request.ride.driver_id:
                    raise AccessDenied("Only the driver can accept or reject a request.")
                if current is not RequestStatus.PENDING:
                    raise InvalidTransition(f"Request is already {current.value}.")
            elif status is RequestStatus.CANCELLED:
                if actor_id != request.passenger_id:
                    raise AccessDenied("Only the passenger can cancel a request.")
                if current not in (RequestStatus.PENDING, RequestStatus.ACCEPTED):
                    raise InvalidTransition(f"Request is already {current.value}.")
            else:
                raise InvalidTransition("Requests cannot go back to pending.")
            changes = ride_request_crud.update_where(
                db,
                filters={"id": request_id, "status": current.value},
                patch={"status": status.value},
            )
            if not changes:
                raise InvalidTransition("Request changed in the meantime. Refresh and try again.")
        logger.info(f"Ride request {request_id}: {current.value} -> {status.value}")
        self._publish_updates("ride_requests", changes)
        return RideRequestRow.model_validate(changes[0][1])

    async def hide_request(self, request_id: str, actor_id: str) -> RideRequestRow:
        """Archive a resolved request for one party. Hidden flags are never cleared."""
        with self._session() as db:
            request = ride_request_crud.get(db, request_id)
            if not request:
                raise NotFound("Ride request")
            if actor_id == request.ride.driver_id:
                field = "hidden_by_driver"
            elif actor_id == request.passenger_id:
                field = "hidden_by_passenger"
            else:
                raise AccessDenied()
            if request.status == RequestStatus.PENDING.value:
                raise InvalidTransition("Only resolved requests can be archived.")
            if getattr(request, field):
                return RideRequestRow.model_validate(request)
            changes = ride_request_crud.update_where(db, filters={"id": request_id}, patch={field: True})
        self._publish_updates("ride_requests", changes)
        return RideRequestRow.model_validate(changes[0][1])

    # --- Messages ---

    async def list_messages(self, request_id: str) -> List[MessageRow]:
        with self._session() as db:
            return [MessageRow.model_validate(m) for m in message_crud.list_by_request(db, request_id=request_id)]

    async def insert_message(self, request_id: str, sender_id: str, content: str) -> MessageRow:
        content = (content or "").strip()
        if not content:
            raise EmptyMessage()
        with self._session() as db:
            request = ride_request_crud.get(db, request_id)
            if not request:
                raise NotFound("Ride request")
            context = self._context(db, request)
            ensure_chat_access(context, sender_id)
            row = message_crud.insert(
                db,
                row={
                    "ride_request_id": request_id,
                    "sender_id": sender_id,
                    "receiver_id": context.counterpart_id(sender_id),
                    "content": content,
                },
            )
        self.broker.publish("messages", ChangeType.INSERT, new=row)
        return MessageRow.model_validate(row)

    async def mark_read(self, request_id: str, receiver_id: str) -> List[MessageRow]:
        """Flip is_read for the receiver's unread messages. Returns exactly the rows changed."""
        with self._session() as db:
            changes = message_crud.mark_read(db, request_id=request_id, receiver_id=receiver_id)
        if changes:
            logger.debug("Marked %d messages read in %s", len(changes), request_id)
        self._publish_updates("messages", changes)
        return [MessageRow.model_validate(new) for _, new in changes]

    async def count_unread_by_request(self, user_id: str) -> Dict[str, int]:
        """Unread messages addressed to user_id, per ride request."""
        with self._session() as db:
            return message_crud.unread_by_request(db, receiver_id=user_id)

    async def count_unread(self, user_id: str) -> int:
        return sum((await self.count_unread_by_request(user_id)).values())


ride_backend = RideBackend(SessionLocal, change_broker)
