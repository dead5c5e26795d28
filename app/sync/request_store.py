"""
Request lifecycle store.

Holds the ride requests one viewer (a driver or a passenger) currently sees and
keeps them in step with the change feed. Status changes made through the store
are two-phase: a provisional transition is applied at once together with an
undo entry, then confirmed or reverted when the backend answers. A full
refresh replaces the collection with whatever the last read returned and
re-applies the transitions still in flight.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Coroutine, Dict, FrozenSet, List, Optional, Set

from app.core.exceptions import InvalidTransition, NotFound
from app.realtime.events import ChangeEvent
from app.schema.ride_request import RequestStatus, RequestView, RideRequestRow, ViewerRole
from app.service.ride_backend import RideBackend
from app.sync.feed import ChangeFeedClient, SubscriptionHandle, SubscriptionStatus
from app.sync.soft_remove import SoftRemovePolicy
from app.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

DRIVER_VISIBLE: FrozenSet[RequestStatus] = frozenset({RequestStatus.PENDING, RequestStatus.ACCEPTED})

# role -> target status -> statuses it may be reached from
ALLOWED_TRANSITIONS: Dict[ViewerRole, Dict[RequestStatus, FrozenSet[RequestStatus]]] = {
    ViewerRole.DRIVER: {
        RequestStatus.ACCEPTED: frozenset({RequestStatus.PENDING}),
        RequestStatus.REJECTED: frozenset({RequestStatus.PENDING}),
    },
    ViewerRole.PASSENGER: {
        RequestStatus.CANCELLED: frozenset({RequestStatus.PENDING, RequestStatus.ACCEPTED}),
    },
}

StoreListener = Callable[["RequestLifecycleStore"], None]


class PendingTransition:
    """Undo entry for one provisional status change."""

    INFLIGHT = "inflight"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"

    def __init__(self, seq: int, request_id: str, new_status: RequestStatus, server_view: RequestView):
        self.seq = seq
        self.request_id = request_id
        self.new_status = new_status
        # last state the server is known to hold; restored on revert
        self.server_view = server_view
        self.state = self.INFLIGHT

    @property
    def prior_status(self) -> RequestStatus:
        return self.server_view.status

    def __repr__(self) -> str:
        return f"<PendingTransition {self.request_id} -> {self.new_status.value} {self.state}>"


def _merged(view: RequestView, row: RideRequestRow) -> RequestView:
    return view.model_copy(update=row.model_dump())


class RequestLifecycleStore:
    def __init__(
        self,
        backend: RideBackend,
        feed: ChangeFeedClient,
        user_id: str,
        role: ViewerRole,
        *,
        policy: Optional[SoftRemovePolicy] = None,
    ) -> None:
        self._backend = backend
        self._feed = feed
        self.user_id = user_id
        self.role = ViewerRole(role)
        self._policy = policy or SoftRemovePolicy()

        self._items: Dict[str, RequestView] = {}
        self._ride_ids: Set[str] = set()
        self._inflight: Dict[str, PendingTransition] = {}
        self._refresh_watch: List[List[PendingTransition]] = []
        self._transition_seq = 0
        self._refresh_started = 0
        self._refresh_applied = 0
        # newest broker sequence already reflected in a refresh read
        self._synced_seq = 0
        self._fetching: Set[str] = set()
        self._handles: List[SubscriptionHandle] = []
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[StoreListener] = []
        self.live = False
        self.closed = False

    # --- Lifecycle ---

    async def open(self) -> "RequestLifecycleStore":
        """Subscribe first, then read, so nothing committed in between is missed."""
        if self.role is ViewerRole.DRIVER:
            await self._subscribe("ride_requests", None, self._on_request_event)
            await self._subscribe("rides", f"driver_id=eq.{self.user_id}", self._on_ride_event)
        else:
            await self._subscribe("ride_requests", f"passenger_id=eq.{self.user_id}", self._on_request_event)
        self.live = all(h.live for h in self._handles)
        await self.refresh_all()
        return self

    async def _subscribe(self, table: str, filter: Optional[str], on_event) -> None:
        handle = await self._feed.subscribe(
            table,
            filter,
            on_event,
            events=("insert", "update"),
            on_status=self._on_feed_status,
        )
        self._handles.append(handle)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.live = False
        for handle in self._handles:
            self._feed.unsubscribe(handle)
        self._handles.clear()
        self._policy.discard_all(self)
        self._listeners.clear()
        logger.debug("Closed %s request store for %s", self.role.value, self.user_id)

    async def __aenter__(self) -> "RequestLifecycleStore":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        self.close()

    # --- Views ---

    @property
    def items(self) -> List[RequestView]:
        return sorted(self._items.values(), key=lambda v: (v.created_at, v.id), reverse=True)

    def get(self, request_id: str) -> Optional[RequestView]:
        return self._items.get(request_id)

    def pending(self) -> List[RequestView]:
        return [v for v in self.items if v.status is RequestStatus.PENDING]

    def accepted(self) -> List[RequestView]:
        return [v for v in self.items if v.status is RequestStatus.ACCEPTED]

    def upcoming(self, now: Optional[datetime] = None) -> List[RequestView]:
        """Requests whose ride still lies ahead and that were not cancelled."""
        now = now or utcnow()
        return [
            v for v in self.items
            if v.status is not RequestStatus.CANCELLED and v.ride is not None and v.ride.departure_time >= now
        ]

    def history(self, now: Optional[datetime] = None) -> List[RequestView]:
        upcoming = {v.id for v in self.upcoming(now)}
        return [v for v in self.items if v.id not in upcoming]

    def chat_available(self, request_id: str) -> bool:
        view = self._items.get(request_id)
        return view is not None and view.status is RequestStatus.ACCEPTED

    def is_in_flight(self, request_id: str) -> bool:
        return request_id in self._inflight

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Request store listener failed")

    # --- Optimistic transitions ---

    def apply_optimistic(self, request_id: str, new_status: RequestStatus) -> PendingTransition:
        """Apply a provisional status change and return its undo entry."""
        new_status = RequestStatus(new_status)
        allowed_from = ALLOWED_TRANSITIONS[self.role].get(new_status)
        if allowed_from is None:
            raise InvalidTransition(f"A {self.role.value} cannot set a request to {new_status.value}.")
        current = self._items.get(request_id)
        if current is None:
            raise NotFound("Ride request")
        if request_id in self._inflight:
            raise InvalidTransition("A change to this request is already in progress.")
        if current.status not in allowed_from:
            raise InvalidTransition(f"Request is already {current.status.value}.")

        self._transition_seq += 1
        entry = PendingTransition(
            self._transition_seq, request_id, new_status, current.model_copy(update={"pending_removal": False})
        )
        self._inflight[request_id] = entry
        for watch in self._refresh_watch:
            watch.append(entry)
        self._apply(entry)
        self._notify()
        return entry

    def confirm(self, entry: PendingTransition, row: Optional[RideRequestRow] = None) -> None:
        if entry.state != PendingTransition.INFLIGHT:
            return
        entry.state = PendingTransition.CONFIRMED
        if self._inflight.get(entry.request_id) is entry:
            del self._inflight[entry.request_id]
        if row is not None:
            entry.server_view = _merged(entry.server_view, row)
            if not self.closed:
                self._absorb(row)

    def revert(self, entry: PendingTransition) -> None:
        if entry.state != PendingTransition.INFLIGHT:
            return
        entry.state = PendingTransition.REVERTED
        if self._inflight.get(entry.request_id) is entry:
            del self._inflight[entry.request_id]
        if self.closed:
            return
        restored = entry.server_view
        if restored.hidden_for(self.role) or not self._visible(restored):
            self._items.pop(entry.request_id, None)
        else:
            self._items[entry.request_id] = restored
        logger.warning(
            "Reverted %s on request %s back to %s",
            entry.new_status.value, entry.request_id, restored.status.value,
        )
        self._notify()

    async def transition(self, request_id: str, new_status: RequestStatus) -> RideRequestRow:
        """Provisional change, backend write, then confirm or revert. Errors are re-raised."""
        entry = self.apply_optimistic(request_id, new_status)
        try:
            row = await self._backend.set_request_status(request_id, entry.new_status, self.user_id)
        except Exception:
            self.revert(entry)
            raise
        self.confirm(entry, row)
        return row

    async def hide(self, request_id: str) -> RideRequestRow:
        """Archive a resolved request: leave the list now, persist the hidden flag."""
        current = self._items.get(request_id)
        if current is None:
            raise NotFound("Ride request")
        if current.status is RequestStatus.PENDING:
            raise InvalidTransition("Only resolved requests can be archived.")
        self._policy.soft_remove(self, request_id)
        try:
            return await self._backend.hide_request(request_id, self.user_id)
        except Exception:
            if not self.closed and not self._policy.cancel(self, request_id):
                if request_id not in self._items:
                    self._items[request_id] = current.model_copy(update={"pending_removal": False})
                    self._notify()
            raise

    def _apply(self, entry: PendingTransition) -> None:
        current = self._items.get(entry.request_id)
        if current is None:
            return
        updated = current.model_copy(update={"status": entry.new_status})
        if self._visible(updated):
            self._items[entry.request_id] = updated
        else:
            self._items.pop(entry.request_id, None)

    # --- Remote changes ---

    def _visible(self, row: RideRequestRow) -> bool:
        if self.role is ViewerRole.DRIVER:
            return row.status in DRIVER_VISIBLE
        return True

    def _concerns_me(self, row: RideRequestRow) -> bool:
        if self.role is ViewerRole.DRIVER:
            return row.ride_id in self._ride_ids
        return row.passenger_id == self.user_id

    def _absorb(self, row: RideRequestRow) -> None:
        current = self._items.get(row.id)
        if current is None:
            return
        if not self._visible(row):
            self._items.pop(row.id)
            self._notify()
            return
        merged = _merged(current, row)
        if merged != current:
            self._items[row.id] = merged
            self._notify()

    def reconcile(self, event: ChangeEvent) -> None:
        """Fold one remote change into the collection. Safe to call twice with the same event."""
        if self.closed or event.table != "ride_requests" or event.new is None:
            return
        if event.seq and event.seq <= self._synced_seq:
            logger.debug("Change %s already reflected by the last refresh", event.seq)
            return
        row = RideRequestRow.model_validate(event.new)
        if not self._concerns_me(row):
            return

        entry = self._inflight.get(row.id)
        if entry is not None:
            entry.server_view = _merged(entry.server_view, row)
            if row.status is not entry.new_status:
                # keep showing the provisional status until the backend answers
                row = row.model_copy(update={"status": entry.new_status})

        current = self._items.get(row.id)
        if row.hidden_for(self.role):
            if current is not None:
                self._items[row.id] = _merged(current, row)
                self._policy.soft_remove(self, row.id)
                self._notify()
            return
        if current is not None and current.pending_removal:
            self._policy.cancel(self, row.id)
            current = self._items.get(row.id)

        if not self._visible(row):
            if current is not None:
                self._policy.cancel(self, row.id)
                self._items.pop(row.id, None)
                logger.debug("Request %s left the %s view as %s", row.id, self.role.value, row.status.value)
                self._notify()
            return
        if current is None:
            self._fetch_view(row.id)
            return
        merged = _merged(current, row)
        if merged != current:
            self._items[row.id] = merged
            self._notify()

    def _on_request_event(self, event: ChangeEvent) -> None:
        self.reconcile(event)

    def _on_ride_event(self, event: ChangeEvent) -> None:
        if self.closed or event.new is None:
            return
        ride_id = str(event.new["id"])
        if event.new.get("status", "active") == "active":
            self._ride_ids.add(ride_id)
            return
        self._ride_ids.discard(ride_id)
        dropped = [rid for rid, v in self._items.items() if v.ride_id == ride_id]
        for request_id in dropped:
            self._policy.cancel(self, request_id)
            self._items.pop(request_id, None)
        if dropped:
            logger.info("Ride %s is no longer active; dropped %d requests", ride_id, len(dropped))
            self._notify()

    def _on_feed_status(self, handle: SubscriptionHandle, status: SubscriptionStatus) -> None:
        if self.closed:
            return
        if status is SubscriptionStatus.RESUBSCRIBED:
            self.live = all(h.live for h in self._handles)
            self._spawn(self.refresh_all())
        elif status is SubscriptionStatus.FAILED:
            self.live = False
            self._notify()

    def _fetch_view(self, request_id: str) -> None:
        if request_id in self._fetching:
            return
        self._fetching.add(request_id)
        self._spawn(self._load_view(request_id))

    async def _load_view(self, request_id: str) -> None:
        try:
            view = await self._backend.get_request_view(request_id, self.user_id)
        finally:
            self._fetching.discard(request_id)
        if self.closed or view is None or request_id in self._inflight:
            return
        if view.hidden_for(self.role) or not self._visible(view):
            return
        self._items[request_id] = view
        self._notify()

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background request store task failed: %s", error, exc_info=error)

    # --- RemovableCollection ---

    def mark_pending_removal(self, item_id: str) -> bool:
        view = self._items.get(item_id)
        if view is None:
            return False
        self._items[item_id] = view.model_copy(update={"pending_removal": True})
        self._notify()
        return True

    def clear_pending_removal(self, item_id: str) -> bool:
        view = self._items.get(item_id)
        if view is None:
            return False
        self._items[item_id] = view.model_copy(update={"pending_removal": False})
        self._notify()
        return True

    def remove(self, item_id: str) -> bool:
        if self._items.pop(item_id, None) is None:
            return False
        logger.debug("Request %s removed from the %s view", item_id, self.role.value)
        self._notify()
        return True

    # --- Refresh ---

    async def refresh_all(self) -> bool:
        """
        Replace the collection with a fresh read. When two refreshes overlap, the
        one that started last wins; an older read finishing later is dropped.
        Transitions in flight, and those issued while the read was out, are
        re-applied on top. Returns False when the read was discarded.
        """
        self._refresh_started += 1
        generation = self._refresh_started
        watch: List[PendingTransition] = []
        self._refresh_watch.append(watch)
        as_of = self._backend.broker.last_seq
        try:
            if self.role is ViewerRole.DRIVER:
                ride_ids, views = await self._backend.list_driver_requests(self.user_id)
            else:
                ride_ids, views = None, await self._backend.list_passenger_requests(self.user_id)
        finally:
            self._refresh_watch.remove(watch)
        if self.closed or generation < self._refresh_applied:
            logger.debug("Discarding stale refresh %d", generation)
            return False
        self._refresh_applied = generation
        self._synced_seq = max(self._synced_seq, as_of)

        self._policy.discard_all(self)
        self._items = {v.id: v for v in views}
        if ride_ids is not None:
            self._ride_ids = set(ride_ids)

        reapply: Dict[str, PendingTransition] = {
            e.request_id: e for e in watch if e.state != PendingTransition.REVERTED
        }
        reapply.update(self._inflight)
        for entry in sorted(reapply.values(), key=lambda e: e.seq):
            fresh = self._items.get(entry.request_id)
            if fresh is not None and entry.state == PendingTransition.INFLIGHT:
                entry.server_view = fresh
            self._apply(entry)
        logger.debug("Refreshed %s view of %s: %d requests", self.role.value, self.user_id, len(self._items))
        self._notify()
        return True
