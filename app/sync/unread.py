"""
Unread message counter for the signed-in user.

The count is kept live from ``messages`` inserts addressed to the user and is
periodically overwritten by an authoritative recount. Each message id is
tracked in a bounded cache so a duplicated event never counts twice, and a
message that an earlier recount already included is never counted again.
"""
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from app.core.config import settings
from app.core.exceptions import TransientNetworkFailure
from app.realtime.events import ChangeEvent, ChangeType
from app.schema.chat import MessageRow
from app.service.ride_backend import RideBackend
from app.sync.feed import ChangeFeedClient, SubscriptionHandle, SubscriptionStatus
from app.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

UNREAD = "unread"
READ = "read"

CounterListener = Callable[["UnreadCounter"], None]


class UnreadCounter:
    def __init__(
        self,
        backend: RideBackend,
        feed: ChangeFeedClient,
        user_id: str,
        *,
        recount_interval: Optional[float] = None,
        seen_cache_size: Optional[int] = None,
    ) -> None:
        self._backend = backend
        self._feed = feed
        self.user_id = user_id
        self.recount_interval = (
            settings.UNREAD_RECOUNT_INTERVAL_SECONDS if recount_interval is None else recount_interval
        )
        self._seen_limit = settings.SEEN_MESSAGE_CACHE_SIZE if seen_cache_size is None else seen_cache_size

        self._by_request: Dict[str, int] = {}
        self._seen: "OrderedDict[str, str]" = OrderedDict()
        # read time of the last recount; messages created before it are in the count
        self._baseline_at: Optional[datetime] = None
        # broker seq as of the last recount read; older events are already in the count
        self._synced_seq = 0
        self._recount_epoch = 0
        self._recount_started = 0
        self._recount_applied = 0
        self._recount_watch: List[List[MessageRow]] = []
        self._handle: Optional[SubscriptionHandle] = None
        self._periodic: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[CounterListener] = []
        self.live = False
        self.closed = False

    @property
    def total(self) -> int:
        return sum(self._by_request.values())

    @property
    def by_request(self) -> Dict[str, int]:
        return dict(self._by_request)

    def count_for(self, request_id: str) -> int:
        return self._by_request.get(request_id, 0)

    def add_listener(self, listener: CounterListener) -> Callable[[], None]:
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
                logger.exception("Unread listener failed")

    # --- Lifecycle ---

    async def start(self) -> "UnreadCounter":
        """Reset to zero, subscribe, then run the first recount."""
        self._by_request = {}
        self._seen.clear()
        self._baseline_at = None
        self._synced_seq = 0
        self._handle = await self._feed.subscribe(
            "messages",
            f"receiver_id=eq.{self.user_id}",
            self.reconcile,
            events=("insert", "update"),
            on_status=self._on_feed_status,
        )
        self.live = self._handle.live
        await self.recount()
        if self.recount_interval > 0 and not self.closed:
            self._periodic = asyncio.create_task(self._recount_forever(), name=f"unread:{self.user_id}")
        return self

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.live = False
        if self._handle is not None:
            self._feed.unsubscribe(self._handle)
            self._handle = None
        if self._periodic is not None:
            self._periodic.cancel()
            self._periodic = None
        self._listeners.clear()

    # --- Counting ---

    def _remember(self, message_id: str, state: str) -> None:
        self._seen[message_id] = state
        self._seen.move_to_end(message_id)
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)

    def _in_baseline(self, row: MessageRow) -> bool:
        return self._baseline_at is not None and row.created_at <= self._baseline_at

    def _add(self, request_id: str, delta: int) -> None:
        count = max(0, self._by_request.get(request_id, 0) + delta)
        if count:
            self._by_request[request_id] = count
        else:
            self._by_request.pop(request_id, None)

    def increment(self, row: MessageRow) -> bool:
        """Count a newly inserted message. Returns False when it was ignored."""
        if self.closed or row.receiver_id != self.user_id or row.is_read:
            return False
        if row.id in self._seen:
            logger.debug("Duplicate insert for message %s ignored", row.id)
            return False
        self._remember(row.id, UNREAD)
        if self._in_baseline(row):
            return False
        self._add(row.ride_request_id, 1)
        for watch in self._recount_watch:
            watch.append(row)
        self._notify()
        return True

    def _settle(self, row: MessageRow) -> bool:
        """Record that a message is read; decrement only if it was in the count."""
        state = self._seen.get(row.id)
        self._remember(row.id, READ)
        if state == READ:
            return False
        if state is None and not self._in_baseline(row):
            return False
        self._add(row.ride_request_id, -1)
        return True

    def reconcile(self, event: ChangeEvent) -> None:
        if self.closed or event.new is None:
            return
        if event.seq and event.seq <= self._synced_seq:
            logger.debug("Message event %d predates the last recount", event.seq)
            return
        row = MessageRow.model_validate(event.new)
        if event.type is ChangeType.INSERT:
            self.increment(row)
        elif event.type is ChangeType.UPDATE:
            was_read = bool((event.old or {}).get("is_read", False))
            if row.is_read and not was_read and self._settle(row):
                self._notify()

    async def mark_read(self, request_id: str) -> int:
        """Mark the request's messages read on the backend and settle the count."""
        epoch = self._recount_epoch
        rows = await self._backend.mark_read(request_id, self.user_id)
        if self.closed or not rows:
            return len(rows)
        if epoch != self._recount_epoch:
            # a recount landed meanwhile and may or may not include these writes
            for row in rows:
                self._remember(row.id, READ)
            self._spawn(self.recount())
            return len(rows)
        changed = False
        for row in rows:
            changed = self._settle(row) or changed
        if changed:
            self._notify()
        return len(rows)

    async def recount(self) -> int:
        """Overwrite the counts with the backend's. The newest-started recount wins."""
        self._recount_started += 1
        generation = self._recount_started
        watch: List[MessageRow] = []
        self._recount_watch.append(watch)
        synced_seq = self._backend.broker.last_seq
        read_at = utcnow()
        try:
            summary = await self._backend.count_unread_by_request(self.user_id)
        finally:
            self._recount_watch.remove(watch)
        if self.closed or generation < self._recount_applied:
            return self.total
        self._recount_applied = generation
        self._by_request = {request_id: n for request_id, n in summary.items() if n > 0}
        for row in watch:
            if row.created_at > read_at and self._seen.get(row.id) == UNREAD:
                self._add(row.ride_request_id, 1)
        self._baseline_at = read_at
        self._synced_seq = max(self._synced_seq, synced_seq)
        self._recount_epoch += 1
        logger.debug("Unread recount for %s: %d", self.user_id, self.total)
        self._notify()
        return self.total

    async def _recount_forever(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.recount_interval)
            if self.closed:
                return
            try:
                await self.recount()
            except TransientNetworkFailure as e:
                logger.warning("Periodic unread recount failed: %s", e)

    def _on_feed_status(self, handle: SubscriptionHandle, status: SubscriptionStatus) -> None:
        if self.closed:
            return
        if status is SubscriptionStatus.RESUBSCRIBED:
            self.live = True
            self._spawn(self.recount())
        elif status is SubscriptionStatus.FAILED:
            self.live = False
            self._notify()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background unread task failed: %s", error, exc_info=error)
