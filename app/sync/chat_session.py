"""
Chat session controller: one open chat window on an accepted ride request.

Sends are optimistic. The message shows up at once as a pending entry, then is
replaced by the stored row, whichever of the send response and the change
feed delivers it first. Incoming messages are de-duplicated by id and kept
ordered by (created_at, id). Messages addressed to the viewer are marked read
in batches while the window has focus.
"""
import asyncio
import bisect
import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from app.core.config import settings
from app.core.exceptions import AccessDenied, NotAuthenticated, NotFound, TransientNetworkFailure
from app.realtime.events import ChangeEvent, ChangeType
from app.schema.chat import ChatEntry, FailedSend, MessageRow
from app.schema.ride_request import RequestContext, RequestStatus, RideRequestRow
from app.service.ride_backend import RideBackend, ensure_chat_access
from app.sync.feed import ChangeFeedClient, SubscriptionHandle, SubscriptionStatus
from app.sync.unread import UnreadCounter
from app.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp-"

ChatListener = Callable[["ChatSessionController"], None]


class ChatState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    CLOSED = "closed"


def _order(entry: ChatEntry):
    return (entry.created_at, entry.id)


class ChatSessionController:
    def __init__(
        self,
        backend: RideBackend,
        feed: ChangeFeedClient,
        request_id: str,
        user_id: Optional[str],
        *,
        unread: Optional[UnreadCounter] = None,
        match_window: Optional[float] = None,
    ) -> None:
        self._backend = backend
        self._feed = feed
        self._unread = unread
        self.request_id = request_id
        self.user_id = user_id
        window = settings.OPTIMISTIC_MATCH_WINDOW_SECONDS if match_window is None else match_window
        self.match_window = timedelta(seconds=window)

        self.state = ChatState.IDLE
        self.context: Optional[RequestContext] = None
        self.focused = True
        self.revoked = False
        self.live = False
        self.failed: List[FailedSend] = []
        self.restored_draft: Optional[str] = None

        self._messages: List[ChatEntry] = []
        self._index: Dict[str, ChatEntry] = {}
        self._outbox: Dict[str, ChatEntry] = {}
        self._handles: List[SubscriptionHandle] = []
        self._mark_task: Optional[asyncio.Task] = None
        self._mark_again = False
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[ChatListener] = []

    @property
    def closed(self) -> bool:
        return self.state is ChatState.CLOSED

    @property
    def messages(self) -> List[ChatEntry]:
        return list(self._messages)

    @property
    def sending(self) -> bool:
        return bool(self._outbox)

    @property
    def unread_in_view(self) -> int:
        return sum(1 for m in self._messages if m.receiver_id == self.user_id and not m.is_read)

    def add_listener(self, listener: ChatListener) -> Callable[[], None]:
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
                logger.exception("Chat listener failed")

    # --- Lifecycle ---

    async def open(self) -> "ChatSessionController":
        """Check access, subscribe, load history and mark it read."""
        if self.state is not ChatState.IDLE:
            return self
        if not self.user_id:
            raise NotAuthenticated()
        self.state = ChatState.LOADING
        try:
            self.context = await self._backend.get_request_context(self.request_id)
            ensure_chat_access(self.context, self.user_id)
            self._handles.append(
                await self._feed.subscribe(
                    "messages",
                    f"ride_request_id=eq.{self.request_id}",
                    self._on_message_event,
                    events=("insert", "update"),
                    on_status=self._on_feed_status,
                )
            )
            self._handles.append(
                await self._feed.subscribe(
                    "ride_requests",
                    f"id=eq.{self.request_id}",
                    self._on_request_event,
                    events=("update",),
                    on_status=self._on_feed_status,
                )
            )
            self.live = all(h.live for h in self._handles)
            await self._load_history()
        except Exception:
            self.close()
            raise
        if self.closed:
            return self
        self.state = ChatState.READY
        logger.info("Chat %s opened for %s with %d messages", self.request_id, self.user_id, len(self._messages))
        self._schedule_mark_read()
        self._notify()
        return self

    def close(self) -> None:
        if self.closed:
            return
        self.state = ChatState.CLOSED
        self.live = False
        for handle in self._handles:
            self._feed.unsubscribe(handle)
        self._handles.clear()
        self._outbox.clear()
        self._notify()
        self._listeners.clear()
        logger.debug("Chat %s closed", self.request_id)

    async def __aenter__(self) -> "ChatSessionController":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        self.close()

    # --- Message list ---

    def _insert(self, entry: ChatEntry) -> bool:
        if entry.id in self._index:
            return False
        bisect.insort(self._messages, entry, key=_order)
        self._index[entry.id] = entry
        return True

    def _discard(self, message_id: str) -> None:
        entry = self._index.pop(message_id, None)
        if entry is not None:
            self._messages.remove(entry)

    def _replace(self, entry: ChatEntry) -> None:
        current = self._index[entry.id]
        self._messages[self._messages.index(current)] = entry
        self._index[entry.id] = entry

    def _match_outbox(self, row: MessageRow) -> Optional[ChatEntry]:
        if row.sender_id != self.user_id:
            return None
        for temp in sorted(self._outbox.values(), key=_order):
            if temp.content == row.content and abs(row.created_at - temp.created_at) <= self.match_window:
                return temp
        return None

    def _absorb(self, row: MessageRow) -> bool:
        """Add or update one stored message. Returns True when the list changed."""
        existing = self._index.get(row.id)
        if existing is not None:
            # read flags only ever go from false to true
            if row.is_read and not existing.is_read:
                self._replace(existing.model_copy(update={"is_read": True}))
                return True
            logger.debug("Duplicate message %s ignored", row.id)
            return False
        temp = self._match_outbox(row)
        if temp is not None:
            del self._outbox[temp.id]
            self._discard(temp.id)
        self._insert(ChatEntry(**row.model_dump()))
        return True

    async def _load_history(self) -> None:
        rows = await self._backend.list_messages(self.request_id)
        if self.closed:
            return
        changed = False
        for row in rows:
            changed = self._absorb(row) or changed
        if changed:
            self._notify()

    # --- Sending ---

    def _require_ready(self) -> None:
        if self.revoked:
            raise AccessDenied("This ride request is no longer accepted.")
        if self.state is not ChatState.READY:
            raise AccessDenied("Chat is not open.")

    async def send(self, text: str) -> Optional[MessageRow]:
        """Send a message. Whitespace-only text is ignored and returns None."""
        content = (text or "").strip()
        if not content:
            return None
        self._require_ready()
        temp = ChatEntry(
            id=f"{TEMP_PREFIX}{uuid.uuid4().hex}",
            ride_request_id=self.request_id,
            sender_id=self.user_id,
            receiver_id=self.context.counterpart_id(self.user_id),
            content=content,
            created_at=utcnow(),
            pending=True,
        )
        self._insert(temp)
        self._outbox[temp.id] = temp
        self.restored_draft = None
        self._notify()
        try:
            row = await self._backend.insert_message(self.request_id, self.user_id, content)
        except Exception as e:
            self._outbox.pop(temp.id, None)
            if not self.closed:
                self._discard(temp.id)
                self.failed.append(FailedSend(id=temp.id, content=content, error=str(e), failed_at=utcnow()))
                self.restored_draft = content
                logger.warning("Send in chat %s failed: %s", self.request_id, e)
                self._notify()
            raise
        if self._outbox.pop(temp.id, None) is not None and not self.closed:
            self._discard(temp.id)
            self._insert(ChatEntry(**row.model_dump()))
            self._notify()
        return row

    async def retry(self, failed_id: str) -> Optional[MessageRow]:
        failed = next((f for f in self.failed if f.id == failed_id), None)
        if failed is None:
            raise NotFound("Failed message")
        self.failed.remove(failed)
        return await self.send(failed.content)

    def dismiss_failed(self, failed_id: str) -> None:
        self.failed = [f for f in self.failed if f.id != failed_id]
        self._notify()

    # --- Read receipts ---

    def focus(self, visible: bool) -> None:
        self.focused = visible
        if visible and self.state is ChatState.READY and self.unread_in_view:
            self._schedule_mark_read()

    def _schedule_mark_read(self) -> None:
        if self.closed or not self.focused:
            return
        if self._mark_task is not None and not self._mark_task.done():
            self._mark_again = True
            return
        self._mark_task = asyncio.create_task(self._mark_read_batch(), name=f"chat-read:{self.request_id}")
        self._mark_task.add_done_callback(self._task_done)

    async def _mark_read_batch(self) -> None:
        while True:
            self._mark_again = False
            try:
                if self._unread is not None:
                    await self._unread.mark_read(self.request_id)
                else:
                    await self._backend.mark_read(self.request_id, self.user_id)
            except TransientNetworkFailure as e:
                logger.warning("Marking chat %s read failed: %s", self.request_id, e)
                return
            if self.closed or not self._mark_again:
                return

    async def flush(self) -> None:
        """Wait for outstanding read receipts."""
        while self._mark_task is not None and not self._mark_task.done():
            await self._mark_task

    # --- Feed ---

    def _on_message_event(self, event: ChangeEvent) -> None:
        if self.closed or event.new is None:
            return
        row = MessageRow.model_validate(event.new)
        if row.ride_request_id != self.request_id:
            return
        if event.type is ChangeType.UPDATE and row.id not in self._index:
            return
        if not self._absorb(row):
            return
        if (
            event.type is ChangeType.INSERT
            and row.receiver_id == self.user_id
            and not row.is_read
            and self.state is ChatState.READY
        ):
            self._schedule_mark_read()
        self._notify()

    def _on_request_event(self, event: ChangeEvent) -> None:
        if self.closed or event.new is None:
            return
        row = RideRequestRow.model_validate(event.new)
        if row.status is not RequestStatus.ACCEPTED:
            self._revoke(row.status)

    def _revoke(self, status: RequestStatus) -> None:
        logger.info("Chat %s revoked: request is now %s", self.request_id, status.value)
        self.revoked = True
        self.close()

    def _on_feed_status(self, handle: SubscriptionHandle, status: SubscriptionStatus) -> None:
        if self.closed:
            return
        if status is SubscriptionStatus.RESUBSCRIBED:
            self.live = all(h.live for h in self._handles)
            if self.state is ChatState.READY:
                self._spawn(self._resync())
        elif status is SubscriptionStatus.FAILED:
            self.live = False
            self._notify()

    async def _resync(self) -> None:
        """Catch up after a reconnect: re-check the request, then merge history."""
        context = await self._backend.get_request_context(self.request_id)
        if self.closed:
            return
        if context.request.status is not RequestStatus.ACCEPTED:
            self._revoke(context.request.status)
            return
        await self._load_history()
        if self.unread_in_view:
            self._schedule_mark_read()

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
            logger.error("Background chat task failed: %s", error, exc_info=error)
