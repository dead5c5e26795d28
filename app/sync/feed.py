"""
Change feed client.

One logical subscription per (table, filter) pair. Each subscription owns a
pump task that reads its channel and hands events to the listener; on
transport loss it retries with exponential backoff and reports
``resubscribed`` so the owner can run an authoritative refresh, or
``failed`` once retries are exhausted.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Iterable, Optional, Protocol

from app.core.config import settings
from app.core.exceptions import FeedDisconnected
from app.realtime.events import ChangeEvent, Topic

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    RESUBSCRIBED = "resubscribed"
    FAILED = "failed"
    CLOSED = "closed"


class FeedChannel(Protocol):
    async def receive(self) -> ChangeEvent: ...

    def leave(self) -> None: ...


class FeedTransport(Protocol):
    async def join(self, topic: Topic) -> FeedChannel: ...


EventListener = Callable[[ChangeEvent], None]
StatusListener = Callable[["SubscriptionHandle", SubscriptionStatus], None]


class SubscriptionHandle:
    """Returned by subscribe(); pass it back to unsubscribe()."""

    def __init__(
        self,
        topic: Topic,
        on_event: EventListener,
        on_status: Optional[StatusListener] = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.topic = topic
        self.status = SubscriptionStatus.CONNECTING
        self._on_event = on_event
        self._on_status = on_status
        self._channel: Optional[FeedChannel] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def live(self) -> bool:
        return self.status in (SubscriptionStatus.SUBSCRIBED, SubscriptionStatus.RESUBSCRIBED)

    @property
    def closed(self) -> bool:
        return self.status is SubscriptionStatus.CLOSED

    def __repr__(self) -> str:
        return f"<SubscriptionHandle {self.topic} {self.status.value}>"


class ChangeFeedClient:
    def __init__(
        self,
        transport: FeedTransport,
        *,
        reconnect_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ) -> None:
        self._transport = transport
        self.reconnect_attempts = (
            settings.FEED_RECONNECT_ATTEMPTS if reconnect_attempts is None else reconnect_attempts
        )
        self.backoff_base = settings.FEED_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_max = settings.FEED_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        self._handles: Dict[str, SubscriptionHandle] = {}

    @property
    def subscriptions(self) -> int:
        return len(self._handles)

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** attempt))

    async def subscribe(
        self,
        table: str,
        filter: Optional[str],
        on_event: EventListener,
        *,
        events: Optional[Iterable[str]] = None,
        on_status: Optional[StatusListener] = None,
    ) -> SubscriptionHandle:
        """
        Open a subscription. A handshake that fails after every retry does not
        raise: the handle comes back with status FAILED and on_status is told.
        """
        topic = Topic.build(table, filter, events)
        handle = SubscriptionHandle(topic, on_event, on_status)
        self._handles[handle.id] = handle
        channel = await self._join(handle, reconnect=False)
        if handle.closed:
            if channel is not None:
                channel.leave()
            return handle
        if channel is None:
            self._handles.pop(handle.id, None)
            logger.error("Subscription to %s failed; live updates unavailable", topic)
            self._set_status(handle, SubscriptionStatus.FAILED)
            return handle
        handle._channel = channel
        self._set_status(handle, SubscriptionStatus.SUBSCRIBED)
        handle._task = asyncio.create_task(self._pump(handle), name=f"feed:{topic}")
        logger.info("Subscribed to %s", topic)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Release synchronously. Safe to call twice."""
        if handle.closed:
            return
        self._handles.pop(handle.id, None)
        channel, handle._channel = handle._channel, None
        if channel is not None:
            channel.leave()
        if handle._task is not None and handle._task is not asyncio.current_task():
            handle._task.cancel()
        self._set_status(handle, SubscriptionStatus.CLOSED)
        logger.debug("Unsubscribed from %s", handle.topic)

    @asynccontextmanager
    async def open_subscription(
        self,
        table: str,
        filter: Optional[str],
        on_event: EventListener,
        *,
        events: Optional[Iterable[str]] = None,
        on_status: Optional[StatusListener] = None,
    ) -> AsyncIterator[SubscriptionHandle]:
        handle = await self.subscribe(table, filter, on_event, events=events, on_status=on_status)
        try:
            yield handle
        finally:
            self.unsubscribe(handle)

    def close(self) -> None:
        for handle in list(self._handles.values()):
            self.unsubscribe(handle)

    async def _join(self, handle: SubscriptionHandle, *, reconnect: bool) -> Optional[FeedChannel]:
        for attempt in range(self.reconnect_attempts + 1):
            if reconnect or attempt:
                await asyncio.sleep(self.backoff_delay(attempt))
            if handle.closed:
                return None
            try:
                return await self._transport.join(handle.topic)
            except FeedDisconnected as e:
                logger.warning(
                    "Handshake for %s failed (attempt %d/%d): %s",
                    handle.topic, attempt + 1, self.reconnect_attempts + 1, e,
                )
        return None

    async def _pump(self, handle: SubscriptionHandle) -> None:
        while not handle.closed:
            try:
                event = await handle._channel.receive()
            except FeedDisconnected as e:
                logger.warning("Feed %s disconnected: %s", handle.topic, e)
                handle._channel = None
                self._set_status(handle, SubscriptionStatus.RECONNECTING)
                channel = await self._join(handle, reconnect=True)
                if handle.closed:
                    if channel is not None:
                        channel.leave()
                    return
                if channel is None:
                    self._handles.pop(handle.id, None)
                    logger.error("Gave up reconnecting %s; live updates unavailable", handle.topic)
                    self._set_status(handle, SubscriptionStatus.FAILED)
                    return
                handle._channel = channel
                self._set_status(handle, SubscriptionStatus.RESUBSCRIBED)
                continue
            try:
                handle._on_event(event)
            except Exception:
                logger.exception("Listener for %s failed on event %s", handle.topic, event.seq)

    def _set_status(self, handle: SubscriptionHandle, status: SubscriptionStatus) -> None:
        handle.status = status
        if handle._on_status is None:
            return
        try:
            handle._on_status(handle, status)
        except Exception:
            logger.exception("Status listener for %s failed", handle.topic)
