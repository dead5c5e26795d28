"""
In-process change broker: tracks live channels per topic and fans committed
row changes out to them.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Union

from app.core.exceptions import FeedDisconnected
from app.realtime.events import ChangeEvent, ChangeType, Topic

logger = logging.getLogger(__name__)


class _Dropped:
    def __init__(self, reason: str) -> None:
        self.reason = reason


class LocalChannel:
    """One subscriber's queue on the broker."""

    def __init__(self, broker: "ChangeBroker", topic: Topic) -> None:
        self.topic = topic
        self._broker = broker
        self._queue: "asyncio.Queue[Union[ChangeEvent, _Dropped]]" = asyncio.Queue()
        self.closed = False

    def deliver(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def drop(self, reason: str) -> None:
        """Sever the channel; the next receive() raises FeedDisconnected."""
        self.closed = True
        self._queue.put_nowait(_Dropped(reason))

    async def receive(self) -> ChangeEvent:
        item = await self._queue.get()
        if isinstance(item, _Dropped):
            raise FeedDisconnected(item.reason)
        return item

    def leave(self) -> None:
        self.closed = True
        self._broker.leave(self)


class ChangeBroker:
    """Routes ChangeEvents to every channel whose topic matches."""

    def __init__(self) -> None:
        # topic -> set of LocalChannel
        self._channels: Dict[Topic, Set[LocalChannel]] = {}
        self._seq = 0
        self._accepting = True

    @property
    def last_seq(self) -> int:
        """Sequence number of the newest published change."""
        return self._seq

    @property
    def channel_count(self) -> int:
        return sum(len(c) for c in self._channels.values())

    def set_accepting(self, accepting: bool) -> None:
        """Refuse (or allow again) new channel handshakes."""
        self._accepting = accepting

    async def join(self, topic: Topic) -> LocalChannel:
        if not self._accepting:
            raise FeedDisconnected("realtime service is not accepting subscriptions")
        channel = LocalChannel(self, topic)
        self._channels.setdefault(topic, set()).add(channel)
        logger.debug("Channel joined %s", topic)
        return channel

    def leave(self, channel: LocalChannel) -> None:
        channels = self._channels.get(channel.topic)
        if channels is None:
            return
        channels.discard(channel)
        if not channels:
            del self._channels[channel.topic]
        logger.debug("Channel left %s", channel.topic)

    def publish(
        self,
        table: str,
        type: ChangeType,
        *,
        new: Optional[Dict[str, Any]] = None,
        old: Optional[Dict[str, Any]] = None,
    ) -> ChangeEvent:
        """Stamp a committed change with the next sequence number and deliver it."""
        self._seq += 1
        event = ChangeEvent(table=table, type=type, new=new, old=old, seq=self._seq)
        self.deliver(event)
        return event

    def deliver(self, event: ChangeEvent) -> int:
        """Fan an event out. Also used to replay an already-stamped event."""
        delivered = 0
        for topic, channels in list(self._channels.items()):
            if not topic.matches(event):
                continue
            for channel in list(channels):
                channel.deliver(event)
                delivered += 1
        return delivered

    def disconnect_all(self, reason: str = "realtime connection lost") -> None:
        dropped: List[LocalChannel] = [c for cs in self._channels.values() for c in cs]
        self._channels.clear()
        for channel in dropped:
            channel.drop(reason)
        if dropped:
            logger.warning("Dropped %d realtime channels: %s", len(dropped), reason)


change_broker = ChangeBroker()
