"""
Debounced removal for items hidden or deleted by a remote change.

The item is first flagged ``pending_removal`` (still listed, rendered as
leaving) and only dropped from its collection after a short grace period. A
correcting event inside the window cancels the removal.
"""
import asyncio
import logging
from typing import Any, Dict, Hashable, Optional, Protocol, Tuple

from app.core.config import settings

logger = logging.getLogger(__name__)


class RemovableCollection(Protocol):
    def mark_pending_removal(self, item_id: str) -> bool: ...

    def clear_pending_removal(self, item_id: str) -> bool: ...

    def remove(self, item_id: str) -> bool: ...


class SoftRemovePolicy:
    def __init__(self, grace_ms: Optional[int] = None) -> None:
        self.grace_ms = settings.SOFT_REMOVE_GRACE_MS if grace_ms is None else grace_ms
        self._timers: Dict[Tuple[Hashable, str], asyncio.TimerHandle] = {}

    def soft_remove(
        self, collection: RemovableCollection, item_id: str, grace_ms: Optional[int] = None
    ) -> bool:
        """Schedule removal. Returns False if already scheduled or the item is unknown."""
        key = (collection, item_id)
        if key in self._timers:
            return False
        if not collection.mark_pending_removal(item_id):
            return False
        delay = (self.grace_ms if grace_ms is None else grace_ms) / 1000
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._confirm, collection, item_id)
        logger.debug("Item %s leaving in %.0f ms", item_id, delay * 1000)
        return True

    def cancel(self, collection: RemovableCollection, item_id: str) -> bool:
        """Keep the item after all. Returns False if nothing was pending."""
        timer = self._timers.pop((collection, item_id), None)
        if timer is None:
            return False
        timer.cancel()
        collection.clear_pending_removal(item_id)
        logger.debug("Removal of %s cancelled", item_id)
        return True

    def is_pending(self, collection: Any, item_id: str) -> bool:
        return (collection, item_id) in self._timers

    def discard_all(self, collection: Any) -> None:
        """Drop timers for a collection that is being replaced or torn down."""
        for key in [k for k in self._timers if k[0] is collection]:
            self._timers.pop(key).cancel()

    def _confirm(self, collection: RemovableCollection, item_id: str) -> None:
        self._timers.pop((collection, item_id), None)
        collection.remove(item_id)
