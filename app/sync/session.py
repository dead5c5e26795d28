"""
Per-user realtime session: the unread counter, the request stores and the open
chats of one signed-in user, sharing a single change feed client.
"""
import logging
from typing import Any, Dict, Optional, Protocol

from app.core.exceptions import NotAuthenticated, NotFound
from app.schema.ride_request import ViewerRole
from app.service.ride_backend import RideBackend
from app.sync.chat_session import ChatSessionController
from app.sync.feed import ChangeFeedClient, FeedTransport
from app.sync.request_store import RequestLifecycleStore
from app.sync.soft_remove import SoftRemovePolicy
from app.sync.unread import UnreadCounter

logger = logging.getLogger(__name__)


class AuthProvider(Protocol):
    def get_current_user(self) -> Optional[Dict[str, Any]]: ...


class RideSession:
    def __init__(
        self,
        user_id: str,
        backend: RideBackend,
        feed: ChangeFeedClient,
        *,
        policy: Optional[SoftRemovePolicy] = None,
        recount_interval: Optional[float] = None,
    ) -> None:
        self.user_id = user_id
        self.backend = backend
        self.feed = feed
        self.policy = policy or SoftRemovePolicy()
        self.unread = UnreadCounter(backend, feed, user_id, recount_interval=recount_interval)
        self._stores: Dict[ViewerRole, RequestLifecycleStore] = {}
        self._chats: Dict[str, ChatSessionController] = {}
        self.closed = False

    @classmethod
    async def start(
        cls,
        auth: AuthProvider,
        backend: RideBackend,
        transport: FeedTransport,
        **kwargs,
    ) -> "RideSession":
        """Authenticate, then start the unread counter from zero with a fresh recount."""
        user = auth.get_current_user()
        if not user or not user.get("id"):
            raise NotAuthenticated()
        user_id = str(user["id"])
        session = cls(user_id, backend, ChangeFeedClient(transport), **kwargs)
        try:
            await session.unread.start()
        except Exception:
            session.close()
            raise
        logger.info("Realtime session started for %s", user_id)
        return session

    async def requests_for(self, role: ViewerRole) -> RequestLifecycleStore:
        """The (cached) request store for one role."""
        role = ViewerRole(role)
        store = self._stores.get(role)
        if store is None or store.closed:
            store = RequestLifecycleStore(self.backend, self.feed, self.user_id, role, policy=self.policy)
            self._stores[role] = store
            try:
                await store.open()
            except Exception:
                store.close()
                self._stores.pop(role, None)
                raise
        return store

    async def driver_requests(self) -> RequestLifecycleStore:
        return await self.requests_for(ViewerRole.DRIVER)

    async def passenger_requests(self) -> RequestLifecycleStore:
        return await self.requests_for(ViewerRole.PASSENGER)

    async def open_chat(self, request_id: str) -> ChatSessionController:
        """Open (or return the already open) chat for an accepted request."""
        if self.closed:
            raise NotAuthenticated()
        chat = self._chats.get(request_id)
        if chat is not None and not chat.closed:
            return chat
        chat = ChatSessionController(self.backend, self.feed, request_id, self.user_id, unread=self.unread)
        await chat.open()
        self._chats[request_id] = chat
        return chat

    def chat(self, request_id: str) -> ChatSessionController:
        chat = self._chats.get(request_id)
        if chat is None or chat.closed:
            raise NotFound("Open chat")
        return chat

    def close_chat(self, request_id: str) -> None:
        chat = self._chats.pop(request_id, None)
        if chat is not None:
            chat.close()

    def close(self) -> None:
        """Sign out: release every subscription and drop all state."""
        if self.closed:
            return
        self.closed = True
        for chat in self._chats.values():
            chat.close()
        for store in self._stores.values():
            store.close()
        self._chats.clear()
        self._stores.clear()
        self.unread.close()
        self.feed.close()
        logger.info("Realtime session closed for %s", self.user_id)
