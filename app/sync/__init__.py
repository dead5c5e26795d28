from .feed import ChangeFeedClient, SubscriptionHandle, SubscriptionStatus
from .soft_remove import SoftRemovePolicy
from .request_store import PendingTransition, RequestLifecycleStore
from .unread import UnreadCounter
from .chat_session import ChatSessionController, ChatState
from .session import RideSession

__all__ = [
    "ChangeFeedClient",
    "SubscriptionHandle",
    "SubscriptionStatus",
    "SoftRemovePolicy",
    "PendingTransition",
    "RequestLifecycleStore",
    "UnreadCounter",
    "ChatSessionController",
    "ChatState",
    "RideSession",
]
