"""Synchronization core for chat rooms, chat messages and notifications."""

from .domain.errors import ActivitySyncError, StoreError, SubscriptionError, ValidationError
from .domain.models import (
    AttachmentData,
    ChatMessage,
    ChatRoom,
    MessageKind,
    Notification,
    RoomKind,
)
from .realtime.subscriptions import Subscription, SubscriptionManager
from .services.chat import ChatCoordinator, direct_chat_id
from .services.notifications import NotificationCoordinator, NotificationKind
from .services.retention import RetentionSweeper
from .store.memory import InMemoryDocumentStore

__version__ = "0.1.0"

__all__ = [
    "ActivitySyncError",
    "AttachmentData",
    "ChatCoordinator",
    "ChatMessage",
    "ChatRoom",
    "InMemoryDocumentStore",
    "MessageKind",
    "Notification",
    "NotificationCoordinator",
    "NotificationKind",
    "RetentionSweeper",
    "RoomKind",
    "StoreError",
    "Subscription",
    "SubscriptionError",
    "SubscriptionManager",
    "ValidationError",
    "direct_chat_id",
]
