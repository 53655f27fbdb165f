"""Notification coordinator.

Turns domain events (likes, comments, replies, achievements) into
per-user notification records and manages their read state and retention.

Event constructors (``like``, ``comment``, ``reply``, ``achievement`` and the
generic ``notify``) never raise: a failed notification must not abort the
action that triggered it. Which kinds skip self-notification is declared on
``NotificationKind`` rather than checked at each call site.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

import pydantic
import structlog

from ..config import Settings, get_settings
from ..domain.errors import StoreError, ValidationError
from ..domain.models import Notification, as_utc, utcnow
from ..metrics import (
    NOTIFICATIONS_CREATED,
    NOTIFICATIONS_DELETED,
    NOTIFICATIONS_SUPPRESSED,
    STORE_ERRORS,
)
from ..realtime.subscriptions import Callback, Subscription, SubscriptionManager
from ..store.base import DeleteOp, DocumentStore, Filter, Sort, UpdateOp

logger = structlog.get_logger()

Clock = Callable[[], datetime]

REQUIRED_FIELDS = ("user_id", "type", "message")


@dataclass(frozen=True)
class NotificationKind:
    """Policy of one notification type.

    ``message`` is formatted with the keyword arguments given to
    ``NotificationCoordinator.notify``.
    """

    type: str
    message: str
    suppress_self: bool = True


NOTIFICATION_KINDS: Dict[str, NotificationKind] = {
    kind.type: kind
    for kind in (
        NotificationKind("like", "liked your meme"),
        NotificationKind("comment", "commented on your meme"),
        NotificationKind("reply", "replied to your comment"),
        NotificationKind(
            "achievement", 'unlocked the "{achievement_name}" achievement!', suppress_self=False
        ),
    )
}


def truncate_metadata(metadata: Mapping[str, Any], limit: int) -> Dict[str, Any]:
    """Cut every text value of ``metadata`` to at most ``limit`` characters."""
    return {
        key: value[:limit] if isinstance(value, str) else value
        for key, value in metadata.items()
    }


class NotificationCoordinator:
    """Creates, reads and expires notifications."""

    def __init__(
        self,
        store: DocumentStore,
        subscriptions: Optional[SubscriptionManager] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._subscriptions = subscriptions or SubscriptionManager(store)
        self._settings = settings or get_settings()
        self._clock = clock or utcnow
        self._collection = self._settings.notifications_collection
        self._kinds = dict(NOTIFICATION_KINDS)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def register_kind(self, kind: NotificationKind) -> None:
        """Make a new notification type available to this coordinator's ``notify``."""
        self._kinds[kind.type] = kind

    async def create_notification(self, data: Mapping[str, Any]) -> Notification:
        """Validate and persist a notification.

        ``created_at`` defaults to now and ``read`` to False. Text values in
        ``metadata`` are silently truncated.
        """
        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            logger.error("notification_validation_error", missing=missing)
            raise ValidationError(
                f"Missing required notification fields: {', '.join(missing)}"
            )

        fields = dict(data)
        fields["id"] = self._store.new_id(self._collection)
        fields["created_at"] = fields.get("created_at") or self._now()
        fields["read"] = bool(fields.get("read", False))
        fields["metadata"] = truncate_metadata(
            fields.get("metadata") or {}, self._settings.notification_text_limit
        )
        try:
            notification = Notification(**fields)
        except pydantic.ValidationError as e:
            logger.error("notification_validation_error", error=str(e))
            raise ValidationError(str(e)) from e

        try:
            await self._store.put(self._collection, notification.id, notification.to_document())
        except StoreError as e:
            STORE_ERRORS.labels(operation="create_notification").inc()
            logger.error(
                "create_notification_error",
                user_id=notification.user_id,
                type=notification.type,
                error=str(e),
            )
            raise

        NOTIFICATIONS_CREATED.labels(type=notification.type).inc()
        logger.info(
            "notification_created",
            notification_id=notification.id,
            user_id=notification.user_id,
            type=notification.type,
        )
        return notification

    # -- event constructors --------------------------------------------

    async def notify(
        self,
        type_: str,
        actor_id: str,
        recipient_id: str,
        target_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **message_args: Any,
    ) -> Optional[Notification]:
        """Create a notification for a domain event, applying the kind's policy.

        Returns None when nothing was created. Never raises.
        """
        kind = self._kinds.get(type_)
        if kind is None:
            logger.error("unknown_notification_kind", type=type_)
            return None
        if not actor_id or not recipient_id:
            logger.error(
                "invalid_notification_event",
                type=type_,
                actor_id=actor_id,
                recipient_id=recipient_id,
            )
            return None
        if kind.suppress_self and actor_id == recipient_id:
            NOTIFICATIONS_SUPPRESSED.labels(type=type_).inc()
            logger.debug("notification_suppressed", type=type_, user_id=actor_id)
            return None

        try:
            return await self.create_notification(
                {
                    "user_id": recipient_id,
                    "from_user_id": actor_id,
                    "type": kind.type,
                    "target_id": target_id,
                    "message": kind.message.format(**message_args),
                    "read": False,
                    "created_at": self._now(),
                    "metadata": metadata or {},
                }
            )
        except Exception as e:
            # A failed notification never fails the action that triggered it
            logger.error(
                "event_notification_error",
                type=type_,
                actor_id=actor_id,
                recipient_id=recipient_id,
                target_id=target_id,
                metadata=metadata,
                error=str(e),
            )
            return None

    def _missing_event_fields(self, type_: str, **values: Optional[str]) -> bool:
        missing = [name for name, value in values.items() if not value]
        if missing:
            logger.error("invalid_notification_event", type=type_, missing=missing)
        return bool(missing)

    async def like(
        self, actor_id: str, recipient_id: str, content_id: str, content_title: str
    ) -> Optional[Notification]:
        """Notify the author of liked content."""
        if self._missing_event_fields(
            "like", content_id=content_id, content_title=content_title
        ):
            return None
        return await self.notify(
            "like",
            actor_id,
            recipient_id,
            target_id=content_id,
            metadata={"content_title": content_title},
        )

    async def comment(
        self,
        actor_id: str,
        recipient_id: str,
        content_id: str,
        content_title: str,
        comment_text: str,
    ) -> Optional[Notification]:
        """Notify the author of commented content."""
        if self._missing_event_fields(
            "comment", content_id=content_id, content_title=content_title
        ):
            return None
        return await self.notify(
            "comment",
            actor_id,
            recipient_id,
            target_id=content_id,
            metadata={"content_title": content_title, "comment_text": comment_text},
        )

    async def reply(
        self,
        actor_id: str,
        recipient_id: str,
        content_id: str,
        content_title: str,
        reply_text: str,
    ) -> Optional[Notification]:
        """Notify the author of a comment that somebody replied."""
        if self._missing_event_fields(
            "reply", content_id=content_id, content_title=content_title
        ):
            return None
        return await self.notify(
            "reply",
            actor_id,
            recipient_id,
            target_id=content_id,
            metadata={"content_title": content_title, "comment_text": reply_text},
        )

    async def achievement(
        self, user_id: str, achievement_name: str, achievement_icon: str
    ) -> Optional[Notification]:
        """Tell a user they unlocked an achievement."""
        return await self.notify(
            "achievement",
            user_id,
            user_id,
            metadata={
                "achievement_name": achievement_name,
                "achievement_icon": achievement_icon,
            },
            achievement_name=achievement_name,
        )

    # -- reads ---------------------------------------------------------

    async def get_user_notifications(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[Notification]:
        """Latest notifications of a user, newest first."""
        limit = self._settings.notification_page_size if limit is None else limit
        try:
            docs = await self._store.query(
                self._collection,
                filters=[Filter("user_id", "==", user_id)],
                sort=Sort("created_at", descending=True),
                limit=limit,
            )
        except StoreError as e:
            STORE_ERRORS.labels(operation="get_user_notifications").inc()
            logger.error("get_user_notifications_error", user_id=user_id, error=str(e))
            return []
        return [Notification.from_document(doc) for doc in docs]

    def _unread_filters(self, user_id: str) -> List[Filter]:
        return [Filter("user_id", "==", user_id), Filter("read", "==", False)]

    async def get_unread_count(self, user_id: str) -> int:
        """Number of unread notifications of a user."""
        try:
            docs = await self._store.query(self._collection, filters=self._unread_filters(user_id))
        except StoreError as e:
            STORE_ERRORS.labels(operation="get_unread_notification_count").inc()
            logger.error("get_unread_count_error", user_id=user_id, error=str(e))
            return 0
        return len(docs)

    # -- writes --------------------------------------------------------

    async def mark_as_read(self, notification_id: str) -> None:
        try:
            await self._store.update(self._collection, notification_id, {"read": True})
        except StoreError as e:
            STORE_ERRORS.labels(operation="mark_as_read").inc()
            logger.error("mark_as_read_error", notification_id=notification_id, error=str(e))
            raise

    async def mark_all_as_read(self, user_id: str) -> int:
        """Flip every unread notification of a user in one batch."""
        try:
            docs = await self._store.query(self._collection, filters=self._unread_filters(user_id))
            await self._store.batch(
                [UpdateOp(self._collection, doc["id"], {"read": True}) for doc in docs]
            )
        except StoreError as e:
            STORE_ERRORS.labels(operation="mark_all_as_read").inc()
            logger.error("mark_all_as_read_error", user_id=user_id, error=str(e))
            raise
        logger.info("notifications_marked_read", user_id=user_id, count=len(docs))
        return len(docs)

    async def delete_notification(self, notification_id: str) -> None:
        try:
            await self._store.delete(self._collection, notification_id)
        except StoreError as e:
            STORE_ERRORS.labels(operation="delete_notification").inc()
            logger.error(
                "delete_notification_error", notification_id=notification_id, error=str(e)
            )
            raise
        NOTIFICATIONS_DELETED.labels(reason="single").inc()

    async def delete_all_notifications(self, user_id: str) -> int:
        """Delete every notification of a user in one batch."""
        try:
            docs = await self._store.query(
                self._collection, filters=[Filter("user_id", "==", user_id)]
            )
            await self._store.batch([DeleteOp(self._collection, doc["id"]) for doc in docs])
        except StoreError as e:
            STORE_ERRORS.labels(operation="delete_all_notifications").inc()
            logger.error("delete_all_notifications_error", user_id=user_id, error=str(e))
            raise
        NOTIFICATIONS_DELETED.labels(reason="user").inc(len(docs))
        logger.info("notifications_deleted", user_id=user_id, count=len(docs))
        return len(docs)

    async def cleanup_old_notifications(self, now: Optional[datetime] = None) -> int:
        """Delete notifications older than the retention window.

        A notification created exactly at the cutoff is kept. Returns the
        number of deleted notifications; failures are logged and yield 0.
        """
        now = as_utc(now) if now is not None else self._now()
        cutoff = now - timedelta(days=self._settings.notification_retention_days)
        try:
            docs = await self._store.query(
                self._collection, filters=[Filter("created_at", "<", cutoff)]
            )
            await self._store.batch([DeleteOp(self._collection, doc["id"]) for doc in docs])
        except StoreError as e:
            STORE_ERRORS.labels(operation="cleanup_old_notifications").inc()
            logger.error("cleanup_old_notifications_error", error=str(e))
            return 0

        NOTIFICATIONS_DELETED.labels(reason="retention").inc(len(docs))
        logger.info("old_notifications_cleaned_up", count=len(docs), cutoff=cutoff.isoformat())
        return len(docs)

    # -- live queries --------------------------------------------------

    async def subscribe_to_notifications(
        self, user_id: str, callback: Callback, limit: Optional[int] = None
    ) -> Subscription:
        """Live view of the latest notifications of a user, newest first."""
        return await self._subscriptions.subscribe(
            self._collection,
            Notification.from_document,
            callback,
            filters=[Filter("user_id", "==", user_id)],
            sort=Sort("created_at", descending=True),
            limit=self._settings.notification_page_size if limit is None else limit,
            name=f"notifications:{user_id}",
        )
