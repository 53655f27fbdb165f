"""Chat coordinator: rooms, messages, read state and unread counts."""

from datetime import datetime
from typing import Callable, List, Optional, Sequence

import structlog

from ..config import Settings, get_settings
from ..domain.errors import StoreError, ValidationError
from ..domain.models import (
    AttachmentData,
    ChatMessage,
    ChatRoom,
    MessageKind,
    RoomKind,
    as_utc,
    utcnow,
)
from ..metrics import MESSAGES_SENT, ROOMS_CREATED, STORE_ERRORS
from ..realtime.subscriptions import Callback, Subscription, SubscriptionManager
from ..store.base import ArrayRemove, ArrayUnion, DocumentStore, Filter, SetOp, Sort, UpdateOp

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def direct_chat_id(user_a: str, user_b: str, prefix: str = "direct", separator: str = "_") -> str:
    """Deterministic room id for the unordered pair ``user_a``/``user_b``."""
    first, second = sorted((user_a, user_b))
    return separator.join((prefix, first, second))


def _require(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return value


class ChatCoordinator:
    """Manages chat rooms and messages on top of a document store.

    Every write that touches both a message and its room goes through one
    store batch. Read and aggregate operations log store failures and fall
    back to an empty result; write operations log and re-raise them.
    """

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
        self._rooms = self._settings.chat_rooms_collection
        self._messages = self._settings.chat_messages_collection

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def direct_chat_id(self, user_a: str, user_b: str) -> str:
        return direct_chat_id(
            user_a,
            user_b,
            prefix=self._settings.direct_chat_prefix,
            separator=self._settings.direct_chat_separator,
        )

    # -- rooms ---------------------------------------------------------

    async def get_chat(self, chat_id: str) -> Optional[ChatRoom]:
        """Retrieve a room by ID, or None when absent or unreadable."""
        try:
            doc = await self._store.get(self._rooms, chat_id)
        except StoreError as e:
            STORE_ERRORS.labels(operation="get_chat").inc()
            logger.error("get_chat_error", chat_id=chat_id, error=str(e))
            return None
        return ChatRoom.from_document(doc) if doc is not None else None

    async def get_direct_chat(self, user_a: str, user_b: str) -> Optional[ChatRoom]:
        """Look up the direct room between two users."""
        return await self.get_chat(self.direct_chat_id(user_a, user_b))

    async def create_direct_chat(self, user_a: str, user_b: str) -> ChatRoom:
        """Return the direct room for the pair, creating it on first use.

        A deactivated room for the pair is reactivated rather than replaced.
        """
        _require(user_a, "user_a")
        _require(user_b, "user_b")
        if user_a == user_b:
            raise ValidationError("A direct chat needs two distinct users")

        chat_id = self.direct_chat_id(user_a, user_b)
        try:
            doc = await self._store.get(self._rooms, chat_id)
            if doc is None:
                now = self._now()
                room = ChatRoom(
                    id=chat_id,
                    kind=RoomKind.DIRECT,
                    participants=[user_a, user_b],
                    created_by=user_a,
                    created_at=now,
                    last_activity=now,
                )
                if await self._store.create(self._rooms, chat_id, room.to_document()):
                    ROOMS_CREATED.labels(kind=RoomKind.DIRECT.value).inc()
                    logger.info("chat_room_created", chat_id=chat_id, kind=RoomKind.DIRECT.value)
                    return room
                # A concurrent caller created the room first; its document wins
                doc = await self._store.get(self._rooms, chat_id)
                if doc is None:
                    raise StoreError(f"Direct chat {chat_id} disappeared while being created")

            room = ChatRoom.from_document(doc)
            if not room.is_active:
                await self._store.update(self._rooms, chat_id, {"is_active": True})
                room.is_active = True
                logger.info("direct_chat_reactivated", chat_id=chat_id)
        except StoreError as e:
            STORE_ERRORS.labels(operation="create_direct_chat").inc()
            logger.error("create_direct_chat_error", chat_id=chat_id, error=str(e))
            raise
        return room

    async def create_group_chat(
        self, creator_id: str, participant_ids: Sequence[str], name: str
    ) -> ChatRoom:
        """Create a named group room; the creator always comes first."""
        _require(creator_id, "creator_id")
        if name is None or not name.strip():
            raise ValidationError("Group chats need a name")

        participants = [creator_id]
        for participant_id in participant_ids:
            if participant_id and participant_id not in participants:
                participants.append(participant_id)

        now = self._now()
        room = ChatRoom(
            id=self._store.new_id(self._rooms),
            kind=RoomKind.GROUP,
            name=name.strip(),
            participants=participants,
            created_by=creator_id,
            created_at=now,
            last_activity=now,
        )
        try:
            await self._store.put(self._rooms, room.id, room.to_document())
        except StoreError as e:
            STORE_ERRORS.labels(operation="create_group_chat").inc()
            logger.error("create_group_chat_error", creator_id=creator_id, error=str(e))
            raise

        ROOMS_CREATED.labels(kind=RoomKind.GROUP.value).inc()
        logger.info(
            "chat_room_created",
            chat_id=room.id,
            kind=RoomKind.GROUP.value,
            participants=len(participants),
        )
        return room

    def _user_chats_query(self, user_id: str):
        return dict(
            filters=[
                Filter("participants", "array-contains", user_id),
                Filter("is_active", "==", True),
            ],
            sort=Sort("last_activity", descending=True),
        )

    async def _fetch_user_chats(self, user_id: str) -> List[ChatRoom]:
        docs = await self._store.query(self._rooms, **self._user_chats_query(user_id))
        return [ChatRoom.from_document(doc) for doc in docs]

    async def get_user_chats(self, user_id: str) -> List[ChatRoom]:
        """Active rooms of ``user_id``, most recently active first."""
        try:
            return await self._fetch_user_chats(user_id)
        except StoreError as e:
            STORE_ERRORS.labels(operation="get_user_chats").inc()
            logger.error("get_user_chats_error", user_id=user_id, error=str(e))
            return []

    async def _group_room(self, chat_id: str) -> ChatRoom:
        doc = await self._store.get(self._rooms, chat_id)
        if doc is None:
            raise ValidationError(f"Chat {chat_id} not found")
        room = ChatRoom.from_document(doc)
        if room.kind != RoomKind.GROUP:
            raise ValidationError("Participants can only be changed on group chats")
        return room

    async def add_participant(self, chat_id: str, user_id: str) -> None:
        """Add ``user_id`` to a group room. Adding a member again is a no-op."""
        _require(user_id, "user_id")
        try:
            await self._group_room(chat_id)
            await self._store.update(
                self._rooms, chat_id, {"participants": ArrayUnion(user_id)}
            )
        except StoreError as e:
            STORE_ERRORS.labels(operation="add_participant").inc()
            logger.error("add_participant_error", chat_id=chat_id, user_id=user_id, error=str(e))
            raise
        logger.info("participant_added", chat_id=chat_id, user_id=user_id)

    async def remove_participant(self, chat_id: str, user_id: str) -> None:
        """Remove ``user_id`` from a group room. Removing a non-member is a no-op."""
        _require(user_id, "user_id")
        try:
            await self._group_room(chat_id)
            await self._store.update(
                self._rooms, chat_id, {"participants": ArrayRemove(user_id)}
            )
        except StoreError as e:
            STORE_ERRORS.labels(operation="remove_participant").inc()
            logger.error(
                "remove_participant_error", chat_id=chat_id, user_id=user_id, error=str(e)
            )
            raise
        logger.info("participant_removed", chat_id=chat_id, user_id=user_id)

    async def deactivate_room(self, chat_id: str) -> None:
        """Soft-delete a room. Its messages are kept."""
        try:
            await self._store.update(self._rooms, chat_id, {"is_active": False})
        except StoreError as e:
            STORE_ERRORS.labels(operation="deactivate_room").inc()
            logger.error("deactivate_room_error", chat_id=chat_id, error=str(e))
            raise
        logger.info("chat_room_deactivated", chat_id=chat_id)

    # -- messages ------------------------------------------------------

    async def _post(self, message: ChatMessage) -> ChatMessage:
        """Insert ``message`` and refresh its room summary in one batch."""
        ops = [
            SetOp(self._messages, message.id, message.to_document()),
            UpdateOp(
                self._rooms,
                message.chat_id,
                {
                    "last_message_summary": message.summary().model_dump(),
                    "last_activity": message.timestamp,
                },
            ),
        ]
        try:
            await self._store.batch(ops)
        except StoreError as e:
            STORE_ERRORS.labels(operation="send_message").inc()
            logger.error(
                "send_message_error",
                chat_id=message.chat_id,
                sender_id=message.sender_id,
                kind=message.kind.value,
                error=str(e),
            )
            raise

        MESSAGES_SENT.labels(kind=message.kind.value).inc()
        logger.info(
            "message_sent",
            chat_id=message.chat_id,
            message_id=message.id,
            kind=message.kind.value,
        )
        return message

    async def send_message(
        self, chat_id: str, sender_id: str, sender_name: str, text: str
    ) -> ChatMessage:
        """Send a text message."""
        _require(chat_id, "chat_id")
        _require(sender_id, "sender_id")
        _require(text, "text")
        message = ChatMessage(
            id=self._store.new_id(self._messages),
            chat_id=chat_id,
            sender_id=sender_id,
            sender_name=sender_name,
            text=text,
            kind=MessageKind.TEXT,
            timestamp=self._now(),
            read_by=[sender_id],
        )
        return await self._post(message)

    async def send_attachment_message(
        self,
        chat_id: str,
        sender_id: str,
        sender_name: str,
        attachment_data: AttachmentData,
        kind: MessageKind = MessageKind.MEME,
    ) -> ChatMessage:
        """Share a meme or image in a room."""
        _require(chat_id, "chat_id")
        _require(sender_id, "sender_id")
        if kind == MessageKind.TEXT:
            raise ValidationError("Attachment messages need a non-text kind")
        if attachment_data is None:
            raise ValidationError("attachment_data is required")

        message = ChatMessage(
            id=self._store.new_id(self._messages),
            chat_id=chat_id,
            sender_id=sender_id,
            sender_name=sender_name,
            text=f"Shared a {kind.value}: {attachment_data.title}",
            kind=kind,
            timestamp=self._now(),
            attachment_data=attachment_data,
            read_by=[sender_id],
        )
        return await self._post(message)

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        """Retrieve a message by ID."""
        try:
            doc = await self._store.get(self._messages, message_id)
        except StoreError as e:
            STORE_ERRORS.labels(operation="get_message").inc()
            logger.error("get_message_error", message_id=message_id, error=str(e))
            return None
        return ChatMessage.from_document(doc) if doc is not None else None

    async def get_chat_messages(
        self, chat_id: str, count: Optional[int] = None
    ) -> List[ChatMessage]:
        """The ``count`` most recent messages of a room, oldest first."""
        count = self._settings.message_page_size if count is None else count
        try:
            docs = await self._store.query(
                self._messages,
                filters=[Filter("chat_id", "==", chat_id)],
                sort=Sort("timestamp", descending=True),
                limit=count,
            )
        except StoreError as e:
            STORE_ERRORS.labels(operation="get_chat_messages").inc()
            logger.error("get_chat_messages_error", chat_id=chat_id, error=str(e))
            return []
        messages = [ChatMessage.from_document(doc) for doc in docs]
        messages.reverse()
        return messages

    async def edit_message(self, message_id: str, editor_id: str, text: str) -> ChatMessage:
        """Replace the text of a message. Only its sender may edit it."""
        _require(text, "text")
        try:
            doc = await self._store.get(self._messages, message_id)
            if doc is None:
                raise ValidationError(f"Message {message_id} not found")
            message = ChatMessage.from_document(doc)
            if message.sender_id != editor_id:
                raise ValidationError("Only the sender can edit a message")

            edited_at = self._now()
            ops = [
                UpdateOp(
                    self._messages,
                    message_id,
                    {"text": text, "edited": True, "edited_at": edited_at},
                )
            ]
            room_doc = await self._store.get(self._rooms, message.chat_id)
            if room_doc is not None:
                summary = ChatRoom.from_document(room_doc).last_message_summary
                if (
                    summary is not None
                    and summary.timestamp == message.timestamp
                    and summary.sender_id == message.sender_id
                ):
                    summary.text = text
                    ops.append(
                        UpdateOp(
                            self._rooms,
                            message.chat_id,
                            {"last_message_summary": summary.model_dump()},
                        )
                    )
            await self._store.batch(ops)
        except StoreError as e:
            STORE_ERRORS.labels(operation="edit_message").inc()
            logger.error("edit_message_error", message_id=message_id, error=str(e))
            raise

        message.text = text
        message.edited = True
        message.edited_at = edited_at
        logger.info("message_edited", message_id=message_id, chat_id=message.chat_id)
        return message

    # -- read state ----------------------------------------------------

    async def mark_message_read(self, message_id: str, user_id: str) -> None:
        """Add ``user_id`` to the readers of one message."""
        _require(user_id, "user_id")
        try:
            await self._store.update(
                self._messages, message_id, {"read_by": ArrayUnion(user_id)}
            )
        except StoreError as e:
            STORE_ERRORS.labels(operation="mark_message_read").inc()
            logger.error(
                "mark_message_read_error", message_id=message_id, user_id=user_id, error=str(e)
            )
            raise

    async def mark_chat_read(self, chat_id: str, user_id: str) -> int:
        """Add ``user_id`` to the readers of every message in a room.

        Returns the number of messages that were not yet read by the user.
        """
        _require(user_id, "user_id")
        try:
            docs = await self._store.query(
                self._messages,
                filters=[
                    Filter("chat_id", "==", chat_id),
                    Filter("read_by", "not-array-contains", user_id),
                ],
            )
            await self._store.batch(
                [
                    UpdateOp(self._messages, doc["id"], {"read_by": ArrayUnion(user_id)})
                    for doc in docs
                ]
            )
        except StoreError as e:
            STORE_ERRORS.labels(operation="mark_chat_read").inc()
            logger.error("mark_chat_read_error", chat_id=chat_id, user_id=user_id, error=str(e))
            raise

        if docs:
            logger.info("chat_marked_read", chat_id=chat_id, user_id=user_id, messages=len(docs))
        return len(docs)

    async def get_unread_count(self, user_id: str) -> int:
        """Messages from others not yet read by ``user_id``, across active rooms."""
        total = 0
        try:
            for room in await self._fetch_user_chats(user_id):
                docs = await self._store.query(
                    self._messages,
                    filters=[
                        Filter("chat_id", "==", room.id),
                        Filter("sender_id", "!=", user_id),
                        Filter("read_by", "not-array-contains", user_id),
                    ],
                )
                total += len(docs)
        except StoreError as e:
            STORE_ERRORS.labels(operation="get_unread_count").inc()
            logger.error("get_unread_message_count_error", user_id=user_id, error=str(e))
            return 0
        return total

    # -- live queries --------------------------------------------------

    async def subscribe_to_messages(self, chat_id: str, callback: Callback) -> Subscription:
        """Live view of the latest messages of a room, oldest first."""
        return await self._subscriptions.subscribe(
            self._messages,
            ChatMessage.from_document,
            callback,
            filters=[Filter("chat_id", "==", chat_id)],
            sort=Sort("timestamp", descending=True),
            limit=self._settings.message_subscription_limit,
            reverse=True,
            name=f"messages:{chat_id}",
        )

    async def subscribe_to_user_chats(self, user_id: str, callback: Callback) -> Subscription:
        """Live view of the active rooms of a user, most recently active first."""
        return await self._subscriptions.subscribe(
            self._rooms,
            ChatRoom.from_document,
            callback,
            name=f"user_chats:{user_id}",
            **self._user_chats_query(user_id),
        )
