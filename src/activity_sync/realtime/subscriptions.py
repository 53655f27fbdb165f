"""Live query subscriptions projecting store result sets to callbacks."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

import structlog

from ..domain.errors import SubscriptionError
from ..metrics import LIVE_SUBSCRIPTIONS
from ..store.base import Doc, DocumentStore, Filter, Sort, Unsubscribe

logger = structlog.get_logger()

Decoder = Callable[[Doc], Any]
Callback = Callable[[List[Any]], Union[None, Awaitable[None]]]


class Subscription:
    """One live query bound to one callback.

    Snapshots pushed by the store are queued and delivered in order by a
    background task owned by the subscription. The owner must call
    ``unsubscribe``; nothing releases a subscription implicitly.
    """

    def __init__(
        self,
        manager: "SubscriptionManager",
        name: str,
        decode: Decoder,
        callback: Callback,
        reverse: bool = False,
    ) -> None:
        self.id = uuid4().hex
        self.name = name
        self.deliveries = 0
        self._manager = manager
        self._decode = decode
        self._callback = callback
        self._reverse = reverse
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._release_store: Optional[Unsubscribe] = None
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def _start(self, release_store: Unsubscribe) -> None:
        self._release_store = release_store
        self._task = asyncio.create_task(self._deliver_snapshots())

    def _push(self, docs: List[Doc]) -> None:
        """Store callback: queue a fresh result set."""
        if not self._closed:
            self._queue.put_nowait(docs)

    async def _deliver_snapshots(self) -> None:
        while True:
            docs = await self._queue.get()
            try:
                entities = [self._decode(doc) for doc in docs]
                if self._reverse:
                    entities.reverse()
                result = self._callback(entities)
                if inspect.isawaitable(result):
                    await result
                self.deliveries += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "subscription_callback_error",
                    subscription_id=self.id,
                    name=self.name,
                    error=str(e),
                )
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued snapshot has been delivered."""
        if self._closed:
            return
        await self._queue.join()

    def unsubscribe(self) -> None:
        """Stop delivery and release the store listener. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        if self._release_store is not None:
            self._release_store()
        if self._task is not None and not self._task.done():
            self._task.cancel()

        # Unblock anyone waiting on flush()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        self._manager._forget(self)
        logger.info(
            "subscription_released",
            subscription_id=self.id,
            name=self.name,
            deliveries=self.deliveries,
        )

    async def wait_closed(self) -> None:
        """Wait for the delivery task to finish after ``unsubscribe``."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)


class SubscriptionManager:
    """Registry of live subscriptions over a document store."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._subscriptions: Dict[str, Subscription] = {}
        self._closed = False

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(
        self,
        collection: str,
        decode: Decoder,
        callback: Callback,
        filters: Sequence[Filter] = (),
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        reverse: bool = False,
        name: Optional[str] = None,
    ) -> Subscription:
        """Register a live query.

        ``callback`` receives the complete decoded result set on
        registration and after every change. With ``reverse`` the result set
        is delivered in the opposite order of ``sort``, which lets a caller
        take the newest page of a query and still receive it oldest first.
        """
        if self._closed:
            raise SubscriptionError("Subscription manager is closed")

        subscription = Subscription(
            self, name or collection, decode, callback, reverse=reverse
        )
        release = self._store.subscribe(
            collection, list(filters), sort, limit, subscription._push
        )
        subscription._start(release)
        self._subscriptions[subscription.id] = subscription
        LIVE_SUBSCRIPTIONS.inc()
        logger.info(
            "subscription_registered",
            subscription_id=subscription.id,
            name=subscription.name,
            collection=collection,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Release ``subscription``."""
        subscription.unsubscribe()

    def _forget(self, subscription: Subscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is not None:
            LIVE_SUBSCRIPTIONS.dec()

    async def close(self) -> None:
        """Release every live subscription."""
        self._closed = True
        subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription.unsubscribe()
        await asyncio.gather(
            *(subscription.wait_closed() for subscription in subscriptions)
        )
        logger.info("subscription_manager_closed", released=len(subscriptions))
