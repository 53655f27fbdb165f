"""In-memory document store implementation."""

import asyncio
import copy
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import structlog

from ..domain.errors import DocumentExistsError, DocumentNotFoundError, StoreError
from .base import (
    ArrayRemove,
    ArrayUnion,
    BatchOp,
    CreateOp,
    DeleteOp,
    Doc,
    DocumentStore,
    Filter,
    SetOp,
    SnapshotCallback,
    Sort,
    Unsubscribe,
    UpdateOp,
)

logger = structlog.get_logger()

_MISSING = object()


def _matches(doc: Doc, flt: Filter) -> bool:
    """Evaluate one filter against a document."""
    value = doc.get(flt.field, _MISSING)
    if flt.op == "array-contains":
        return isinstance(value, list) and flt.value in value
    if flt.op == "not-array-contains":
        return not (isinstance(value, list) and flt.value in value)
    if flt.op == "in":
        return value is not _MISSING and value in flt.value
    if flt.op == "==":
        return value is not _MISSING and value == flt.value
    if flt.op == "!=":
        return value is not _MISSING and value != flt.value

    # Range comparisons skip missing and null fields
    if value is _MISSING or value is None:
        return False
    try:
        if flt.op == "<":
            return value < flt.value
        if flt.op == "<=":
            return value <= flt.value
        if flt.op == ">":
            return value > flt.value
        return value >= flt.value
    except TypeError:
        return False


def _apply_fields(doc: Doc, fields: Doc) -> Doc:
    """Return a copy of ``doc`` with plain values and transforms applied."""
    updated = dict(doc)
    for name, value in fields.items():
        if isinstance(value, ArrayUnion):
            current = list(updated.get(name) or [])
            for item in value.values:
                if item not in current:
                    current.append(item)
            updated[name] = current
        elif isinstance(value, ArrayRemove):
            updated[name] = [
                item for item in (updated.get(name) or []) if item not in value.values
            ]
        else:
            updated[name] = copy.deepcopy(value)
    return updated


def _run_query(
    docs: Dict[str, Doc],
    positions: Dict[str, int],
    filters: Sequence[Filter],
    sort: Optional[Sort],
    limit: Optional[int],
) -> List[Doc]:
    results = [
        (doc_id, doc)
        for doc_id, doc in docs.items()
        if all(_matches(doc, flt) for flt in filters)
    ]
    # Ties fall back to insertion order
    results.sort(key=lambda item: positions.get(item[0], 0))
    if sort is not None:
        present = [item for item in results if item[1].get(sort.field) is not None]
        absent = [item for item in results if item[1].get(sort.field) is None]
        try:
            present.sort(
                key=lambda item: (item[1][sort.field], positions.get(item[0], 0)),
                reverse=sort.descending,
            )
        except TypeError as e:
            raise StoreError(f"Cannot order by {sort.field}: {e}") from e
        results = present + absent
    if limit is not None:
        results = results[: max(limit, 0)]
    return [copy.deepcopy(doc) for _, doc in results]


@dataclass
class _Listener:
    """A registered live query."""

    collection: str
    filters: Tuple[Filter, ...]
    sort: Optional[Sort]
    limit: Optional[int]
    callback: SnapshotCallback
    last_snapshot: Optional[List[Doc]] = None
    active: bool = True


@dataclass
class _Staging:
    """Writes of a batch, validated before any of them is committed."""

    writes: Dict[Tuple[str, str], Optional[Doc]] = field(default_factory=dict)

    def collections(self) -> Set[str]:
        return {collection for collection, _ in self.writes}


class InMemoryDocumentStore(DocumentStore):
    """Document store keeping every collection in process memory.

    Writes are serialized by an asyncio lock and committed without awaiting
    in between, so a batch is visible to readers either entirely or not at
    all. Live queries are re-evaluated after each commit and notified only
    when their result set changed.
    """

    def __init__(self) -> None:
        """Initialize the store with empty collections."""
        self._collections: Dict[str, Dict[str, Doc]] = defaultdict(dict)
        self._positions: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._sequence = itertools.count()
        self._listeners: Dict[int, _Listener] = {}
        self._listener_ids = itertools.count(1)
        self._lock = asyncio.Lock()
        logger.info("document_store_initialized", backend="memory")

    async def get(self, collection: str, doc_id: str) -> Optional[Doc]:
        """Retrieve a document by ID."""
        doc = self._collections[collection].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def put(self, collection: str, doc_id: str, doc: Doc) -> None:
        """Create or replace a document."""
        await self.batch([SetOp(collection, doc_id, doc)])

    async def update(self, collection: str, doc_id: str, fields: Doc) -> None:
        """Apply a partial update to an existing document."""
        await self.batch([UpdateOp(collection, doc_id, fields)])

    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document."""
        await self.batch([DeleteOp(collection, doc_id)])

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Doc]:
        """Run a filtered, sorted and limited query."""
        return _run_query(
            self._collections[collection], self._positions[collection], filters, sort, limit
        )

    async def batch(self, ops: Sequence[BatchOp]) -> None:
        """Commit several writes atomically."""
        if not ops:
            return
        async with self._lock:
            staging = self._stage(ops)
            for (collection, doc_id), doc in staging.writes.items():
                if doc is None:
                    self._collections[collection].pop(doc_id, None)
                    self._positions[collection].pop(doc_id, None)
                else:
                    self._collections[collection][doc_id] = doc
                    self._positions[collection].setdefault(doc_id, next(self._sequence))
            logger.debug("batch_committed", operations=len(ops))
        self._notify(staging.collections())

    def _stage(self, ops: Sequence[BatchOp]) -> _Staging:
        """Apply ``ops`` to a private view, raising before anything is committed."""
        staging = _Staging()
        for op in ops:
            key = (op.collection, op.doc_id)
            current = staging.writes.get(key, _MISSING)
            if current is _MISSING:
                current = self._collections[op.collection].get(op.doc_id)

            if isinstance(op, CreateOp):
                if current is not None:
                    raise DocumentExistsError(op.collection, op.doc_id)
                staging.writes[key] = copy.deepcopy(op.doc)
            elif isinstance(op, SetOp):
                staging.writes[key] = copy.deepcopy(op.doc)
            elif isinstance(op, UpdateOp):
                if current is None:
                    logger.error(
                        "document_not_found_for_update",
                        collection=op.collection,
                        doc_id=op.doc_id,
                    )
                    raise DocumentNotFoundError(op.collection, op.doc_id)
                staging.writes[key] = _apply_fields(current, op.fields)
            elif isinstance(op, DeleteOp):
                staging.writes[key] = None
            else:
                raise StoreError(f"Unsupported batch operation: {op!r}")
        return staging

    def subscribe(
        self,
        collection: str,
        filters: Sequence[Filter],
        sort: Optional[Sort],
        limit: Optional[int],
        callback: SnapshotCallback,
    ) -> Unsubscribe:
        """Register a live query and deliver its current result set."""
        listener_id = next(self._listener_ids)
        listener = _Listener(collection, tuple(filters), sort, limit, callback)
        self._listeners[listener_id] = listener
        logger.debug("listener_registered", listener_id=listener_id, collection=collection)
        self._deliver(listener_id, listener)

        def unsubscribe() -> None:
            listener.active = False
            if self._listeners.pop(listener_id, None) is not None:
                logger.debug("listener_removed", listener_id=listener_id)

        return unsubscribe

    def _notify(self, collections: Set[str]) -> None:
        for listener_id, listener in list(self._listeners.items()):
            if listener.collection in collections:
                self._deliver(listener_id, listener)

    def _deliver(self, listener_id: int, listener: _Listener) -> None:
        if not listener.active:
            return
        try:
            snapshot = _run_query(
                self._collections[listener.collection],
                self._positions[listener.collection],
                listener.filters,
                listener.sort,
                listener.limit,
            )
        except StoreError as e:
            logger.error("listener_query_error", listener_id=listener_id, error=str(e))
            return
        if snapshot == listener.last_snapshot:
            return
        listener.last_snapshot = snapshot
        try:
            listener.callback(copy.deepcopy(snapshot))
        except Exception as e:
            logger.error("listener_callback_error", listener_id=listener_id, error=str(e))

    @property
    def listener_count(self) -> int:
        """Number of live queries currently registered."""
        return len(self._listeners)

    def document_count(self, collection: str) -> int:
        """Number of documents held in ``collection``."""
        return len(self._collections[collection])
