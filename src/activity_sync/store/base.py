"""Base document store interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from ..domain.errors import DocumentExistsError

Doc = Dict[str, Any]
SnapshotCallback = Callable[[List[Doc]], None]
Unsubscribe = Callable[[], None]

FILTER_OPERATORS = frozenset(
    {"==", "!=", "<", "<=", ">", ">=", "array-contains", "not-array-contains", "in"}
)


@dataclass(frozen=True)
class Filter:
    """A single field predicate of a query."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class Sort:
    """Ordering of a query result."""

    field: str
    descending: bool = False


class ArrayUnion:
    """Field transform adding values to a list field, skipping ones already present."""

    def __init__(self, *values: Any) -> None:
        self.values = values

    def __repr__(self) -> str:
        return f"ArrayUnion{self.values!r}"


class ArrayRemove:
    """Field transform removing every occurrence of the values from a list field."""

    def __init__(self, *values: Any) -> None:
        self.values = values

    def __repr__(self) -> str:
        return f"ArrayRemove{self.values!r}"


@dataclass(frozen=True)
class CreateOp:
    """Batch operation writing a document that must not exist yet."""

    collection: str
    doc_id: str
    doc: Doc


@dataclass(frozen=True)
class SetOp:
    """Batch operation writing a whole document."""

    collection: str
    doc_id: str
    doc: Doc


@dataclass(frozen=True)
class UpdateOp:
    """Batch operation changing fields of an existing document."""

    collection: str
    doc_id: str
    fields: Doc


@dataclass(frozen=True)
class DeleteOp:
    """Batch operation removing a document."""

    collection: str
    doc_id: str


BatchOp = Union[CreateOp, SetOp, UpdateOp, DeleteOp]


class DocumentStore(ABC):
    """Abstract base class for document stores.

    Implementations raise ``StoreError`` (or a subclass) for every failed
    call. ``batch`` is all-or-nothing.
    """

    def new_id(self, collection: str) -> str:
        """Generate a fresh opaque document id."""
        return uuid4().hex

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Doc]:
        """Retrieve a document by ID."""
        pass

    async def create(self, collection: str, doc_id: str, doc: Doc) -> bool:
        """Write a document only if ``doc_id`` is still free.

        Returns False, leaving the stored document untouched, when it already
        exists. The existence check and the write commit together.
        """
        try:
            await self.batch([CreateOp(collection, doc_id, doc)])
        except DocumentExistsError:
            return False
        return True

    @abstractmethod
    async def put(self, collection: str, doc_id: str, doc: Doc) -> None:
        """Create or replace a document."""
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Doc) -> None:
        """Apply a partial update to an existing document."""
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting a missing document is a no-op."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Doc]:
        """Run a filtered, sorted and limited query."""
        pass

    @abstractmethod
    async def batch(self, ops: Sequence[BatchOp]) -> None:
        """Commit several writes atomically."""
        pass

    @abstractmethod
    def subscribe(
        self,
        collection: str,
        filters: Sequence[Filter],
        sort: Optional[Sort],
        limit: Optional[int],
        callback: SnapshotCallback,
    ) -> Unsubscribe:
        """Register a live query.

        The callback receives the current result set right away and again
        whenever a committed write changes it. The returned callable stops
        delivery and may be called any number of times.
        """
        pass
