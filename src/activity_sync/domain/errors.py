"""Error taxonomy shared by the coordinators and the store adapters."""


class ActivitySyncError(Exception):
    """Base class for all activity sync errors."""
    pass


class ValidationError(ActivitySyncError):
    """Raised when required input is missing or invalid, before any write."""
    pass


class StoreError(ActivitySyncError):
    """Raised when a document store call fails."""
    pass


class DocumentNotFoundError(StoreError):
    """Raised when an update targets a document that does not exist."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"Document {collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class SubscriptionError(ActivitySyncError):
    """Raised when a live subscription cannot be registered."""
    pass


class DocumentExistsError(StoreError):
    """Raised when a create targets a document id that is already taken."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"Document {collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id
