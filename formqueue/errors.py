"""Error types for the offline form queue."""


class QueueError(RuntimeError):
    """Base class for every failure raised by the queue."""


class ValidationError(QueueError):
    """Bad input to the entry builder. Raised before anything is written."""


class StorageError(QueueError):
    """The database is unavailable or a read/write failed."""


class NotFoundError(QueueError):
    """An entry or blob that must exist is missing."""

    def __init__(self, kind: str, item_id: str):
        super().__init__(f"{kind} not found: {item_id}")
        self.kind = kind
        self.item_id = item_id


class DeliveryError(QueueError):
    """The remote endpoint rejected a submission or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConcurrencyViolation(QueueError):
    """Two operations tried to work on the same entry at the same time."""


class SerializationError(QueueError, TypeError):
    """A non-serializable value was handed to the queue store."""
