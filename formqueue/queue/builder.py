"""Builds new queue entries from form fields and attachments."""
import threading
from typing import Callable, Iterable, List, Mapping, Optional

from formqueue import settings
from formqueue.db import PersistenceManager
from formqueue.errors import ValidationError
from formqueue.logging_conf import logger
from formqueue.queue.models import Attachment, QueueEntry, now_ms
from formqueue.queue.store import QueueStore


class EntryBuilder:
    """Validates a submission, persists it and appends it to the store.

    Order of writes: every blob, then the entry, then the store. A failure
    part way leaves already written blobs behind as unreferenced orphans.
    """

    def __init__(
        self,
        db: PersistenceManager,
        store: QueueStore,
        required_fields: Optional[List[str]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.db = db
        self.store = store
        self.required_fields = settings.REQUIRED_FIELDS if required_fields is None else required_fields
        self.clock = clock
        self._last_created_at = 0
        self._lock = threading.Lock()
        self._on_added: List[Callable[[QueueEntry], None]] = []

    def on_added(self, callback: Callable[[QueueEntry], None]) -> None:
        """Register a callback run after each successful add."""
        self._on_added.append(callback)

    def add_entry(self, fields: Mapping[str, str], attachments: Iterable[Attachment] = ()) -> QueueEntry:
        """
        Queue a form submission.

        Args:
            fields: Form field names mapped to string values
            attachments: Files to store alongside the entry, in order

        Returns:
            The persisted pending entry

        Raises:
            ValidationError: bad input, nothing was written
            StorageError: a blob or entry write failed
        """
        attachments = list(attachments)
        self._validate(fields, attachments)

        blob_refs = []
        for attachment in attachments:
            blob_refs.append(
                self.db.save_blob(attachment.content, attachment.file_name, attachment.content_type)
            )

        entry = QueueEntry.create(dict(fields), blob_refs, self._next_created_at())
        with self.db.lock:
            self.db.save_entry(entry)
            self.store.dispatch("entry_added", {"item": entry.to_dict()})
        logger.info(f"Queued entry {entry.id} with {len(blob_refs)} attachments")

        for callback in list(self._on_added):
            try:
                callback(entry)
            except Exception as e:
                logger.error(f"on_added callback failed for {entry.id}: {e}", exc_info=True)
        return entry

    def _validate(self, fields, attachments: List[Attachment]) -> None:
        if not isinstance(fields, Mapping):
            raise ValidationError("fields must be a mapping")

        errors = []
        for key, value in fields.items():
            if not isinstance(key, str) or not isinstance(value, str):
                errors.append(f"field {key!r} must map a string to a string")

        for name in self.required_fields:
            value = fields.get(name)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"field {name!r} is required")

        for index, attachment in enumerate(attachments):
            if not isinstance(attachment, Attachment):
                errors.append(f"attachment {index} is not an Attachment")
                continue
            if not isinstance(attachment.content, (bytes, bytearray)):
                errors.append(f"attachment {index} content must be bytes")
            if not attachment.file_name:
                errors.append(f"attachment {index} needs a file name")

        if errors:
            raise ValidationError("; ".join(errors))

    def _next_created_at(self) -> int:
        """Strictly increasing creation time, also past entries loaded at startup."""
        with self._lock:
            latest = max((e.created_at for e in self.store.entries()), default=0)
            created_at = max(self.clock(), self._last_created_at + 1, latest + 1)
            self._last_created_at = created_at
            return created_at
