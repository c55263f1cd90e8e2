"""Queue data models."""
import mimetypes
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple


def now_ms() -> int:
    """Current wall clock time in milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


class EntryStatus(str, Enum):
    """Lifecycle states of a queue entry."""

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    ERROR = "error"


@dataclass(frozen=True)
class QueueEntry:
    """One queued form submission. Holds blob ids, never blob bytes."""

    id: str
    created_at: int  # ms, defines FIFO order
    status: EntryStatus
    retry_count: int
    payload: Dict[str, str]
    blob_refs: Tuple[str, ...] = ()
    error: Optional[str] = None

    @classmethod
    def create(cls, payload: Dict[str, str], blob_refs: List[str], created_at: int):
        """Factory for a fresh pending entry."""
        return cls(
            id=new_id(),
            created_at=created_at,
            status=EntryStatus.PENDING,
            retry_count=0,
            payload=dict(payload),
            blob_refs=tuple(blob_refs),
        )

    def with_status(self, status: EntryStatus, error: Optional[str] = None) -> "QueueEntry":
        if error is None:
            return replace(self, status=status)
        return replace(self, status=status, error=error)

    def to_dict(self) -> Dict[str, Any]:
        """Plain serializable form, used for the store transport."""
        data = {
            "id": self.id,
            "timestamp": self.created_at,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "data": dict(self.payload),
            "blobRefs": list(self.blob_refs),
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        return cls(
            id=data["id"],
            created_at=int(data["timestamp"]),
            status=EntryStatus(data["status"]),
            retry_count=int(data.get("retryCount", 0)),
            payload=dict(data.get("data") or {}),
            blob_refs=tuple(data.get("blobRefs") or ()),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class BlobRecord:
    """A stored binary attachment."""

    id: str
    content: bytes = field(repr=False)
    file_name: str
    content_type: str
    created_at: int


@dataclass(frozen=True)
class Attachment:
    """Raw attachment handed to the entry builder."""

    content: bytes = field(repr=False)
    file_name: str
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: Path) -> "Attachment":
        path = Path(path)
        content_type, _ = mimetypes.guess_type(path.name)
        return cls(
            content=path.read_bytes(),
            file_name=path.name,
            content_type=content_type or "application/octet-stream",
        )


@dataclass(frozen=True)
class ResolvedEntry:
    """An entry with its blobs loaded, ready for the delivery client."""

    entry: QueueEntry
    blobs: Tuple[BlobRecord, ...]
