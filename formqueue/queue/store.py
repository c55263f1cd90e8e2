"""In-memory reactive queue store.

Holds entry metadata only. Every change goes through `dispatch`, which accepts
plain serializable payloads (ids, strings, numbers, lists, dicts). Binary
attachment data is rejected at that boundary and never enters the store.

All mutations are serialized under one lock. Listeners are called after the
lock is released, with the snapshot produced by the mutation.
"""
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from formqueue.errors import SerializationError
from formqueue.logging_conf import logger
from formqueue.queue.models import EntryStatus, QueueEntry


@dataclass(frozen=True)
class QueueState:
    """Immutable view of the store."""

    items: Tuple[QueueEntry, ...] = ()
    loading: bool = False
    error: Optional[str] = None
    processing_id: Optional[str] = None


Listener = Callable[[QueueState], None]


def ensure_serializable(value: Any, path: str = "payload") -> None:
    """Raise SerializationError unless `value` is built from JSON primitives."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            ensure_serializable(item, f"{path}[{index}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise SerializationError(f"{path} has non-string key {key!r}")
            ensure_serializable(item, f"{path}.{key}")
        return
    raise SerializationError(f"{path} is not serializable: {type(value).__name__}")


class QueueStore:
    """Single-writer container for queue entry metadata."""

    def __init__(self):
        self._state = QueueState()
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._reducers: Dict[str, Callable[[QueueState, Dict[str, Any]], QueueState]] = {
            "queue_loaded": self._queue_loaded,
            "entry_added": self._entry_added,
            "entry_status_updated": self._entry_status_updated,
            "entry_retried": self._entry_retried,
            "entry_updated": self._entry_updated,
            "entry_removed": self._entry_removed,
            "processing_set": self._processing_set,
            "loading_set": self._loading_set,
            "error_set": self._error_set,
        }

    # ==================== Mutation ====================

    def dispatch(self, action_type: str, payload: Optional[Dict[str, Any]] = None) -> QueueState:
        """Apply one action and notify listeners. Returns the new state."""
        payload = payload or {}
        ensure_serializable(payload)
        reducer = self._reducers.get(action_type)
        if reducer is None:
            raise ValueError(f"Unknown queue action: {action_type}")

        with self._lock:
            new_state = reducer(self._state, payload)
            self._state = new_state
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"Queue store listener failed: {e}", exc_info=True)
        return new_state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ==================== Readers ====================

    def snapshot(self) -> QueueState:
        return self._state

    def entries(self) -> Tuple[QueueEntry, ...]:
        return self._state.items

    def pending_entries(self) -> List[QueueEntry]:
        """Pending entries, oldest first."""
        return [e for e in self._state.items if e.status == EntryStatus.PENDING]

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        for entry in self._state.items:
            if entry.id == entry_id:
                return entry
        return None

    def size(self) -> int:
        return len(self._state.items)

    @property
    def processing_id(self) -> Optional[str]:
        return self._state.processing_id

    @property
    def loading(self) -> bool:
        return self._state.loading

    @property
    def error(self) -> Optional[str]:
        return self._state.error

    # ==================== Reducers ====================

    @staticmethod
    def _ordered(items) -> Tuple[QueueEntry, ...]:
        return tuple(sorted(items, key=lambda e: (e.created_at, e.id)))

    def _queue_loaded(self, state: QueueState, payload: Dict[str, Any]) -> QueueState:
        items = [QueueEntry.from_dict(item) for item in payload.get("items", [])]
        return replace(state, items=self._ordered(items), loading=False, error=None)

    def _entry_added(self, state: QueueState, payload: Dict[str, Any]) -> QueueState:
        entry = QueueEntry.from_dict(payload["item"])
        items = [e for e in state.items if e.id != entry.id] + [entry]
        return replace(state, items=self._ordered(items))

    def _entry_updated(self, state: QueueState, payload: Dict[str, Any]) -> QueueState:
        entry = QueueEntry.from_dict(payload["item"])
        if self.get_from(state, entry.id) is None:
            return state
        items = [entry if e.id == entry.id else e for e in state.items]
        return replace(state, items=tuple(items))

    def _entry_status_updated(self, state: QueueState, payload: Dict[str, Any]) -> QueueState:
        status = EntryStatus(payload["status"])
        error = payload.get("error")
        return self._map_entry(state, payload["id"], lambda e: e.with_status(status, error))

    def _entry_retried(self, state: QueueState, payload: Dict[str, Any]) -> QueueState:
        retry_count = int(payload["retry_count"])
        return self._map_entry(
            state,
            payload["id"],
            lambda e: replace(e, status=EntryStatus.PENDING, retry_count=retry_count),
        )

    def _entry_removed(self, state: QueueState, payload: Dict[str, Any]) -> QueueState:
        entry_id = payload["id"]
        items = tuple(e for e in state.items if e.id != entry_id)
        processing_id = None if state.processing_id == entry_id else state.processing_id
        return replace(state, items=items, processing_id=processing_id)

    def _processing_set(self, state: QueueState, payload: Dict[str, Any]) -> QueueState:
        return replace(state, processing_id=payload.get("id"))

    def _loading_set(self, state: QueueState, payload: Dict[str, Any]) -> QueueState:
        return replace(state, loading=bool(payload.get("loading")))

    def _error_set(self, state: QueueState, payload: Dict[str, Any]) -> QueueState:
        return replace(state, error=payload.get("error"), loading=False)

    @staticmethod
    def get_from(state: QueueState, entry_id: str) -> Optional[QueueEntry]:
        for entry in state.items:
            if entry.id == entry_id:
                return entry
        return None

    @staticmethod
    def _map_entry(state: QueueState, entry_id: str, change) -> QueueState:
        items = tuple(change(e) if e.id == entry_id else e for e in state.items)
        return replace(state, items=items)
