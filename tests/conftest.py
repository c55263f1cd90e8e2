from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from formqueue.connectivity import ConnectivitySignal
from formqueue.db import PersistenceManager
from formqueue.errors import DeliveryError
from formqueue.queue.builder import EntryBuilder
from formqueue.queue.models import Attachment, ResolvedEntry
from formqueue.queue.store import QueueStore
from formqueue.sync import SyncController


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> None:
        self.now += ms


class FakeDeliveryClient:
    """Records submissions. Fails while `failures` is positive, or always when `always_fail`."""

    def __init__(self, failures: int = 0, always_fail: bool = False) -> None:
        self.failures = failures
        self.always_fail = always_fail
        self.calls: list[ResolvedEntry] = []
        self.on_submit: Optional[Callable[[ResolvedEntry], None]] = None

    def submit(self, resolved: ResolvedEntry) -> dict:
        self.calls.append(resolved)
        if self.on_submit is not None:
            self.on_submit(resolved)
        if self.always_fail:
            raise DeliveryError("HTTP 503: unavailable", 503)
        if self.failures > 0:
            self.failures -= 1
            raise DeliveryError("HTTP 500: boom", 500)
        return {"success": True, "message": "Submission received successfully"}

    @property
    def submitted_ids(self) -> list[str]:
        return [call.entry.id for call in self.calls]


@pytest.fixture
def db(tmp_path: Path):
    manager = PersistenceManager(f"sqlite:///{tmp_path / 'queue.sqlite3'}")
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def store() -> QueueStore:
    return QueueStore()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def builder(db: PersistenceManager, store: QueueStore, clock: ManualClock) -> EntryBuilder:
    return EntryBuilder(db, store, required_fields=["title"], clock=clock)


@pytest.fixture
def client() -> FakeDeliveryClient:
    return FakeDeliveryClient()


@pytest.fixture
def connectivity() -> ConnectivitySignal:
    return ConnectivitySignal(online=True)


@pytest.fixture
def controller(
    db: PersistenceManager,
    store: QueueStore,
    client: FakeDeliveryClient,
    connectivity: ConnectivitySignal,
) -> SyncController:
    return SyncController(db, store, client, connectivity, max_retries=3, interval=60)


@pytest.fixture
def image() -> Callable[[str], Attachment]:
    def make(name: str = "photo.jpg") -> Attachment:
        return Attachment(content=b"\xff\xd8\xff" + name.encode(), file_name=name, content_type="image/jpeg")

    return make
