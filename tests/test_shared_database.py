"""A running service and short-lived CLI commands working on one database file."""
from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from formqueue.connectivity import ConnectivitySignal
from formqueue.db import PersistenceManager
from formqueue.queue.builder import EntryBuilder
from formqueue.queue.models import EntryStatus
from formqueue.queue.store import QueueStore
from formqueue.sync import SyncController
from tests.conftest import FakeDeliveryClient


def _stack(url: str, client: FakeDeliveryClient, recover: bool) -> SimpleNamespace:
    db = PersistenceManager(url)
    store = QueueStore()
    controller = SyncController(db, store, client, ConnectivitySignal(online=True), max_retries=3, interval=60)
    controller.initialize(recover=recover)
    builder = EntryBuilder(db, store, required_fields=["title"])
    return SimpleNamespace(db=db, store=store, client=client, controller=controller, builder=builder)


@pytest.fixture
def url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'shared.sqlite3'}"


@pytest.fixture
def service(url: str):
    stack = _stack(url, FakeDeliveryClient(), recover=True)
    yield stack
    stack.db.close()


@pytest.fixture
def cli(url: str, service):
    stack = _stack(url, FakeDeliveryClient(), recover=False)
    yield stack
    stack.db.close()


def test_entry_deleted_by_cli_is_not_resurrected(service, cli, image) -> None:
    service.client.failures = 1
    entry = service.builder.add_entry({"title": "x"}, [image()])
    service.controller.process_pending()
    assert service.db.get_entry(entry.id).retry_count == 1

    cli.controller.delete_entry(entry.id)
    assert service.controller.process_pending() == 0

    assert len(service.client.calls) == 1
    assert service.db.get_entry(entry.id) is None
    assert service.db.count_blobs() == 0
    assert service.store.size() == 0


def test_entry_added_by_cli_is_delivered_by_service(service, cli, image) -> None:
    entry = cli.builder.add_entry({"title": "x"}, [image("cli.jpg")])

    assert service.controller.process_pending() == 1

    assert service.client.submitted_ids == [entry.id]
    assert [blob.file_name for blob in service.client.calls[0].blobs] == ["cli.jpg"]
    assert service.db.count() == 0


def test_entry_resubmitted_by_cli_is_delivered_by_service(service, cli) -> None:
    service.client.always_fail = True
    entry = service.builder.add_entry({"title": "x"})
    for _ in range(3):
        service.controller.process_pending()
    assert service.db.get_entry(entry.id).status == EntryStatus.ERROR

    cli.controller.retry_entry(entry.id)
    service.client.always_fail = False

    assert service.controller.process_pending() == 1
    assert service.db.count() == 0


def test_entry_claimed_by_one_process_is_skipped_by_the_other(service, cli) -> None:
    entry = service.builder.add_entry({"title": "x"})
    seen = {}

    def service_pass_mid_delivery(resolved):
        seen["delivered"] = service.controller.process_pending()

    cli.client.on_submit = service_pass_mid_delivery

    assert cli.controller.process_pending() == 1

    assert seen == {"delivered": 0}
    assert service.client.calls == []
    assert cli.client.submitted_ids == [entry.id]
    assert service.db.count() == 0


def test_cli_start_leaves_in_flight_entry_alone(service, url) -> None:
    entry = service.builder.add_entry({"title": "x"})
    seen = {}

    def start_cli(resolved):
        stack = _stack(url, FakeDeliveryClient(), recover=False)
        try:
            seen["status"] = stack.db.get_entry(resolved.entry.id).status
        finally:
            stack.db.close()

    service.client.on_submit = start_cli

    assert service.controller.process_pending() == 1
    assert seen == {"status": EntryStatus.SENDING}
    assert service.db.get_entry(entry.id) is None
