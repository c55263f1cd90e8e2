from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from formqueue import app as app_module
from formqueue.app import Application, build_parser, main, parse_fields
from formqueue.errors import ValidationError
from formqueue.queue.models import EntryStatus


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch) -> str:
    url = f"sqlite:///{tmp_path / 'cli.sqlite3'}"
    monkeypatch.setattr(app_module.settings, "DATABASE_URL", url)
    return url


def test_parse_fields() -> None:
    assert parse_fields(["title=Leak", "note=a=b"]) == {"title": "Leak", "note": "a=b"}

    with pytest.raises(ValidationError):
        parse_fields(["title"])


def test_parser_defaults_to_run() -> None:
    assert build_parser().parse_args([]).command is None
    assert build_parser().parse_args(["list", "--status", "error"]).status == "error"


def test_add_then_list(database_url: str, tmp_path: Path, capsys) -> None:
    photo = tmp_path / "photo.jpg"
    photo.write_bytes(b"\xff\xd8")

    assert main(["add", "--field", "title=Leak", "--attach", str(photo)]) == 0
    entry_id = capsys.readouterr().out.strip().splitlines()[-1]

    assert main(["list", "--status", "pending"]) == 0
    listing = capsys.readouterr().out
    assert entry_id in listing
    assert "blobs=1" in listing


def test_add_without_required_field_fails(database_url: str) -> None:
    assert main(["add", "--field", "note=hi"]) == 1


def test_sync_offline_delivers_nothing(database_url: str, capsys) -> None:
    main(["add", "--field", "title=Leak"])
    capsys.readouterr()

    with patch("formqueue.delivery_client.DeliveryClient.ping", return_value=False):
        assert main(["sync"]) == 0

    assert "Delivered 0 entries" in capsys.readouterr().out


def test_application_triggers_pass_after_add_when_online(database_url: str) -> None:
    application = Application()
    application.initialize()
    try:
        application.connectivity.set_online(True)
        with patch.object(application.controller, "trigger") as trigger:
            application.builder.add_entry({"title": "x"})
        trigger.assert_called_once_with("entry added")

        application.connectivity.set_online(False)
        with patch.object(application.controller, "trigger") as trigger:
            application.builder.add_entry({"title": "y"})
        trigger.assert_not_called()

        assert [e.status for e in application.store.entries()] == [EntryStatus.PENDING, EntryStatus.PENDING]
    finally:
        application.client.close()
        application.db.close()
