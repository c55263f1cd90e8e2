"""Main application - captures submissions and syncs them when online."""
import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from formqueue.logging_conf import logger
from formqueue import settings
from formqueue.connectivity import ConnectivityMonitor, ConnectivitySignal
from formqueue.db import PersistenceManager
from formqueue.delivery_client import DeliveryClient
from formqueue.errors import QueueError, ValidationError
from formqueue.queue.builder import EntryBuilder
from formqueue.queue.models import Attachment, EntryStatus, QueueEntry
from formqueue.queue.store import QueueStore
from formqueue.sync import SyncController


class Application:
    """Wires the queue components together and owns their lifecycle."""

    def __init__(self, database_url: Optional[str] = None, api_base_url: Optional[str] = None):
        self.db = PersistenceManager(database_url)
        self.store = QueueStore()
        self.client = DeliveryClient(api_base_url)
        self.connectivity = ConnectivitySignal(online=False)
        self.monitor = ConnectivityMonitor(self.connectivity, self.client.ping)
        self.builder = EntryBuilder(self.db, self.store)
        self.controller = SyncController(self.db, self.store, self.client, self.connectivity)
        self.builder.on_added(self._on_entry_added)
        self.running = False
        self._stopped = threading.Event()

    def initialize(self, recover: bool = True):
        """Validate config and load the queue. Errors here are fatal."""
        settings.validate_config()
        self.controller.initialize(recover=recover)

    def start(self):
        """Start the application."""
        logger.info("=" * 50)
        logger.info("Offline Form Queue")
        logger.info("=" * 50)
        logger.info(f"Endpoint: {self.client.base_url}")
        logger.info(f"Sync interval: {self.controller.interval}s")
        logger.info("=" * 50)

        self.initialize()
        self.monitor.check_once()
        self.monitor.start()
        self.controller.start()
        self.running = True
        logger.info(f"Started - {self.store.size()} entries in queue")

    def stop(self):
        """Stop the application."""
        if not self.running:
            return
        self.running = False
        self.controller.stop()
        self.monitor.stop()
        self.client.close()
        self.db.close()
        self._stopped.set()
        logger.info("Stopped")

    def run(self):
        """Run until stopped."""
        self.start()
        try:
            while self.running:
                self._stopped.wait(1)
        except KeyboardInterrupt:
            pass
        self.stop()

    def _on_entry_added(self, entry: QueueEntry):
        if self.connectivity.is_online():
            self.controller.trigger("entry added")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="formqueue", description="Offline form submission queue")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run the sync service until interrupted (default)")

    add_p = sub.add_parser("add", help="Queue a submission")
    add_p.add_argument("--field", action="append", default=[], metavar="NAME=VALUE", help="Form field")
    add_p.add_argument("--attach", action="append", default=[], metavar="PATH", help="File to attach")

    list_p = sub.add_parser("list", help="List queued entries")
    list_p.add_argument("--status", choices=[s.value for s in EntryStatus], default=None)

    delete_p = sub.add_parser("delete", help="Delete an entry and its attachments")
    delete_p.add_argument("entry_id")

    retry_p = sub.add_parser("retry", help="Resubmit an entry that reached error")
    retry_p.add_argument("entry_id")

    sub.add_parser("sync", help="Run one delivery pass and exit")
    return parser


def parse_fields(values: List[str]) -> dict:
    fields = {}
    for value in values:
        name, sep, field_value = value.partition("=")
        if not sep or not name:
            raise ValidationError(f"Expected NAME=VALUE, got {value!r}")
        fields[name] = field_value
    return fields


def _run_command(app: Application, args) -> int:
    if args.command == "add":
        fields = parse_fields(args.field)
        attachments = [Attachment.from_path(Path(p)) for p in args.attach]
        entry = app.builder.add_entry(fields, attachments)
        print(entry.id)
        return 0

    if args.command == "list":
        status = EntryStatus(args.status) if args.status else None
        for entry in app.db.list_entries(status):
            line = f"{entry.id}  {entry.status.value:<8} retries={entry.retry_count} blobs={len(entry.blob_refs)}"
            if entry.error:
                line += f"  error={entry.error}"
            print(line)
        return 0

    if args.command == "delete":
        app.controller.delete_entry(args.entry_id)
        return 0

    if args.command == "retry":
        app.controller.retry_entry(args.entry_id)
        return 0

    if args.command == "sync":
        app.monitor.check_once()
        delivered = app.controller.process_pending()
        print(f"Delivered {delivered} entries")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)
    app = Application()

    if args.command in (None, "run"):
        def signal_handler(sig, frame):
            logger.info(f"Received signal {sig}")
            app.stop()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        try:
            app.run()
        except ValueError as e:
            logger.error(f"Configuration error: {e}")
            return 1
        except QueueError as e:
            logger.error(f"Startup failed: {type(e).__name__}: {e}")
            return 1
        return 0

    try:
        app.initialize(recover=False)
        return _run_command(app, args)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except QueueError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    finally:
        app.client.close()
        app.db.close()


if __name__ == "__main__":
    sys.exit(main())
