"""Synchronization controller: delivers queued entries when online."""
import threading
from dataclasses import replace
from typing import Dict, Optional

from formqueue import settings
from formqueue.connectivity import ConnectivitySignal
from formqueue.db import PersistenceManager
from formqueue.delivery_client import DeliveryClient
from formqueue.errors import ConcurrencyViolation, NotFoundError, StorageError, ValidationError
from formqueue.logging_conf import logger
from formqueue.queue.models import EntryStatus, QueueEntry, ResolvedEntry, now_ms
from formqueue.queue.store import QueueStore


class SyncController:
    """Runs FIFO delivery passes and keeps the store and database consistent.

    Every mutation is written to the database first and mirrored into the
    store second, so store readers only see committed states.

    Passes never overlap. A pass requested while another one is running is
    folded into a single follow-up pass executed by the running thread.
    """

    def __init__(
        self,
        db: PersistenceManager,
        store: QueueStore,
        client: DeliveryClient,
        connectivity: ConnectivitySignal,
        max_retries: Optional[int] = None,
        interval: Optional[int] = None,
    ):
        self.db = db
        self.store = store
        self.client = client
        self.connectivity = connectivity
        self.max_retries = max_retries or settings.MAX_RETRIES
        self.interval = interval or settings.SYNC_INTERVAL

        self._state_lock = threading.Lock()
        # Guards claim of an entry against explicit delete/retry
        self._entry_lock = threading.Lock()
        self._processing = False
        self._pass_requested = False
        # Claimed entries whose follow-up write failed, keyed by id, with the state to write
        self._unsettled: Dict[str, QueueEntry] = {}

        self.running = False
        self.thread = None
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._unsubscribe = None

    # ==================== Lifecycle ====================

    def initialize(self, recover: bool = True) -> None:
        """
        Open the database and load the store.

        Args:
            recover: Clean up after an interrupted run (purge sent entries,
                reset stuck sending ones, sweep orphan blobs). Only the
                long-running service passes True, CLI commands share the
                database with it.
        """
        self.store.dispatch("loading_set", {"loading": True})
        try:
            started_at = now_ms()
            self.db.initialize()
            if recover:
                self.purge_sent()
                self.db.reset_stuck_sending()
                if settings.SWEEP_ORPHAN_BLOBS:
                    self.db.delete_orphan_blobs(cutoff=started_at)
            entries = self.db.list_entries()
        except Exception as e:
            self.store.dispatch("error_set", {"error": f"Failed to initialize queue: {e}"})
            raise
        self.store.dispatch("queue_loaded", {"items": [e.to_dict() for e in entries]})
        logger.info(f"Queue loaded with {len(entries)} entries")

    def start(self):
        """Start the sync thread and listen for connectivity changes."""
        if self.running:
            logger.warning("Sync controller is already running")
            return

        self.running = True
        self._stopping.clear()
        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity_changed)
        self.thread = threading.Thread(target=self._run, name="sync-controller", daemon=True)
        self.thread.start()
        logger.info(f"Sync controller started (interval: {self.interval}s)")
        self.trigger("startup")

    def stop(self):
        """Stop scheduling passes. An in-flight delivery is left to finish."""
        if not self.running:
            return

        self.running = False
        self._stopping.set()
        self._wakeup.set()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self.thread:
            self.thread.join(timeout=10)
        logger.info("Sync controller stopped")

    def trigger(self, reason: str = "manual") -> None:
        """Ask the sync thread for a pass without blocking the caller."""
        logger.debug(f"Sync triggered: {reason}")
        self._wakeup.set()

    def _on_connectivity_changed(self, online: bool) -> None:
        if online:
            self.trigger("connectivity restored")

    def _run(self):
        """Main sync loop."""
        logger.info("Sync thread started")

        while self.running:
            triggered = self._wakeup.wait(timeout=self.interval)
            self._wakeup.clear()
            if not self.running:
                break
            if not triggered:
                logger.debug("Retry interval - checking queue")
            try:
                self.process_pending()
            except Exception as e:
                logger.error(f"Sync pass failed: {e}", exc_info=True)

        logger.info("Sync thread stopped")

    # ==================== Delivery ====================

    def process_pending(self) -> int:
        """
        Deliver pending entries oldest first.

        Returns:
            Number of entries delivered, including any follow-up pass
        """
        with self._state_lock:
            if self._processing:
                self._pass_requested = True
                logger.debug("Pass already running, follow-up pass scheduled")
                return 0
            self._processing = True

        delivered = 0
        finished = False
        try:
            while True:
                delivered += self._run_pass()
                with self._state_lock:
                    if not self._pass_requested or self._stopping.is_set():
                        self._pass_requested = False
                        self._processing = False
                        finished = True
                        return delivered
                    self._pass_requested = False
        finally:
            if not finished:
                with self._state_lock:
                    self._processing = False

    def _run_pass(self) -> int:
        if not self.connectivity.is_online():
            logger.info("Offline - queue processing skipped")
            return 0

        self._settle_unfinished()
        self.reload()

        pending = self.store.pending_entries()
        if not pending:
            logger.debug("Queue is empty")
            return 0

        logger.info(f"Processing {len(pending)} pending entries")
        delivered = 0
        for entry in pending:
            if self._stopping.is_set():
                logger.info("Stop requested - ending pass early")
                break
            try:
                if self._deliver(entry):
                    delivered += 1
            except Exception as e:
                logger.error(f"Unexpected error processing entry {entry.id}: {e}", exc_info=True)
        return delivered

    def reload(self) -> None:
        """Replace the store contents with the committed rows.

        CLI commands add, delete and resubmit entries in the same database.
        """
        with self.db.lock:
            entries = self.db.list_entries()
            self.store.dispatch("queue_loaded", {"items": [e.to_dict() for e in entries]})

    def _deliver(self, entry: QueueEntry) -> bool:
        """Attempt one entry. Returns True when it was delivered and removed."""
        with self._entry_lock, self.db.lock:
            try:
                claimed = self.db.claim_entry(entry.id)
            except StorageError as e:
                logger.error(f"Could not mark entry {entry.id} as sending, skipping: {e}")
                return False
            if not claimed:
                # Deleted, resubmitted or claimed elsewhere since the pass started
                logger.debug(f"Entry {entry.id} no longer pending, skipping")
                self._refresh(entry.id)
                return False
            sending = entry.with_status(EntryStatus.SENDING)
            self.store.dispatch("entry_status_updated", {"id": entry.id, "status": EntryStatus.SENDING.value})
        self.store.dispatch("processing_set", {"id": entry.id})

        try:
            blobs = self.db.get_blobs(sending.blob_refs)
            self.client.submit(ResolvedEntry(entry=sending, blobs=tuple(blobs)))
        except Exception as e:
            self._record_failure(sending, e)
            return False
        finally:
            self.store.dispatch("processing_set", {"id": None})

        sent = sending.with_status(EntryStatus.SENT)
        try:
            with self._entry_lock:
                self._finish_sent(sent)
        except StorageError as e:
            logger.error(f"Entry {entry.id} was delivered but cleanup failed, will retry: {e}")
            self._unsettled[entry.id] = sent
        logger.info(f"Delivered entry {entry.id}")
        return True

    def _finish_sent(self, sent: QueueEntry) -> None:
        with self.db.lock:
            if self.db.update_claimed_entry(sent):
                self.store.dispatch("entry_status_updated", {"id": sent.id, "status": EntryStatus.SENT.value})
        self._remove(sent)

    def _record_failure(self, entry: QueueEntry, error: Exception) -> None:
        retry_count = entry.retry_count + 1
        message = str(error) or type(error).__name__

        if retry_count >= self.max_retries:
            target = replace(entry, status=EntryStatus.ERROR, retry_count=retry_count, error=message)
            logger.error(f"Entry {entry.id} failed after {retry_count} attempts: {message}")
        else:
            target = replace(entry, status=EntryStatus.PENDING, retry_count=retry_count)
            logger.warning(f"Entry {entry.id} failed (attempt {retry_count}/{self.max_retries}): {message}")

        try:
            with self._entry_lock:
                self._release(target)
        except StorageError as e:
            logger.error(f"Could not record failure of entry {entry.id}, will retry: {e}")
            self._unsettled[entry.id] = target

    def _release(self, target: QueueEntry) -> None:
        """Move a claimed entry out of sending. Never re-inserts a deleted row."""
        with self.db.lock:
            if not self.db.update_claimed_entry(target):
                logger.warning(f"Entry {target.id} changed while in flight, keeping stored state")
                self._refresh(target.id)
            elif target.status == EntryStatus.PENDING:
                self.store.dispatch("entry_retried", {"id": target.id, "retry_count": target.retry_count})
            else:
                self.store.dispatch("entry_updated", {"item": target.to_dict()})

    def _settle_unfinished(self) -> None:
        """Retry writes that failed after a claim, so no entry stays stuck in sending."""
        with self._entry_lock:
            for entry_id, target in list(self._unsettled.items()):
                try:
                    if target.status == EntryStatus.SENT:
                        self._finish_sent(target)
                    else:
                        self._release(target)
                except StorageError as e:
                    logger.error(f"Entry {entry_id} still unsettled: {e}")
                    continue
                self._unsettled.pop(entry_id, None)
                logger.info(f"Settled entry {entry_id} ({target.status.value})")

    def _refresh(self, entry_id: str) -> None:
        current = self.db.get_entry(entry_id)
        if current is None:
            self.store.dispatch("entry_removed", {"id": entry_id})
        elif self.store.get(entry_id) is None:
            self.store.dispatch("entry_added", {"item": current.to_dict()})
        else:
            self.store.dispatch("entry_updated", {"item": current.to_dict()})

    # ==================== Explicit actions ====================

    def delete_entry(self, entry_id: str) -> None:
        """Delete an entry and its blobs. Deleting an unknown id does nothing."""
        with self._entry_lock, self.db.lock:
            entry = self.db.get_entry(entry_id) or self.store.get(entry_id)
            if entry is None:
                logger.debug(f"Delete skipped, entry not found: {entry_id}")
                return
            if entry.status == EntryStatus.SENDING and entry_id not in self._unsettled:
                raise ConcurrencyViolation(f"Entry {entry_id} is being delivered")
            self._remove(entry)
            self._unsettled.pop(entry_id, None)
        logger.info(f"Deleted entry {entry_id}")

    def retry_entry(self, entry_id: str) -> QueueEntry:
        """Resubmit an entry that reached error: back to pending with a fresh retry budget."""
        with self._entry_lock, self.db.lock:
            entry = self.db.get_entry(entry_id)
            if entry is None:
                raise NotFoundError("entry", entry_id)
            if entry.status != EntryStatus.ERROR:
                raise ValidationError(f"Only entries in error can be retried, {entry_id} is {entry.status.value}")

            reset = replace(entry, status=EntryStatus.PENDING, retry_count=0, error=None)
            self.db.save_entry(reset)
            self.store.dispatch("entry_updated", {"item": reset.to_dict()})
        logger.info(f"Entry {entry_id} resubmitted")
        if self.connectivity.is_online():
            self.trigger("resubmit")
        return reset

    def purge_sent(self) -> int:
        """Finish cleanup of entries that were delivered but not yet deleted."""
        sent = self.db.list_entries(EntryStatus.SENT)
        for entry in sent:
            self._remove(entry)
        if sent:
            logger.info(f"Cleared {len(sent)} sent entries")
        return len(sent)

    def _remove(self, entry: QueueEntry) -> None:
        with self.db.lock:
            self.db.delete_blobs(entry.blob_refs)
            self.db.delete_entry(entry.id)
            self.store.dispatch("entry_removed", {"id": entry.id})
