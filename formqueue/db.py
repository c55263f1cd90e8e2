"""Database operations for queued entries and their blobs."""
import json
import sqlite3
import threading
import psycopg2
from psycopg2.extras import RealDictCursor
from pathlib import Path
from typing import List, Optional, Dict, Any, Iterable
from contextlib import contextmanager

from formqueue import settings
from formqueue.errors import NotFoundError, StorageError
from formqueue.logging_conf import logger
from formqueue.queue.models import BlobRecord, EntryStatus, QueueEntry, new_id, now_ms


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS entries (
        id TEXT PRIMARY KEY,
        timestamp BIGINT NOT NULL,
        status TEXT NOT NULL,
        retry_count INTEGER NOT NULL DEFAULT 0,
        data TEXT NOT NULL,
        blob_refs TEXT NOT NULL,
        error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS entries_by_status ON entries (status)",
    "CREATE INDEX IF NOT EXISTS entries_by_timestamp ON entries (timestamp)",
    """
    CREATE TABLE IF NOT EXISTS blobs (
        image_id TEXT PRIMARY KEY,
        bytes {binary} NOT NULL,
        file_name TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        uploaded_at BIGINT NOT NULL
    )
    """,
]

DRIVER_ERRORS = (sqlite3.Error, psycopg2.Error)


class PersistenceManager:
    """Two-table store: entry metadata in `entries`, attachment bytes in `blobs`.

    The tables share no transaction. Callers write blobs before the entry that
    references them, so a crash in between leaves at most an orphan blob.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.DATABASE_URL
        self.is_sqlite = self.database_url.startswith("sqlite:///")
        # sqlite takes `?`, psycopg2 takes `%s`
        self.ph = "?" if self.is_sqlite else "%s"
        self._conn = None
        self._lock = threading.RLock()

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or getattr(self._conn, "closed", False):
            self._conn = self._connect()
        return self._conn

    def _connect(self):
        try:
            if self.is_sqlite:
                path = Path(self.database_url[len("sqlite:///"):])
                path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(path), check_same_thread=False)
                conn.row_factory = sqlite3.Row
                return conn
            return psycopg2.connect(self.database_url)
        except (OSError,) + DRIVER_ERRORS as e:
            raise StorageError(f"Cannot open database: {e}") from e

    def close(self):
        """Close database connection."""
        with self._lock:
            if self._conn is not None and not getattr(self._conn, "closed", False):
                self._conn.close()
            self._conn = None

    @contextmanager
    def cursor(self):
        """Context manager for cursor with auto-commit/rollback."""
        with self._lock:
            conn = self.conn
            if self.is_sqlite:
                cur = conn.cursor()
            else:
                cur = conn.cursor(cursor_factory=RealDictCursor)
            try:
                yield cur
                conn.commit()
            except DRIVER_ERRORS as e:
                conn.rollback()
                raise StorageError(f"Database operation failed: {e}") from e
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    def initialize(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        binary = "BLOB" if self.is_sqlite else "BYTEA"
        with self.cursor() as cur:
            for statement in SCHEMA:
                cur.execute(statement.format(binary=binary))
        backend = "sqlite" if self.is_sqlite else "postgres"
        logger.info(f"Database ready ({backend})")

    # ==================== Blobs ====================

    def save_blob(self, content: bytes, file_name: str, content_type: str) -> str:
        """Store one attachment and return its generated id."""
        blob_id = new_id()
        with self.cursor() as cur:
            cur.execute(f"""
                INSERT INTO blobs (image_id, bytes, file_name, mime_type, uploaded_at)
                VALUES ({self.ph}, {self.ph}, {self.ph}, {self.ph}, {self.ph})
            """, (blob_id, bytes(content), file_name, content_type, now_ms()))
        logger.debug(f"Blob saved: {blob_id} ({file_name}, {len(content)} bytes)")
        return blob_id

    def get_blob(self, blob_id: str) -> Optional[BlobRecord]:
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT image_id, bytes, file_name, mime_type, uploaded_at
                FROM blobs
                WHERE image_id = {self.ph}
            """, (blob_id,))
            row = cur.fetchone()
        return self._blob_from_row(row) if row else None

    def get_blobs(self, blob_ids: Iterable[str]) -> List[BlobRecord]:
        """Fetch blobs in the requested order. Every id must exist."""
        blobs = []
        for blob_id in blob_ids:
            blob = self.get_blob(blob_id)
            if blob is None:
                raise NotFoundError("blob", blob_id)
            blobs.append(blob)
        return blobs

    def delete_blob(self, blob_id: str) -> None:
        with self.cursor() as cur:
            cur.execute(f"DELETE FROM blobs WHERE image_id = {self.ph}", (blob_id,))

    def delete_blobs(self, blob_ids: Iterable[str]) -> None:
        for blob_id in blob_ids:
            self.delete_blob(blob_id)

    def count_blobs(self) -> int:
        with self.cursor() as cur:
            cur.execute("SELECT COUNT(*) AS n FROM blobs")
            return self._scalar(cur.fetchone())

    def delete_orphan_blobs(self, cutoff: int) -> int:
        """Delete blobs that no entry references and that were stored at or before `cutoff` (ms)."""
        with self.cursor() as cur:
            cur.execute("SELECT blob_refs FROM entries")
            referenced = set()
            for row in cur.fetchall():
                referenced.update(json.loads(self._row(row)["blob_refs"]))

            cur.execute(f"SELECT image_id FROM blobs WHERE uploaded_at <= {self.ph}", (cutoff,))
            orphans = [self._row(row)["image_id"] for row in cur.fetchall()]
            orphans = [blob_id for blob_id in orphans if blob_id not in referenced]

            for blob_id in orphans:
                cur.execute(f"DELETE FROM blobs WHERE image_id = {self.ph}", (blob_id,))

        if orphans:
            logger.warning(f"Deleted {len(orphans)} orphan blobs")
        return len(orphans)

    # ==================== Entries ====================

    def save_entry(self, entry: QueueEntry) -> None:
        """Insert or fully replace an entry."""
        with self.cursor() as cur:
            cur.execute(f"""
                INSERT INTO entries (id, timestamp, status, retry_count, data, blob_refs, error)
                VALUES ({self.ph}, {self.ph}, {self.ph}, {self.ph}, {self.ph}, {self.ph}, {self.ph})
                ON CONFLICT (id) DO UPDATE SET
                    timestamp = excluded.timestamp,
                    status = excluded.status,
                    retry_count = excluded.retry_count,
                    data = excluded.data,
                    blob_refs = excluded.blob_refs,
                    error = excluded.error
            """, (
                entry.id,
                entry.created_at,
                entry.status.value,
                entry.retry_count,
                json.dumps(entry.payload),
                json.dumps(list(entry.blob_refs)),
                entry.error,
            ))
        logger.debug(f"Entry saved: {entry.id} ({entry.status.value})")

    def get_entry(self, entry_id: str) -> Optional[QueueEntry]:
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT id, timestamp, status, retry_count, data, blob_refs, error
                FROM entries
                WHERE id = {self.ph}
            """, (entry_id,))
            row = cur.fetchone()
        return self._entry_from_row(row) if row else None

    def list_entries(self, status: Optional[EntryStatus] = None) -> List[QueueEntry]:
        """List entries oldest first, optionally filtered by status."""
        query = "SELECT id, timestamp, status, retry_count, data, blob_refs, error FROM entries"
        params: tuple = ()
        if status is not None:
            query += f" WHERE status = {self.ph}"
            params = (EntryStatus(status).value,)
        query += " ORDER BY timestamp ASC, id ASC"
        with self.cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [self._entry_from_row(row) for row in rows]

    def claim_entry(self, entry_id: str) -> bool:
        """Mark a pending entry as sending (atomic claim). False if it is gone or not pending."""
        with self.cursor() as cur:
            cur.execute(f"""
                UPDATE entries
                SET status = {self.ph}
                WHERE id = {self.ph} AND status = {self.ph}
            """, (EntryStatus.SENDING.value, entry_id, EntryStatus.PENDING.value))
            return cur.rowcount == 1

    def update_claimed_entry(self, entry: QueueEntry) -> bool:
        """Write status, retry count and error of an entry still marked sending.

        Never inserts: returns False when the row was deleted or released meanwhile.
        """
        with self.cursor() as cur:
            cur.execute(f"""
                UPDATE entries
                SET status = {self.ph}, retry_count = {self.ph}, error = {self.ph}
                WHERE id = {self.ph} AND status = {self.ph}
            """, (
                entry.status.value,
                entry.retry_count,
                entry.error,
                entry.id,
                EntryStatus.SENDING.value,
            ))
            return cur.rowcount == 1

    @property
    def lock(self):
        """Lock held by writers that must pair a database write with a store update."""
        return self._lock

    def delete_entry(self, entry_id: str) -> None:
        with self.cursor() as cur:
            cur.execute(f"DELETE FROM entries WHERE id = {self.ph}", (entry_id,))

    def count(self) -> int:
        with self.cursor() as cur:
            cur.execute("SELECT COUNT(*) AS n FROM entries")
            return self._scalar(cur.fetchone())

    def reset_stuck_sending(self) -> int:
        """Reset entries left in 'sending' by an interrupted run. Retry count is kept."""
        with self.cursor() as cur:
            cur.execute(f"""
                UPDATE entries
                SET status = {self.ph}
                WHERE status = {self.ph}
            """, (EntryStatus.PENDING.value, EntryStatus.SENDING.value))
            count = cur.rowcount
        if count > 0:
            logger.warning(f"Reset {count} stuck sending entries")
        return count

    # ==================== Row helpers ====================

    def _row(self, row) -> Dict[str, Any]:
        return dict(row)

    def _scalar(self, row) -> int:
        return int(self._row(row)["n"])

    def _entry_from_row(self, row) -> QueueEntry:
        row = self._row(row)
        return QueueEntry(
            id=row["id"],
            created_at=int(row["timestamp"]),
            status=EntryStatus(row["status"]),
            retry_count=int(row["retry_count"]),
            payload=json.loads(row["data"]),
            blob_refs=tuple(json.loads(row["blob_refs"])),
            error=row["error"],
        )

    def _blob_from_row(self, row) -> BlobRecord:
        row = self._row(row)
        return BlobRecord(
            id=row["image_id"],
            # psycopg2 hands back memoryview for BYTEA
            content=bytes(row["bytes"]),
            file_name=row["file_name"],
            content_type=row["mime_type"],
            created_at=int(row["uploaded_at"]),
        )
