"""
Key-value storage engine.

Maps each record id to one serialized JSON blob, the way a document box
does on mobile. Point lookups are a single primary-key read; search and
filtering decode and scan every record.

Tag-usage counters are a derived aggregate kept in memory: adjusted on
every put/delete and rebuilt from a scan when the store is opened.
"""

import json
import logging
import sqlite3
import threading
from collections import Counter
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from .errors import StorageError, StorageErrorKind
from .sqlite_util import connect, io_errors, transaction
from .types import (
    Record,
    RecordFilter,
    RecordScan,
    SearchHit,
    SearchResults,
    SearchTier,
    decode_rows,
    query_terms,
    rank_hits,
    weighted_score,
)

logger = logging.getLogger(__name__)


def _counted_tags(record: Optional[Record]) -> frozenset[str]:
    """Tags that contribute to usage counts (tombstones don't)."""
    if record is None or record.is_deleted:
        return frozenset()
    return record.tags


class KeyValueBackend:
    """
    SQLite-backed id -> JSON blob store.

    Thread-safe: a single connection guarded by a lock.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """
        Args:
            db_path: Path to SQLite database file (None for in-memory)
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._tag_counts: Counter[str] = Counter()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        with io_errors("open key-value store"):
            self._conn = connect(self._db_path)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
        self._rebuild_tag_counts()

    def _rebuild_tag_counts(self) -> None:
        counts: Counter[str] = Counter()
        for item in self._scan():
            if isinstance(item, Record):
                counts.update(_counted_tags(item))
        self._tag_counts = counts

    # -------------------------------------------------------------------------
    # Encoding
    # -------------------------------------------------------------------------

    @staticmethod
    def _encode(record: Record) -> str:
        return json.dumps(record.to_dict(), ensure_ascii=False)

    @staticmethod
    def _decode(row: sqlite3.Row) -> Record:
        key = row["key"]
        try:
            data = json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise StorageError(
                StorageErrorKind.CORRUPT_RECORD, f"Corrupt record {key!r}: {e}", key
            ) from e
        record = Record.from_dict(data)
        if record.id != key:
            raise StorageError(
                StorageErrorKind.CORRUPT_RECORD,
                f"Record stored under {key!r} claims id {record.id!r}",
                key,
            )
        return record

    def _stored(self, id: str) -> Optional[Record]:
        """Current stored record, treating an unreadable one as absent.

        Caller must hold the lock.
        """
        row = self._conn.execute(
            "SELECT key, value FROM kv WHERE key = ?", (id,)
        ).fetchone()
        if row is None:
            return None
        try:
            return self._decode(row)
        except StorageError:
            return None

    def _adjust_tags(self, old: Optional[Record], new: Optional[Record]) -> None:
        self._tag_counts.subtract(_counted_tags(old))
        self._tag_counts.update(_counted_tags(new))
        for tag in [t for t, n in self._tag_counts.items() if n <= 0]:
            del self._tag_counts[tag]

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def put(self, record: Record) -> None:
        """Insert or replace the record's blob."""
        blob = self._encode(record)
        with self._lock, io_errors("put", record.id):
            old = self._stored(record.id)
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (record.id, blob),
            )
            self._adjust_tags(old, record)

    def bulk_put(self, records: Iterable[Record]) -> None:
        """Write all records in a single transaction."""
        records = list(records)
        blobs = [(r.id, self._encode(r)) for r in records]
        with self._lock, io_errors("bulk put"):
            olds = [self._stored(r.id) for r in records]
            with transaction(self._conn):
                self._conn.executemany(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", blobs
                )
            for old, new in zip(olds, records):
                self._adjust_tags(old, new)

    def delete(self, id: str) -> None:
        """Delete a record. Absent ids are ignored."""
        with self._lock, io_errors("delete", id):
            old = self._stored(id)
            self._conn.execute("DELETE FROM kv WHERE key = ?", (id,))
            self._adjust_tags(old, None)

    def clear(self) -> None:
        """Remove every record."""
        with self._lock, io_errors("clear"):
            self._conn.execute("DELETE FROM kv")
            self._tag_counts = Counter()

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[Record]:
        """
        Get a record by ID.

        Returns:
            Record if found, None otherwise

        Raises:
            StorageError: CORRUPT_RECORD if the stored blob is unreadable
        """
        with self._lock, io_errors("get", id):
            row = self._conn.execute(
                "SELECT key, value FROM kv WHERE key = ?", (id,)
            ).fetchone()
        if row is None:
            return None
        return self._decode(row)

    def _scan(self) -> Iterator[Union[Record, StorageError]]:
        with self._lock, io_errors("scan"):
            rows = self._conn.execute("SELECT key, value FROM kv").fetchall()
        return decode_rows(rows, self._decode)

    def list_filtered(self, filter: Optional[RecordFilter] = None) -> RecordScan:
        """
        Records matching the filter, newest update first by default.

        The scan decodes every blob; corrupt ones land in ``scan.errors``.
        """
        flt = filter or RecordFilter()

        def rows() -> Iterator[Union[Record, StorageError]]:
            matched = []
            for item in self._scan():
                if isinstance(item, StorageError):
                    yield item
                elif flt.matches(item):
                    matched.append(item)
            yield from flt.sort(matched)

        return RecordScan(rows)

    def search(self, query: str) -> SearchResults:
        """
        Case-insensitive substring search over title, tags, body, description.

        Score is the weighted count of matched terms (title 3, tags 2,
        body 1, description 1). Tombstoned records never match.
        """
        terms = query_terms(query)
        hits: list[SearchHit] = []
        errors: list[StorageError] = []
        if terms:
            for item in self._scan():
                if isinstance(item, StorageError):
                    logger.warning("Skipping corrupt record %s: %s", item.record_id, item)
                    errors.append(item)
                    continue
                if item.is_deleted:
                    continue
                score = weighted_score(item, terms)
                if score > 0:
                    hits.append(SearchHit(item, float(score)))
        return SearchResults(rank_hits(hits), SearchTier.SUBSTRING, errors)

    def count(self) -> int:
        """Count stored records, tombstones included."""
        with self._lock, io_errors("count"):
            return self._conn.execute("SELECT COUNT(*) FROM kv").fetchone()[0]

    def tag_usage(self) -> dict[str, int]:
        """Live records per tag."""
        return dict(sorted(self._tag_counts.items()))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
