"""
Relational storage engine using SQLite.

Schema:
- records: one row per record, keyed by id
- record_tags: (record_id, tag) join table, so tag filters are index lookups
- records_fts: FTS5 index over title, body, description and tags

Search runs in two tiers. The full-text tier queries the FTS5 index
(trigram tokenizer, so terms match as case-insensitive substrings) and
ranks with bm25. The substring tier scans with a casefold() SQL function and
scores with the weighted-term formula. Both tiers compare casefolded text,
the same folding the key-value engine applies, so membership agrees on
non-ASCII text. The substring tier serves the query when the index
is unavailable, when a term is shorter than a trigram, or when SQLite
rejects the MATCH expression. Results report which tier served them.
"""

import json
import logging
import sqlite3
import threading
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
    format_timestamp,
    query_terms,
    rank_hits,
    weighted_score,
)

logger = logging.getLogger(__name__)

# Trigram tokens: shorter terms cannot be expressed as an FTS5 query
MIN_FTS_TERM_LENGTH = 3

# bm25 column weights: record_id (unindexed), title, body, description, tags
_BM25_WEIGHTS = "0.0, 3.0, 1.0, 1.0, 2.0"

_SELECT_COLUMNS = """
    r.id, r.title, r.body, r.description, r.category, r.priority,
    r.created_at, r.updated_at, r.is_favorite, r.is_archived,
    r.sync_state, r.remote_version, r.deleted_at, r.conflict_remote_json,
    (SELECT json_group_array(t.tag) FROM record_tags t
     WHERE t.record_id = r.id) AS tags_json
"""


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def _fts_phrase(term: str) -> str:
    return '"' + term.replace('"', '""') + '"'


class RelationalBackend:
    """
    SQLite-backed relational store with a full-text index.

    All multi-row writes (a put touches records, record_tags and
    records_fts) run inside one transaction.
    """

    def __init__(self, db_path: Optional[Path] = None, *, full_text: bool = True):
        """
        Args:
            db_path: Path to SQLite database file (None for in-memory)
            full_text: Build and use the FTS5 index when SQLite supports it
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._fts_available = False
        self._init_db(full_text)

    def _init_db(self, full_text: bool) -> None:
        """Initialize the SQLite database."""
        with io_errors("open relational store"):
            self._conn = connect(self._db_path)
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.create_function("casefold", 1, _casefold, deterministic=True)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    body TEXT NOT NULL DEFAULT '',
                    description TEXT NOT NULL DEFAULT '',
                    category TEXT,
                    priority INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    is_favorite INTEGER NOT NULL DEFAULT 0,
                    is_archived INTEGER NOT NULL DEFAULT 0,
                    sync_state TEXT NOT NULL,
                    remote_version TEXT,
                    deleted_at TEXT,
                    conflict_remote_json TEXT
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_updated
                ON records(updated_at)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_category
                ON records(category)
            """)
            outdated = self._migrate()
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_priority
                ON records(priority)
            """)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS record_tags (
                    record_id TEXT NOT NULL
                        REFERENCES records(id) ON DELETE CASCADE,
                    tag TEXT NOT NULL,
                    PRIMARY KEY (record_id, tag)
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_record_tags_tag
                ON record_tags(tag)
            """)

        if full_text:
            try:
                self._conn.execute("""
                    CREATE VIRTUAL TABLE IF NOT EXISTS records_fts USING fts5(
                        record_id UNINDEXED, title, body, description, tags,
                        tokenize='trigram'
                    )
                """)
                self._fts_available = True
            except sqlite3.OperationalError as e:
                logger.warning("Full-text index unavailable, using substring search: %s", e)

        if outdated and self._fts_available:
            with io_errors("rebuild full-text index"):
                self._rebuild_fts()

    def _migrate(self) -> bool:
        """Migrate existing databases to current schema. True if anything changed."""
        cursor = self._conn.execute("PRAGMA table_info(records)")
        columns = {row[1] for row in cursor.fetchall()}

        if "priority" not in columns:
            self._conn.execute(
                "ALTER TABLE records ADD COLUMN priority INTEGER NOT NULL DEFAULT 1"
            )
            return True
        return False

    def _rebuild_fts(self) -> None:
        """Re-index every live record; older stores indexed text without case folding."""
        logger.info("Rebuilding full-text index of %s", self._db_path)
        with transaction(self._conn):
            self._conn.execute("DELETE FROM records_fts")
            self._conn.execute("""
                INSERT INTO records_fts (record_id, title, body, description, tags)
                SELECT r.id, casefold(r.title), casefold(r.body), casefold(r.description),
                       coalesce((SELECT group_concat(casefold(t.tag), ' ')
                                 FROM record_tags t WHERE t.record_id = r.id), '')
                FROM records r
                WHERE r.deleted_at IS NULL
            """)

    @property
    def full_text_available(self) -> bool:
        return self._fts_available

    # -------------------------------------------------------------------------
    # Encoding
    # -------------------------------------------------------------------------

    @staticmethod
    def _decode(row: sqlite3.Row) -> Record:
        record_id = row["id"]
        try:
            tags = json.loads(row["tags_json"] or "[]")
            conflict = row["conflict_remote_json"]
            conflict_remote = json.loads(conflict) if conflict else None
        except json.JSONDecodeError as e:
            raise StorageError(
                StorageErrorKind.CORRUPT_RECORD, f"Corrupt record {record_id!r}: {e}", record_id
            ) from e
        return Record.from_dict({
            "id": record_id,
            "title": row["title"],
            "body": row["body"],
            "description": row["description"],
            "tags": tags,
            "category": row["category"],
            "priority": row["priority"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "is_favorite": row["is_favorite"],
            "is_archived": row["is_archived"],
            "sync_state": row["sync_state"],
            "remote_version": row["remote_version"],
            "deleted_at": row["deleted_at"],
            "conflict_remote": conflict_remote,
        })

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def _write(self, record: Record) -> None:
        """Upsert one record with its tags and index row. Caller owns the transaction."""
        data = record.to_dict()
        conflict_json = (
            json.dumps(data["conflict_remote"], ensure_ascii=False)
            if data["conflict_remote"] else None
        )
        self._conn.execute("""
            INSERT INTO records
            (id, title, body, description, category, priority, created_at,
             updated_at, is_favorite, is_archived, sync_state, remote_version,
             deleted_at, conflict_remote_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                body = excluded.body,
                description = excluded.description,
                category = excluded.category,
                priority = excluded.priority,
                created_at = excluded.created_at,
                updated_at = excluded.updated_at,
                is_favorite = excluded.is_favorite,
                is_archived = excluded.is_archived,
                sync_state = excluded.sync_state,
                remote_version = excluded.remote_version,
                deleted_at = excluded.deleted_at,
                conflict_remote_json = excluded.conflict_remote_json
        """, (
            record.id, record.title, record.body, record.description,
            record.category, int(record.priority), data["created_at"], data["updated_at"],
            int(record.is_favorite), int(record.is_archived),
            record.sync_state.value, record.remote_version, data["deleted_at"],
            conflict_json,
        ))

        self._conn.execute("DELETE FROM record_tags WHERE record_id = ?", (record.id,))
        self._conn.executemany(
            "INSERT INTO record_tags (record_id, tag) VALUES (?, ?)",
            [(record.id, tag) for tag in data["tags"]],
        )

        if self._fts_available:
            self._conn.execute("DELETE FROM records_fts WHERE record_id = ?", (record.id,))
            if not record.is_deleted:
                self._conn.execute("""
                    INSERT INTO records_fts (record_id, title, body, description, tags)
                    VALUES (?, ?, ?, ?, ?)
                """, (record.id, record.title.casefold(), record.body.casefold(),
                      record.description.casefold(),
                      " ".join(t.casefold() for t in data["tags"])))

    def put(self, record: Record) -> None:
        """Insert or replace a record, its tag rows and its index entry."""
        with self._lock, io_errors("put", record.id):
            with transaction(self._conn):
                self._write(record)

    def bulk_put(self, records: Iterable[Record]) -> None:
        """Write all records in a single transaction."""
        records = list(records)
        with self._lock, io_errors("bulk put"):
            with transaction(self._conn):
                for record in records:
                    self._write(record)

    def delete(self, id: str) -> None:
        """Delete a record with its tag rows and index entry. Absent ids are ignored."""
        with self._lock, io_errors("delete", id):
            with transaction(self._conn):
                self._conn.execute("DELETE FROM record_tags WHERE record_id = ?", (id,))
                if self._fts_available:
                    self._conn.execute("DELETE FROM records_fts WHERE record_id = ?", (id,))
                self._conn.execute("DELETE FROM records WHERE id = ?", (id,))

    def clear(self) -> None:
        """Remove every record."""
        with self._lock, io_errors("clear"):
            with transaction(self._conn):
                self._conn.execute("DELETE FROM record_tags")
                if self._fts_available:
                    self._conn.execute("DELETE FROM records_fts")
                self._conn.execute("DELETE FROM records")

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[Record]:
        """
        Get a record by ID.

        Returns:
            Record if found, None otherwise

        Raises:
            StorageError: CORRUPT_RECORD if the stored row is unreadable
        """
        with self._lock, io_errors("get", id):
            row = self._conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM records r WHERE r.id = ?", (id,)
            ).fetchone()
        if row is None:
            return None
        return self._decode(row)

    def _query(self, sql: str, params: Iterable) -> list[sqlite3.Row]:
        with self._lock, io_errors("query"):
            return self._conn.execute(sql, tuple(params)).fetchall()

    def list_filtered(self, filter: Optional[RecordFilter] = None) -> RecordScan:
        """
        Records matching the filter, newest update first by default.

        Tag filters go through the record_tags join table: a record must
        carry every requested tag.
        """
        flt = filter or RecordFilter()
        where: list[str] = []
        params: list = []

        if not flt.include_deleted:
            where.append("r.deleted_at IS NULL")
        if flt.category is not None:
            where.append("r.category = ?")
            params.append(flt.category)
        if flt.is_favorite is not None:
            where.append("r.is_favorite = ?")
            params.append(int(flt.is_favorite))
        if flt.is_archived is not None:
            where.append("r.is_archived = ?")
            params.append(int(flt.is_archived))
        if flt.since is not None:
            where.append("r.updated_at >= ?")
            params.append(format_timestamp(flt.since))
        if flt.until is not None:
            where.append("r.updated_at < ?")
            params.append(format_timestamp(flt.until))
        if flt.tags:
            placeholders = ",".join("?" * len(flt.tags))
            where.append(f"""r.id IN (
                SELECT record_id FROM record_tags
                WHERE tag IN ({placeholders})
                GROUP BY record_id
                HAVING COUNT(*) = ?
            )""")
            params.extend(sorted(flt.tags))
            params.append(len(flt.tags))
        if flt.priorities:
            placeholders = ",".join("?" * len(flt.priorities))
            where.append(f"r.priority IN ({placeholders})")
            params.extend(sorted(int(p) for p in flt.priorities))

        direction = "DESC" if flt.descending else "ASC"
        sql = f"SELECT {_SELECT_COLUMNS} FROM records r"
        if where:
            sql += " WHERE " + " AND ".join(where)
        # order_by is validated against ORDER_FIELDS by RecordFilter
        sql += f" ORDER BY r.{flt.order_by} {direction}, r.id ASC"

        def rows() -> Iterator[Union[Record, StorageError]]:
            return decode_rows(self._query(sql, params), self._decode)

        return RecordScan(rows)

    def search(self, query: str) -> SearchResults:
        """
        Full-text search with a transparent substring fallback.

        Returns:
            SearchResults whose ``tier`` says which strategy served the query
        """
        terms = query_terms(query)
        if not terms:
            tier = SearchTier.FULL_TEXT if self._fts_available else SearchTier.SUBSTRING
            return SearchResults([], tier)

        if self._fts_available and all(len(t) >= MIN_FTS_TERM_LENGTH for t in terms):
            try:
                return self._search_full_text(terms)
            except sqlite3.OperationalError as e:
                logger.info("Full-text query rejected, falling back to substring scan: %s", e)
            except sqlite3.Error as e:
                raise StorageError(StorageErrorKind.IO_FAILURE, f"search failed: {e}") from e
        return self._search_substring(terms)

    def _search_full_text(self, terms: list[str]) -> SearchResults:
        """Rank with bm25; raises sqlite3.OperationalError on a malformed MATCH."""
        match = " OR ".join(_fts_phrase(t) for t in terms)
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_SELECT_COLUMNS}, bm25(records_fts, {_BM25_WEIGHTS}) AS rank
                FROM records_fts
                JOIN records r ON r.id = records_fts.record_id
                WHERE records_fts MATCH ? AND r.deleted_at IS NULL
                ORDER BY rank ASC, r.updated_at DESC, r.id ASC
            """, (match,)).fetchall()

        hits: list[SearchHit] = []
        errors: list[StorageError] = []
        for row in rows:
            try:
                record = self._decode(row)
            except StorageError as e:
                logger.warning("Skipping corrupt record %s: %s", e.record_id, e)
                errors.append(e)
                continue
            hits.append(SearchHit(record, -float(row["rank"])))
        return SearchResults(hits, SearchTier.FULL_TEXT, errors)

    def _search_substring(self, terms: list[str]) -> SearchResults:
        """Casefolded substring scan for candidates, then weighted-term scoring."""
        clauses: list[str] = []
        params: list[str] = []
        for term in terms:
            clauses.append("""(
                instr(casefold(r.title), ?) > 0
                OR instr(casefold(r.body), ?) > 0
                OR instr(casefold(r.description), ?) > 0
                OR EXISTS (SELECT 1 FROM record_tags t
                           WHERE t.record_id = r.id AND instr(casefold(t.tag), ?) > 0)
            )""")
            params.extend([term] * 4)

        rows = self._query(
            f"SELECT {_SELECT_COLUMNS} FROM records r "
            f"WHERE r.deleted_at IS NULL AND ({' OR '.join(clauses)})",
            params,
        )

        hits: list[SearchHit] = []
        errors: list[StorageError] = []
        for item in decode_rows(rows, self._decode):
            if isinstance(item, StorageError):
                logger.warning("Skipping corrupt record %s: %s", item.record_id, item)
                errors.append(item)
                continue
            score = weighted_score(item, terms)
            if score > 0:
                hits.append(SearchHit(item, float(score)))
        return SearchResults(rank_hits(hits), SearchTier.SUBSTRING, errors)

    def count(self) -> int:
        """Count stored records, tombstones included."""
        return self._query("SELECT COUNT(*) FROM records", ())[0][0]

    def tag_usage(self) -> dict[str, int]:
        """Live records per tag, from the join table."""
        rows = self._query("""
            SELECT t.tag, COUNT(*) AS n
            FROM record_tags t JOIN records r ON r.id = t.record_id
            WHERE r.deleted_at IS NULL
            GROUP BY t.tag
            ORDER BY t.tag
        """, ())
        return {row["tag"]: row["n"] for row in rows}

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
