"""
Data types for the note store.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from .errors import StorageError, StorageErrorKind

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Canonical stored form: ISO 8601 UTC with microseconds, no suffix.

    Fixed width, so stored strings sort in time order.
    """
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format (no suffix) as well as 'Z' and '+00:00'
    suffixes coming from remote sources.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SystemClock:
    """Wall clock. Swap for a fake in tests."""

    def now(self) -> datetime:
        return utc_now()


def new_record_id() -> str:
    return uuid.uuid4().hex


MAX_ID_LENGTH = 256

# IDs: printable characters minus control chars and quotes
_ID_BLOCKED_RE = re.compile(r'[\x00-\x1f\x7f\\`"\']')


def validate_id(id: str) -> None:
    """Validate a record ID: length and no dangerous characters."""
    if not id or len(id) > MAX_ID_LENGTH:
        raise ValueError(f"ID must be 1-{MAX_ID_LENGTH} characters")
    if _ID_BLOCKED_RE.search(id):
        raise ValueError(f"ID contains invalid characters: {id!r}")


class BackendKind(str, Enum):
    """The two storage engines a Repository can route to."""
    KEY_VALUE = "key_value"
    RELATIONAL = "relational"


class SyncState(str, Enum):
    """Relationship of a local record to the remote source of truth."""
    LOCAL_ONLY = "local_only"
    SYNCED = "synced"
    PENDING_PUSH = "pending_push"
    CONFLICT = "conflict"


class Priority(IntEnum):
    """Note priority; ordered, so filters and sorting compare by rank."""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union["Priority", int, str]) -> "Priority":
        """Accept a Priority, its rank, or its name in any case."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown priority: {value!r}") from None
        return cls(value)


@dataclass(frozen=True)
class RemoteRecord:
    """A record as reported by the remote source."""
    id: str
    title: str
    body: str
    updated_at: datetime
    remote_version: str
    description: str = ""
    tags: frozenset[str] = field(default_factory=frozenset)
    category: Optional[str] = None
    priority: Priority = Priority.NORMAL

    def __post_init__(self):
        object.__setattr__(self, "tags", frozenset(self.tags))
        object.__setattr__(self, "priority", Priority.parse(self.priority))
        object.__setattr__(self, "updated_at", _as_utc(self.updated_at))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "description": self.description,
            "tags": sorted(self.tags),
            "category": self.category,
            "priority": self.priority.label,
            "updated_at": format_timestamp(self.updated_at),
            "remote_version": self.remote_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteRecord":
        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            body=str(data.get("body", "")),
            description=str(data.get("description", "")),
            tags=frozenset(data.get("tags", ())),
            category=data.get("category"),
            priority=Priority.parse(data.get("priority", Priority.NORMAL)),
            updated_at=parse_utc_timestamp(data["updated_at"]),
            remote_version=str(data["remote_version"]),
        )


# Fields the Repository lets callers change through update()
EDITABLE_FIELDS = frozenset({
    "title", "body", "description", "tags", "category", "priority",
    "is_favorite", "is_archived",
})


@dataclass(frozen=True)
class Record:
    """
    A note or article held by the store.

    This is a read-only snapshot. Mutations go through the Repository,
    which returns a new Record with updated values.

    Attributes:
        id: Stable identifier, identical across backends
        title: Headline text (search weight 3)
        created_at: When the record was first created
        updated_at: Bumped on every mutation, never decreases
        body: Main text (search weight 1)
        description: Short abstract (search weight 1)
        tags: Unordered labels (search weight 2)
        category: Optional single classification
        priority: Low, normal (default), high or urgent
        sync_state: Owned by the Synchronizer
        remote_version: Opaque token from the remote source
        deleted_at: Set when tombstoned, until a sync confirms the deletion
        conflict_remote: Remote copy held alongside while in conflict
    """
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    body: str = ""
    description: str = ""
    tags: frozenset[str] = field(default_factory=frozenset)
    category: Optional[str] = None
    priority: Priority = Priority.NORMAL
    is_favorite: bool = False
    is_archived: bool = False
    sync_state: SyncState = SyncState.LOCAL_ONLY
    remote_version: Optional[str] = None
    deleted_at: Optional[datetime] = None
    conflict_remote: Optional[RemoteRecord] = None

    def __post_init__(self):
        object.__setattr__(self, "tags", frozenset(self.tags))
        object.__setattr__(self, "priority", Priority.parse(self.priority))
        object.__setattr__(self, "sync_state", SyncState(self.sync_state))
        object.__setattr__(self, "created_at", _as_utc(self.created_at))
        object.__setattr__(self, "updated_at", _as_utc(self.updated_at))
        if self.deleted_at is not None:
            object.__setattr__(self, "deleted_at", _as_utc(self.deleted_at))

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def evolve(self, **changes) -> "Record":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible mapping used by both storage engines."""
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "description": self.description,
            "tags": sorted(self.tags),
            "category": self.category,
            "priority": self.priority.label,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "is_favorite": self.is_favorite,
            "is_archived": self.is_archived,
            "sync_state": self.sync_state.value,
            "remote_version": self.remote_version,
            "deleted_at": format_timestamp(self.deleted_at) if self.deleted_at else None,
            "conflict_remote": self.conflict_remote.to_dict() if self.conflict_remote else None,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Record":
        """
        Rebuild a Record from its stored mapping.

        Raises:
            StorageError: CORRUPT_RECORD if the mapping is malformed
        """
        record_id = data.get("id") if isinstance(data, dict) else None
        try:
            deleted_at = data.get("deleted_at")
            conflict = data.get("conflict_remote")
            tags = data.get("tags", [])
            if isinstance(tags, str):
                raise TypeError("tags must be a list")
            return cls(
                id=str(data["id"]),
                title=str(data["title"]),
                body=str(data.get("body", "")),
                description=str(data.get("description", "")),
                tags=frozenset(str(t) for t in tags),
                category=data.get("category"),
                priority=Priority.parse(data.get("priority", Priority.NORMAL)),
                created_at=parse_utc_timestamp(data["created_at"]),
                updated_at=parse_utc_timestamp(data["updated_at"]),
                is_favorite=bool(data.get("is_favorite", False)),
                is_archived=bool(data.get("is_archived", False)),
                sync_state=SyncState(data.get("sync_state", SyncState.LOCAL_ONLY.value)),
                remote_version=data.get("remote_version"),
                deleted_at=parse_utc_timestamp(deleted_at) if deleted_at else None,
                conflict_remote=RemoteRecord.from_dict(conflict) if conflict else None,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(
                StorageErrorKind.CORRUPT_RECORD,
                f"Corrupt record {record_id!r}: {e}",
                record_id,
            ) from e


RECORD_FIELDS = frozenset(f.name for f in fields(Record))


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

ORDER_FIELDS = ("updated_at", "created_at", "title", "priority")


@dataclass(frozen=True)
class RecordFilter:
    """
    Predicate for list_filtered().

    Unset fields do not constrain. ``tags`` requires every listed tag.
    ``priorities`` accepts a record holding any one of the listed priorities.
    The date range applies to ``updated_at`` as ``since <= t < until``.
    """
    category: Optional[str] = None
    tags: frozenset[str] = field(default_factory=frozenset)
    priorities: frozenset[Priority] = field(default_factory=frozenset)
    is_favorite: Optional[bool] = None
    is_archived: Optional[bool] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    include_deleted: bool = False
    order_by: str = "updated_at"
    descending: bool = True

    def __post_init__(self):
        object.__setattr__(self, "tags", frozenset(self.tags))
        priorities = frozenset(Priority.parse(p) for p in self.priorities)
        object.__setattr__(self, "priorities", priorities)
        if self.order_by not in ORDER_FIELDS:
            raise ValueError(f"order_by must be one of {ORDER_FIELDS}: {self.order_by!r}")
        if self.since is not None:
            object.__setattr__(self, "since", _as_utc(self.since))
        if self.until is not None:
            object.__setattr__(self, "until", _as_utc(self.until))

    def matches(self, record: Record) -> bool:
        if record.is_deleted and not self.include_deleted:
            return False
        if self.category is not None and record.category != self.category:
            return False
        if self.tags and not self.tags <= record.tags:
            return False
        if self.priorities and record.priority not in self.priorities:
            return False
        if self.is_favorite is not None and record.is_favorite != self.is_favorite:
            return False
        if self.is_archived is not None and record.is_archived != self.is_archived:
            return False
        if self.since is not None and record.updated_at < self.since:
            return False
        if self.until is not None and record.updated_at >= self.until:
            return False
        return True

    def sort(self, records: Iterable[Record]) -> list[Record]:
        """Order records per order_by/descending, id ascending as a stable tiebreak."""
        ordered = sorted(records, key=lambda r: r.id)
        return sorted(
            ordered,
            key=lambda r: getattr(r, self.order_by),
            reverse=self.descending,
        )


class RecordScan:
    """
    Lazy, finite, restartable sequence of records.

    Each iteration re-runs the underlying query. The query yields decoded
    records, or a StorageError(CORRUPT_RECORD) in place of a row that could
    not be decoded; those are skipped and collected into ``errors`` (reset
    at the start of every iteration).
    """

    def __init__(self, rows: Callable[[], Iterable[Union[Record, StorageError]]]):
        self._rows = rows
        self.errors: list[StorageError] = []

    def __iter__(self) -> Iterator[Record]:
        self.errors = []
        for item in self._rows():
            if isinstance(item, StorageError):
                logger.warning("Skipping corrupt record %s: %s", item.record_id, item)
                self.errors.append(item)
                continue
            yield item

    def ids(self) -> list[str]:
        return [r.id for r in self]


class RecordList(list):
    """A materialized scan: the records plus the corrupt rows that were skipped."""

    def __init__(self, records: Iterable[Record] = (), errors: Iterable[StorageError] = ()):
        super().__init__(records)
        self.errors: list[StorageError] = list(errors)

    def ids(self) -> list[str]:
        return [r.id for r in self]


def decode_rows(
    rows: Iterable[Any],
    decode: Callable[[Any], Record],
) -> Iterator[Union[Record, StorageError]]:
    """Decode rows one by one, yielding corrupt-record errors in place."""
    for row in rows:
        try:
            yield decode(row)
        except StorageError as e:
            if e.kind != StorageErrorKind.CORRUPT_RECORD:
                raise
            yield e


# ---------------------------------------------------------------------------
# Search results and scoring
# ---------------------------------------------------------------------------

class SearchTier(str, Enum):
    """Which strategy served a search."""
    FULL_TEXT = "full_text"
    SUBSTRING = "substring"


@dataclass(frozen=True)
class SearchHit:
    record: Record
    score: float

    @property
    def id(self) -> str:
        return self.record.id


@dataclass
class SearchResults:
    """Scored hits from one backend plus the tier that served them."""
    hits: list[SearchHit]
    tier: SearchTier
    errors: list[StorageError] = field(default_factory=list)

    def __iter__(self) -> Iterator[SearchHit]:
        return iter(self.hits)

    def __len__(self) -> int:
        return len(self.hits)

    def __getitem__(self, index: int) -> SearchHit:
        return self.hits[index]

    def ids(self) -> list[str]:
        return [h.id for h in self.hits]


TITLE_WEIGHT = 3
TAG_WEIGHT = 2
BODY_WEIGHT = 1
DESCRIPTION_WEIGHT = 1


def query_terms(query: str) -> list[str]:
    """Distinct casefolded whitespace-separated terms, in query order."""
    seen: dict[str, None] = {}
    for term in query.casefold().split():
        seen.setdefault(term, None)
    return list(seen)


def weighted_score(record: Record, terms: list[str]) -> int:
    """
    Sum of field weights for every query term found in the record.

    Substring, case-insensitive: title 3, any tag 2, body 1, description 1.
    """
    title = record.title.casefold()
    body = record.body.casefold()
    description = record.description.casefold()
    tags = [t.casefold() for t in record.tags]
    score = 0
    for term in terms:
        if term in title:
            score += TITLE_WEIGHT
        if any(term in t for t in tags):
            score += TAG_WEIGHT
        if term in body:
            score += BODY_WEIGHT
        if term in description:
            score += DESCRIPTION_WEIGHT
    return score


def rank_hits(hits: Iterable[SearchHit]) -> list[SearchHit]:
    """Score descending, then updated_at descending, then id ascending."""
    by_id = sorted(hits, key=lambda h: h.id)
    by_updated = sorted(by_id, key=lambda h: h.record.updated_at, reverse=True)
    return sorted(by_updated, key=lambda h: h.score, reverse=True)
