"""
Protocol definitions for the Repository and its collaborators.

Defines interface contracts at two levels:
- StorageBackend: the storage engines behind the Repository
  (KeyValueBackend, RelationalBackend)
- RemoteSource / PushableRemote / RemoteSearchSource, Clock,
  MutationObserver: collaborators injected from outside
"""

from datetime import datetime
from typing import Awaitable, Iterable, Optional, Protocol, Union, runtime_checkable

from .types import Record, RecordFilter, RecordScan, RemoteRecord, SearchResults


@runtime_checkable
class StorageBackend(Protocol):
    """
    Persistence engine for serialized Records.

    Implemented by:
    - KeyValueBackend (id -> JSON blob, scan search)
    - RelationalBackend (tables + join table + FTS5 index)

    Methods are blocking; the Repository runs them off the event loop.
    Any I/O fault raises StorageError(IO_FAILURE).
    """

    def put(self, record: Record) -> None:
        """Upsert by id, replacing the stored record entirely."""
        ...

    def get(self, id: str) -> Optional[Record]:
        """Return the stored record, or None if absent.

        Raises StorageError(CORRUPT_RECORD) if the stored form is unreadable.
        """
        ...

    def delete(self, id: str) -> None:
        """Remove the record. Deleting an absent id is not an error."""
        ...

    def list_filtered(self, filter: Optional[RecordFilter] = None) -> RecordScan: ...

    def search(self, query: str) -> SearchResults: ...

    def bulk_put(self, records: Iterable[Record]) -> None:
        """Write all records in one transaction: all or nothing."""
        ...

    def count(self) -> int: ...

    def clear(self) -> None: ...

    def tag_usage(self) -> dict[str, int]: ...

    def close(self) -> None: ...


@runtime_checkable
class RemoteSource(Protocol):
    """Remote record set the Synchronizer reconciles against."""

    async def fetch_all(self) -> list[RemoteRecord]: ...

    async def fetch_since(self, since: datetime) -> list[RemoteRecord]: ...


@runtime_checkable
class PushableRemote(Protocol):
    """A remote that also accepts local changes.

    ``push`` receives live records and tombstones (``deleted_at`` set) and
    returns the new remote version for every id it accepted. Each record's
    ``remote_version`` is the version its local change was based on; a
    remote may refuse records whose copy has moved on since.
    """

    async def push(self, records: list[Record]) -> dict[str, str]: ...


@runtime_checkable
class RemoteSearchSource(Protocol):
    """External search used by the Search Coordinator's remote scope."""

    async def search(self, query: str) -> list[Record]: ...


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...


@runtime_checkable
class MutationObserver(Protocol):
    """Side-effect hook (notifications, analytics) run after a successful mutation.

    ``event`` is one of: created, updated, deleted, purged, synced.
    May return an awaitable; failures are logged and never propagated.
    """

    def on_mutation(self, event: str, record: Record) -> Union[None, Awaitable[None]]: ...
