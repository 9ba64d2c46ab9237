"""
notekeep

A local-first note/article store with two interchangeable storage engines
(key-value and relational with full-text search), weighted search, and
synchronization against a remote source with explicit conflict handling.

Quick Start:
    from notekeep import Repository, SearchCoordinator, load_or_create_config

    repo = Repository.open(load_or_create_config())
    note = await repo.create("Flutter Notes", body="storage patterns", tags=["dart"])
    hits = await SearchCoordinator(repo).search("storage")

CLI Usage:
    notekeep add "Flutter Notes" --body "storage patterns" -t dart
    notekeep find storage
    notekeep switch relational

Default Store:
    ~/.notekeep/ (override with NOTEKEEP_STORE_PATH or --store).
    Configuration is persisted in notekeep.toml within the store directory.
"""

from .config import StoreConfig, load_or_create_config
from .errors import (
    MigrationError,
    NotekeepError,
    NotFoundError,
    StaleRecordError,
    StorageError,
    StorageErrorKind,
    SyncCycleError,
    SyncErrorKind,
)
from .kv_store import KeyValueBackend
from .relational_store import RelationalBackend
from .remote import JsonFileRemote
from .repository import Repository
from .search import SearchCoordinator, SearchScope
from .sync import Resolution, SyncPhase, SyncResult, Synchronizer
from .types import (
    BackendKind,
    Priority,
    Record,
    RecordFilter,
    RemoteRecord,
    SearchHit,
    SearchTier,
    SyncState,
)

__version__ = "0.1.0"
__all__ = [
    "BackendKind",
    "JsonFileRemote",
    "KeyValueBackend",
    "MigrationError",
    "NotekeepError",
    "NotFoundError",
    "Priority",
    "Record",
    "RecordFilter",
    "RelationalBackend",
    "RemoteRecord",
    "Repository",
    "Resolution",
    "SearchCoordinator",
    "SearchHit",
    "SearchScope",
    "SearchTier",
    "StaleRecordError",
    "StorageError",
    "StorageErrorKind",
    "StoreConfig",
    "SyncCycleError",
    "SyncErrorKind",
    "SyncPhase",
    "SyncResult",
    "SyncState",
    "Synchronizer",
    "load_or_create_config",
]
