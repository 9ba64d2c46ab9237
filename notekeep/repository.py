"""
Repository: the single entry point application code uses for records.

Owns record identity and lifecycle (create, update, tombstone, purge) and
decides which storage engine is active. Storage engines are blocking; every
call to them runs in a worker thread so the event loop never blocks.

Concurrency:
- Writes to the same id are serialized by a per-id asyncio.Lock, kept in a
  registry only while some coroutine holds or waits on it.
- The active-backend pointer is guarded by a gate. Operations hold it
  shared; switch_backend() holds it exclusively only for the instant of
  the flip (plus replaying writes that landed during the copy).
"""

import asyncio
import inspect
import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Union,
)

from .errors import MigrationError, NotFoundError, StaleRecordError, StorageError
from .protocol import Clock, MutationObserver, StorageBackend
from .sync import sync_state_after_local_edit
from .types import (
    EDITABLE_FIELDS,
    BackendKind,
    Priority,
    Record,
    RecordFilter,
    RecordList,
    SearchResults,
    SyncState,
    SystemClock,
    new_record_id,
    validate_id,
)

if TYPE_CHECKING:
    from .config import StoreConfig

logger = logging.getLogger(__name__)


class _BackendGate:
    """Shared/exclusive access to the active-backend pointer."""

    def __init__(self):
        self._cond = asyncio.Condition()
        self._users = 0
        self._exclusive = False

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._exclusive)
            self._users += 1
        try:
            yield
        finally:
            async with self._cond:
                self._users -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._exclusive)
            self._exclusive = True
            await self._cond.wait_for(lambda: self._users == 0)
        try:
            yield
        finally:
            async with self._cond:
                self._exclusive = False
                self._cond.notify_all()


class _KeyedLocks:
    """
    One asyncio.Lock per id, held in the registry only while in use.

    An entry counts the coroutines holding or waiting on its lock and is
    dropped when the last one leaves, so every writer to an id contends
    on the same lock and idle ids take no memory.
    """

    def __init__(self):
        self._entries: dict[str, list] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, id: str) -> bool:
        return id in self._entries

    @asynccontextmanager
    async def hold(self, id: str) -> AsyncIterator[None]:
        entry = self._entries.get(id)
        if entry is None:
            entry = self._entries[id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[id]


class Repository:
    """
    Façade over the two storage engines.

    Args:
        backends: One engine per BackendKind
        active: Which engine serves reads and writes initially
        clock: Time source (defaults to the system clock)
        observers: Side-effect hooks run after successful mutations
    """

    def __init__(
        self,
        backends: Mapping[BackendKind, StorageBackend],
        active: BackendKind = BackendKind.KEY_VALUE,
        *,
        clock: Optional[Clock] = None,
        observers: Iterable[MutationObserver] = (),
    ):
        active = BackendKind(active)
        if active not in backends:
            raise ValueError(f"No backend configured for {active.value}")
        self._backends = dict(backends)
        self._active = active
        self._clock = clock or SystemClock()
        self._observers: list[MutationObserver] = list(observers)
        self._observer_tasks: set[asyncio.Future] = set()
        self._gate = _BackendGate()
        self._switch_lock = asyncio.Lock()
        self._id_locks = _KeyedLocks()
        # Ids written while a migration copy is in flight; None when not migrating
        self._dirty_ids: Optional[set[str]] = None

    @classmethod
    def open(cls, config: "StoreConfig", **kwargs) -> "Repository":
        """Open both engines under the store path, with the configured one active."""
        from .backend import create_backends

        bundle = create_backends(config)
        return cls(bundle.as_mapping(), config.backend, **kwargs)

    @property
    def active_kind(self) -> BackendKind:
        return self._active

    @property
    def clock(self) -> Clock:
        return self._clock

    def add_observer(self, observer: MutationObserver) -> None:
        self._observers.append(observer)

    # -------------------------------------------------------------------------
    # Access helpers
    # -------------------------------------------------------------------------

    async def _run(self, fn: Callable, *args) -> Any:
        return await asyncio.to_thread(fn, *args)

    @asynccontextmanager
    async def _read_access(self) -> AsyncIterator[StorageBackend]:
        async with self._gate.shared():
            yield self._backends[self._active]

    @asynccontextmanager
    async def _write_access(self, id: str) -> AsyncIterator[StorageBackend]:
        async with self._id_locks.hold(id):
            async with self._gate.shared():
                if self._dirty_ids is not None:
                    self._dirty_ids.add(id)
                yield self._backends[self._active]

    def _next_updated_at(self, current: Record) -> datetime:
        """Now, but never earlier than the record's last update."""
        return max(self._clock.now(), current.updated_at)

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def _notify(self, event: str, record: Record) -> None:
        """Run observers fire-and-forget; their failures never reach the caller."""
        for observer in self._observers:
            try:
                result = observer.on_mutation(event, record)
            except Exception as e:
                logger.warning("Observer %r failed on %s %s: %s", observer, event, record.id, e)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._observer_tasks.add(task)
                task.add_done_callback(self._observer_done)

    def _observer_done(self, task: asyncio.Future) -> None:
        self._observer_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Observer task failed: %s", exc)

    async def drain_observers(self) -> None:
        """Wait for in-flight observer tasks (tests, shutdown)."""
        if self._observer_tasks:
            await asyncio.gather(*list(self._observer_tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Lifecycle operations
    # -------------------------------------------------------------------------

    async def create(
        self,
        title: str,
        *,
        body: str = "",
        description: str = "",
        tags: Iterable[str] = (),
        category: Optional[str] = None,
        priority: Union[Priority, str] = Priority.NORMAL,
        is_favorite: bool = False,
        is_archived: bool = False,
        id: Optional[str] = None,
    ) -> Record:
        """
        Create a new record on the active backend.

        Args:
            title: Record title
            id: Explicit identifier (generated when omitted)

        Returns:
            The stored Record, ``sync_state == local_only``

        Raises:
            ValueError: If the id is invalid or already in use
        """
        record_id = id or new_record_id()
        validate_id(record_id)
        now = self._clock.now()
        record = Record(
            id=record_id,
            title=title,
            body=body,
            description=description,
            tags=frozenset(tags),
            category=category,
            priority=Priority.parse(priority),
            created_at=now,
            updated_at=now,
            is_favorite=is_favorite,
            is_archived=is_archived,
            sync_state=SyncState.LOCAL_ONLY,
        )
        async with self._write_access(record_id) as backend:
            if await self._run(backend.get, record_id) is not None:
                raise ValueError(f"Record already exists: {record_id}")
            await self._run(backend.put, record)
        logger.debug("Created %s", record_id)
        self._notify("created", record)
        return record

    async def _mutate(
        self,
        id: str,
        change: Callable[[Record], dict],
        event: str,
        expected_updated_at: Optional[datetime] = None,
    ) -> Record:
        """Read-modify-write one live record under its id lock."""
        async with self._write_access(id) as backend:
            current = await self._run(backend.get, id)
            if current is None or current.is_deleted:
                raise NotFoundError(id)
            if expected_updated_at is not None and current.updated_at != expected_updated_at:
                raise StaleRecordError(id, expected_updated_at, current.updated_at)
            updated = current.evolve(
                **change(current),
                updated_at=self._next_updated_at(current),
                sync_state=sync_state_after_local_edit(current.sync_state),
            )
            await self._run(backend.put, updated)
        logger.debug("%s %s", event.capitalize(), id)
        self._notify(event, updated)
        return updated

    async def update(
        self,
        id: str,
        *,
        expected_updated_at: Optional[datetime] = None,
        **fields,
    ) -> Record:
        """
        Merge fields into an existing record and bump ``updated_at``.

        Args:
            id: Record identifier
            expected_updated_at: If given, fail instead of overwriting a
                record that changed since the caller read it
            **fields: Any of title, body, description, tags, category,
                priority, is_favorite, is_archived

        Raises:
            NotFoundError: If the record is absent or tombstoned
            StaleRecordError: If expected_updated_at no longer matches
            ValueError: On unknown fields
        """
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "tags" in fields:
            fields["tags"] = frozenset(fields["tags"])
        return await self._mutate(id, lambda _: fields, "updated", expected_updated_at)

    async def toggle_favorite(self, id: str) -> Record:
        return await self._mutate(
            id, lambda r: {"is_favorite": not r.is_favorite}, "updated"
        )

    async def set_archived(self, id: str, archived: bool = True) -> Record:
        return await self._mutate(id, lambda _: {"is_archived": archived}, "updated")

    async def delete(self, id: str) -> bool:
        """
        Tombstone a record so the deletion can be propagated by sync.

        Idempotent: returns False if the record is absent or already deleted.
        """
        try:
            await self._mutate(id, lambda _: {"deleted_at": self._clock.now()}, "deleted")
        except NotFoundError:
            return False
        return True

    async def purge(self, id: Optional[str] = None) -> int:
        """
        Hard-delete tombstones.

        Args:
            id: Purge just this record (only if tombstoned); None purges all

        Returns:
            Number of records purged
        """
        if id is not None:
            ids = [id]
        else:
            tombstones = await self.list_filtered(RecordFilter(include_deleted=True))
            ids = [r.id for r in tombstones if r.is_deleted]

        purged = 0
        for record_id in ids:
            async with self._write_access(record_id) as backend:
                current = await self._run(backend.get, record_id)
                if current is None or not current.is_deleted:
                    continue
                await self._run(backend.delete, record_id)
            purged += 1
            self._notify("purged", current)
        if purged:
            logger.info("Purged %d tombstoned record(s)", purged)
        return purged

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get(self, id: str, *, include_deleted: bool = False) -> Optional[Record]:
        """Get a record by ID (tombstones hidden unless include_deleted)."""
        async with self._read_access() as backend:
            record = await self._run(backend.get, id)
        if record is not None and record.is_deleted and not include_deleted:
            return None
        return record

    async def list_filtered(self, filter: Optional[RecordFilter] = None) -> RecordList:
        """Materialize a filtered scan; corrupt rows are reported in ``.errors``."""
        def materialize(backend: StorageBackend) -> RecordList:
            scan = backend.list_filtered(filter)
            records = list(scan)
            return RecordList(records, scan.errors)

        async with self._read_access() as backend:
            return await self._run(materialize, backend)

    async def all_records(self) -> RecordList:
        """Every stored record, tombstones included."""
        return await self.list_filtered(RecordFilter(include_deleted=True))

    async def search(self, query: str) -> SearchResults:
        """Search the active backend."""
        async with self._read_access() as backend:
            results = await self._run(backend.search, query)
        results.hits = [h for h in results.hits if not h.record.is_deleted]
        return results

    async def tag_usage(self) -> dict[str, int]:
        async with self._read_access() as backend:
            return await self._run(backend.tag_usage)

    async def stats(self) -> dict[str, Any]:
        """Counts by state, for display."""
        records = await self.all_records()
        live = [r for r in records if not r.is_deleted]
        return {
            "backend": self._active.value,
            "total": len(records),
            "live": len(live),
            "deleted": len(records) - len(live),
            "favorites": sum(1 for r in live if r.is_favorite),
            "archived": sum(1 for r in live if r.is_archived),
            "sync_states": dict(Counter(r.sync_state.value for r in records)),
            "categories": dict(Counter(r.category for r in live if r.category)),
            "priorities": dict(Counter(r.priority.label for r in live)),
            "corrupt": len(records.errors),
        }

    # -------------------------------------------------------------------------
    # Import / export
    # -------------------------------------------------------------------------

    async def export_records(self) -> list[dict]:
        """All records (tombstones included) as JSON-compatible dicts."""
        return [r.to_dict() for r in await self.all_records()]

    async def import_records(self, items: Iterable[Union[Record, dict]]) -> int:
        """
        Write records as-is, replacing any with the same id, in one transaction.

        Raises:
            StorageError: CORRUPT_RECORD if an item cannot be decoded
        """
        records = [i if isinstance(i, Record) else Record.from_dict(i) for i in items]
        async with self._gate.shared():
            if self._dirty_ids is not None:
                self._dirty_ids.update(r.id for r in records)
            await self._run(self._backends[self._active].bulk_put, records)
        logger.info("Imported %d record(s)", len(records))
        return len(records)

    # -------------------------------------------------------------------------
    # Sync-facing writes
    # -------------------------------------------------------------------------

    async def apply_sync(
        self,
        record: Record,
        *,
        expected_updated_at: Optional[datetime],
    ) -> Record:
        """
        Store a record whose sync state the Synchronizer has decided.

        Args:
            record: Complete record to store
            expected_updated_at: ``updated_at`` of the local copy the decision
                was based on, or None if the record must not exist yet

        Raises:
            StaleRecordError: If the local copy changed since the decision
        """
        async with self._write_access(record.id) as backend:
            current = await self._run(backend.get, record.id)
            actual = current.updated_at if current is not None else None
            if actual != expected_updated_at:
                raise StaleRecordError(record.id, expected_updated_at, actual)
            await self._run(backend.put, record)
        self._notify("synced", record)
        return record

    # -------------------------------------------------------------------------
    # Backend switching
    # -------------------------------------------------------------------------

    @staticmethod
    def _copy_all(source: StorageBackend, target: StorageBackend) -> int:
        scan = source.list_filtered(RecordFilter(include_deleted=True))
        records = list(scan)
        if scan.errors:
            raise scan.errors[0]
        target.clear()
        target.bulk_put(records)
        return len(records)

    @staticmethod
    def _replay(source: StorageBackend, target: StorageBackend, ids: set[str]) -> None:
        for record_id in sorted(ids):
            record = source.get(record_id)
            if record is None:
                target.delete(record_id)
            else:
                target.put(record)

    async def switch_backend(self, target: BackendKind) -> None:
        """
        Migrate every record to ``target`` and make it the active backend.

        The copy runs without blocking other operations; writes made during
        it are replayed while the gate is held exclusively for the flip.

        Raises:
            MigrationError: If copying fails; the active backend is unchanged
                and the target is cleared
        """
        target = BackendKind(target)
        if target not in self._backends:
            raise ValueError(f"No backend configured for {target.value}")

        async with self._switch_lock:
            source_kind = self._active
            if target == source_kind:
                return
            source = self._backends[source_kind]
            dest = self._backends[target]
            # Start tracking once in-flight writes have drained, so none is missed
            async with self._gate.exclusive():
                self._dirty_ids = set()
            try:
                copied = await self._run(self._copy_all, source, dest)
                async with self._gate.exclusive():
                    dirty = self._dirty_ids
                    self._dirty_ids = None
                    await self._run(self._replay, source, dest, dirty)
                    self._active = target
            except StorageError as e:
                logger.warning(
                    "Migration %s -> %s failed, clearing target: %s",
                    source_kind.value, target.value, e,
                )
                try:
                    await self._run(dest.clear)
                except StorageError as clear_error:
                    logger.error("Could not clear %s after failed migration: %s",
                                 target.value, clear_error)
                raise MigrationError(
                    f"Migration from {source_kind.value} to {target.value} failed: {e}",
                    source=source_kind.value,
                    target=target.value,
                ) from e
            finally:
                self._dirty_ids = None

        logger.info("Switched backend %s -> %s (%d records)",
                    source_kind.value, target.value, copied)

    def close(self) -> None:
        for backend in self._backends.values():
            backend.close()
