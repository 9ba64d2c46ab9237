"""
Shared pytest fixtures for notekeep tests.

Provides a controllable clock, in-memory remotes, and a backend wrapper
that fails on demand, so sync and migration paths can be tested without
real I/O faults.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from notekeep.backend import create_memory_backends
from notekeep.errors import StorageError, StorageErrorKind
from notekeep.kv_store import KeyValueBackend
from notekeep.relational_store import RelationalBackend
from notekeep.repository import Repository
from notekeep.types import BackendKind, Record, RemoteRecord, SyncState

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock: every now() call advances by one second."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def now(self) -> datetime:
        value = self.current
        self.current += self.step
        return value

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeRemote:
    """
    In-memory RemoteSource.

    ``fail_next`` makes that many fetches raise; ``hang_next`` makes that
    many fetches sleep past any reasonable timeout.
    """

    def __init__(self, records: Optional[list[RemoteRecord]] = None):
        self.records: dict[str, RemoteRecord] = {r.id: r for r in records or []}
        self.fail_next = 0
        self.hang_next = 0
        self.fetch_calls = 0
        self.since_calls: list[datetime] = []

    def set(self, record: RemoteRecord) -> None:
        self.records[record.id] = record

    def remove(self, id: str) -> None:
        self.records.pop(id, None)

    async def _before_fetch(self) -> None:
        self.fetch_calls += 1
        if self.hang_next:
            self.hang_next -= 1
            await asyncio.sleep(60)
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("remote unavailable")

    async def fetch_all(self) -> list[RemoteRecord]:
        await self._before_fetch()
        return list(self.records.values())

    async def fetch_since(self, since: datetime) -> list[RemoteRecord]:
        await self._before_fetch()
        self.since_calls.append(since)
        return [r for r in self.records.values() if r.updated_at > since]


class PushingRemote(FakeRemote):
    """FakeRemote that accepts pushes and versions them v-push-N."""

    def __init__(self, records: Optional[list[RemoteRecord]] = None):
        super().__init__(records)
        self.pushed: list[Record] = []
        self.reject_ids: set[str] = set()
        self._counter = 0

    async def push(self, records: list[Record]) -> dict[str, str]:
        versions = {}
        for record in records:
            if record.id in self.reject_ids:
                continue
            self.pushed.append(record)
            if record.is_deleted:
                previous = self.records.pop(record.id, None)
                versions[record.id] = previous.remote_version if previous else ""
                continue
            self._counter += 1
            version = f"v-push-{self._counter}"
            self.records[record.id] = remote_record(
                record.id,
                title=record.title,
                body=record.body,
                updated_at=record.updated_at,
                version=version,
                tags=record.tags,
            )
            versions[record.id] = version
        return versions


class FakeSearchRemote:
    """RemoteSearchSource returning a fixed candidate list."""

    def __init__(self, records: list[Record], fail: bool = False):
        self.records = records
        self.fail = fail
        self.calls = 0

    async def search(self, query: str) -> list[Record]:
        self.calls += 1
        if self.fail:
            raise ConnectionError("search service down")
        return list(self.records)


class FailingBackend:
    """Wraps a storage engine; writes for chosen ids raise IO_FAILURE."""

    def __init__(self, inner):
        self._inner = inner
        self.fail_put_ids: set[str] = set()
        self.fail_bulk_put = False

    def put(self, record: Record) -> None:
        if record.id in self.fail_put_ids:
            raise StorageError(StorageErrorKind.IO_FAILURE, "disk full", record.id)
        self._inner.put(record)

    def bulk_put(self, records) -> None:
        if self.fail_bulk_put:
            raise StorageError(StorageErrorKind.IO_FAILURE, "disk full")
        self._inner.bulk_put(records)

    def __getattr__(self, name):
        return getattr(self._inner, name)


def remote_record(
    id: str,
    *,
    title: str = "Remote title",
    body: str = "",
    updated_at: datetime = T0,
    version: str = "v1",
    tags=(),
) -> RemoteRecord:
    return RemoteRecord(
        id=id,
        title=title,
        body=body,
        updated_at=updated_at,
        remote_version=version,
        tags=frozenset(tags),
    )


def make_record(
    id: str,
    title: str = "Title",
    *,
    body: str = "",
    tags=(),
    updated_at: datetime = T0,
    **kwargs,
) -> Record:
    kwargs.setdefault("created_at", updated_at)
    return Record(
        id=id,
        title=title,
        body=body,
        tags=frozenset(tags),
        updated_at=updated_at,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=[BackendKind.KEY_VALUE, BackendKind.RELATIONAL], ids=lambda k: k.value)
def backend(request, tmp_path):
    """Each storage engine, file-backed."""
    if request.param == BackendKind.KEY_VALUE:
        engine = KeyValueBackend(tmp_path / "kv.db")
    else:
        engine = RelationalBackend(tmp_path / "rel.db")
    yield engine
    engine.close()


@pytest.fixture
def backends():
    bundle = create_memory_backends()
    yield bundle
    bundle.close()


@pytest.fixture
def repo(backends, clock):
    """Repository over in-memory engines, key-value active."""
    return Repository(backends.as_mapping(), BackendKind.KEY_VALUE, clock=clock)


@pytest.fixture
def synced_record():
    """A record that matches remote version v1."""
    return make_record(
        "n1",
        "Shared note",
        body="original body",
        sync_state=SyncState.SYNCED,
        remote_version="v1",
    )
