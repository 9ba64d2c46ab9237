"""
Remote source backed by a JSON file.

Stands in for a server when syncing two stores through a shared file
(or a file another tool produces). Layout::

    {"records": [{"id": ..., "title": ..., "body": ..., "updated_at": ...,
                  "remote_version": ..., "tags": [...], ...}]}

Versions are content hashes, so pushing unchanged content keeps the version.

``updated_at`` is the time the file received the change, taken from the
remote's own clock and strictly increasing across writes. fetch_since()
filters on it, so a change pushed by one store is visible to every other
store's next incremental fetch however far apart their clocks are.

A push carries the version the local edit was based on. When the file holds
a different version, someone else changed the record in between and the
push for that record is rejected; the Synchronizer turns that into a
conflict instead of overwriting.
"""

import asyncio
import hashlib
import json
import logging
import os
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from .protocol import Clock
from .types import Record, RemoteRecord, SyncState, SystemClock, query_terms, weighted_score

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


def content_version(record: RemoteRecord) -> str:
    """Stable hash of a remote record's content fields."""
    payload = record.to_dict()
    payload.pop("remote_version")
    payload.pop("updated_at")
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


class JsonFileRemote:
    """
    Implements RemoteSource, PushableRemote and RemoteSearchSource.

    Args:
        path: The shared JSON file
        clock: Stamps received changes (defaults to the system clock)
    """

    def __init__(self, path: Path, *, clock: Optional[Clock] = None):
        self._path = path
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()

    def _load(self) -> dict[str, RemoteRecord]:
        if not self._path.exists():
            return {}
        with open(self._path, encoding="utf-8") as f:
            data = json.load(f)
        records = (RemoteRecord.from_dict(item) for item in data.get("records", []))
        return {r.id: r for r in records}

    def _save(self, records: dict[str, RemoteRecord]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        data = {"records": [records[k].to_dict() for k in sorted(records)]}
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self._path)

    def _read_all(self) -> list[RemoteRecord]:
        with self._lock:
            return list(self._load().values())

    async def fetch_all(self) -> list[RemoteRecord]:
        return await asyncio.to_thread(self._read_all)

    async def fetch_since(self, since: datetime) -> list[RemoteRecord]:
        """Records the file received after ``since``."""
        records = await self.fetch_all()
        return [r for r in records if r.updated_at > since]

    def _receive_time(self, stored: dict[str, RemoteRecord]) -> datetime:
        """Now, but always later than any change already in the file."""
        now = self._clock.now()
        if stored:
            latest = max(r.updated_at for r in stored.values())
            now = max(now, latest + _TICK)
        return now

    def _apply_push(self, records: list[Record]) -> dict[str, str]:
        with self._lock:
            stored = self._load()
            received_at = self._receive_time(stored)
            versions: dict[str, str] = {}
            for record in records:
                previous = stored.get(record.id)
                if record.is_deleted:
                    if previous is not None and previous.remote_version != record.remote_version:
                        logger.info("Rejected delete of %s: remote has %s, pushed against %s",
                                    record.id, previous.remote_version, record.remote_version)
                        continue
                    stored.pop(record.id, None)
                    versions[record.id] = previous.remote_version if previous else ""
                    continue
                incoming = RemoteRecord(
                    id=record.id,
                    title=record.title,
                    body=record.body,
                    description=record.description,
                    tags=record.tags,
                    category=record.category,
                    priority=record.priority,
                    updated_at=received_at,
                    remote_version="",
                )
                version = content_version(incoming)
                if previous is not None and previous.remote_version == version:
                    versions[record.id] = version
                    continue
                if previous is not None and previous.remote_version != record.remote_version:
                    logger.info("Rejected push of %s: remote has %s, pushed against %s",
                                record.id, previous.remote_version, record.remote_version)
                    continue
                stored[record.id] = replace(incoming, remote_version=version)
                versions[record.id] = version
            self._save(stored)
            return versions

    async def push(self, records: list[Record]) -> dict[str, str]:
        """
        Store pushed records; returns the new version of each accepted one.

        A record is rejected (absent from the result) when the file holds a
        version other than the one the record was based on.
        """
        return await asyncio.to_thread(self._apply_push, records)

    async def search(self, query: str) -> list[Record]:
        terms = query_terms(query)
        matches = []
        for r in await self.fetch_all():
            record = Record(
                id=r.id,
                title=r.title,
                body=r.body,
                description=r.description,
                tags=r.tags,
                category=r.category,
                priority=r.priority,
                created_at=r.updated_at,
                updated_at=r.updated_at,
                sync_state=SyncState.SYNCED,
                remote_version=r.remote_version,
            )
            if weighted_score(record, terms) > 0:
                matches.append(record)
        return matches
