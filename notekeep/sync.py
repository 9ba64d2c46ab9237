"""
Synchronizer: reconciles local records with a remote source.

One cycle walks the phases

    IDLE -> FETCHING -> DIFFING -> RECONCILING -> COMMITTING -> IDLE

and drops to FAILED (then back to IDLE) when a stage fails as a whole.

Fetch failures are retried with bounded exponential backoff (1s, 2s, 4s by
default) before the cycle fails with SyncCycleError. Per-record commit
failures never abort the cycle: the record keeps its previous state and its
id is reported in SyncResult.failures. The fetch window does not advance
past a cycle with failures, so the next cycle retries them.

Conflicts (local pending changes vs. a changed remote) are never merged
automatically. The record moves to ``sync_state == conflict`` with its local
content untouched and the remote copy cached alongside, until a caller
resolves it with resolve_conflict(). A push the remote refuses because its
copy changed since the local edit becomes a conflict the same way.

The sync-state transition rules live here; the Repository consults
sync_state_after_local_edit() when a user edits a record.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Sequence

from .errors import (
    NotFoundError,
    StaleRecordError,
    StorageError,
    SyncCycleError,
    SyncErrorKind,
)
from .protocol import Clock, PushableRemote, RemoteSource
from .types import Record, RemoteRecord, SyncState

if TYPE_CHECKING:
    from .repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 30.0
DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)

_LOCAL_EDIT_TRANSITIONS = {
    SyncState.LOCAL_ONLY: SyncState.LOCAL_ONLY,
    SyncState.SYNCED: SyncState.PENDING_PUSH,
    SyncState.PENDING_PUSH: SyncState.PENDING_PUSH,
    SyncState.CONFLICT: SyncState.CONFLICT,
}

# Local states holding changes the remote has not seen
_UNPUSHED = (SyncState.LOCAL_ONLY, SyncState.PENDING_PUSH)


def sync_state_after_local_edit(state: SyncState) -> SyncState:
    """State a record moves to when edited or deleted locally."""
    return _LOCAL_EDIT_TRANSITIONS[state]


class SyncPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    RECONCILING = "reconciling"
    COMMITTING = "committing"
    FAILED = "failed"


class ChangeKind(str, Enum):
    NEW = "new"
    UPDATE_FROM_REMOTE = "update_from_remote"
    CONFLICT = "conflict"
    REMOTE_DELETED = "remote_deleted"


class Resolution(str, Enum):
    KEEP_LOCAL = "local"
    KEEP_REMOTE = "remote"


@dataclass(frozen=True)
class Change:
    """One difference between the local and remote record sets."""
    kind: ChangeKind
    record_id: str
    local: Optional[Record] = None
    remote: Optional[RemoteRecord] = None


@dataclass
class SyncResult:
    """Outcome of one sync cycle."""
    new_count: int = 0
    updated_count: int = 0
    conflict_count: int = 0
    deleted_count: int = 0
    pushed_count: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """Raise SyncCycleError(PARTIAL_COMMIT_FAILURE) if any record failed."""
        if self.failures:
            raise SyncCycleError(
                SyncErrorKind.PARTIAL_COMMIT_FAILURE,
                f"{len(self.failures)} record(s) failed to commit",
                list(self.failures),
            )


def diff_records(
    local: dict[str, Record],
    remote: Sequence[RemoteRecord],
    *,
    full: bool,
) -> list[Change]:
    """
    Compare remote records against local ones by id.

    Remote deletion is only inferred from a full fetch, and only for local
    records that were in sync (a never-pushed record is absent remotely
    by definition).
    """
    changes: list[Change] = []
    for r in remote:
        loc = local.get(r.id)
        if loc is None:
            changes.append(Change(ChangeKind.NEW, r.id, None, r))
        elif loc.sync_state in _UNPUSHED:
            if r.remote_version != loc.remote_version:
                changes.append(Change(ChangeKind.CONFLICT, r.id, loc, r))
        elif loc.sync_state == SyncState.CONFLICT:
            cached = loc.conflict_remote
            if cached is None or cached.remote_version != r.remote_version:
                changes.append(Change(ChangeKind.CONFLICT, r.id, loc, r))
        elif r.remote_version != loc.remote_version and r.updated_at > loc.updated_at:
            changes.append(Change(ChangeKind.UPDATE_FROM_REMOTE, r.id, loc, r))

    if full:
        remote_ids = {r.id for r in remote}
        for loc in local.values():
            if (
                loc.id not in remote_ids
                and loc.sync_state == SyncState.SYNCED
                and loc.remote_version is not None
                and not loc.is_deleted
            ):
                changes.append(Change(ChangeKind.REMOTE_DELETED, loc.id, loc, None))

    return sorted(changes, key=lambda c: c.record_id)


def _remote_content(r: RemoteRecord) -> dict:
    return {
        "title": r.title,
        "body": r.body,
        "description": r.description,
        "tags": r.tags,
        "category": r.category,
        "priority": r.priority,
    }


class Synchronizer:
    """
    Runs sync cycles between a Repository and a RemoteSource.

    Args:
        repository: Local records; all writes go through it
        remote: Remote source (if it also implements push(), local
            changes are pushed after committing)
        fetch_timeout: Seconds before a fetch attempt times out
        retry_delays: Backoff delays between fetch attempts
        clock: Time source (defaults to the repository's clock)
        sleep: Awaitable sleep, replaceable in tests
        last_sync_at: Fetch window carried over from an earlier cycle (None
            makes the first cycle full)
    """

    def __init__(
        self,
        repository: "Repository",
        remote: RemoteSource,
        *,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        last_sync_at: Optional[datetime] = None,
    ):
        self._repo = repository
        self._remote = remote
        self._fetch_timeout = fetch_timeout
        self._retry_delays = tuple(retry_delays)
        self._clock = clock or repository.clock
        self._sleep = sleep
        self._cycle_lock = asyncio.Lock()
        self.phase = SyncPhase.IDLE
        self.last_sync_at = last_sync_at

    def _set_phase(self, phase: SyncPhase) -> None:
        if phase != self.phase:
            logger.debug("Sync phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run_cycle(self, *, full: bool = False) -> SyncResult:
        """
        Run one sync cycle.

        Args:
            full: Fetch the whole remote set (also enables remote-deletion
                detection). The first cycle is always full.

        Raises:
            SyncCycleError: FETCH_TIMEOUT or FETCH_FAILURE once retries run out
        """
        async with self._cycle_lock:
            full = full or self.last_sync_at is None
            started_at = self._clock.now()
            try:
                self._set_phase(SyncPhase.FETCHING)
                remote = await self._fetch(full)

                self._set_phase(SyncPhase.DIFFING)
                local = {r.id: r for r in await self._repo.all_records()}
                changes = diff_records(local, remote, full=full)

                self._set_phase(SyncPhase.RECONCILING)
                planned = [(c, self._reconcile(c)) for c in changes]

                self._set_phase(SyncPhase.COMMITTING)
                result = SyncResult()
                await self._commit(planned, result)
                if isinstance(self._remote, PushableRemote):
                    await self._push(result)
                await self._purge_confirmed(result)
            except Exception:
                self._set_phase(SyncPhase.FAILED)
                raise
            finally:
                self._set_phase(SyncPhase.IDLE)

            # The fetch window stays put while any record still needs a retry
            if not result.failures:
                self.last_sync_at = started_at
            logger.info(
                "Sync cycle: %d new, %d updated, %d conflicts, %d deleted, "
                "%d pushed, %d failed",
                result.new_count, result.updated_count, result.conflict_count,
                result.deleted_count, result.pushed_count, len(result.failures),
            )
            return result

    async def _fetch(self, full: bool) -> list[RemoteRecord]:
        """Fetch with timeout and bounded exponential backoff."""
        attempts = len(self._retry_delays) + 1
        error: Optional[SyncCycleError] = None
        for attempt in range(attempts):
            if full:
                call = self._remote.fetch_all()
            else:
                call = self._remote.fetch_since(self.last_sync_at)
            try:
                return list(await asyncio.wait_for(call, self._fetch_timeout))
            except TimeoutError as e:
                error = SyncCycleError(
                    SyncErrorKind.FETCH_TIMEOUT,
                    f"Remote fetch timed out after {self._fetch_timeout}s",
                )
                error.__cause__ = e
            except Exception as e:
                error = SyncCycleError(SyncErrorKind.FETCH_FAILURE, f"Remote fetch failed: {e}")
                error.__cause__ = e
            if attempt < len(self._retry_delays):
                delay = self._retry_delays[attempt]
                logger.warning("%s; retrying in %.1fs (%d/%d)",
                               error, delay, attempt + 1, len(self._retry_delays))
                await self._sleep(delay)
        raise error

    def _reconcile(self, change: Change) -> Record:
        """The record to commit for one change. Conflicts keep local content."""
        local, remote = change.local, change.remote
        now = self._clock.now()

        if change.kind == ChangeKind.NEW:
            return Record(
                id=remote.id,
                created_at=remote.updated_at,
                updated_at=remote.updated_at,
                sync_state=SyncState.SYNCED,
                remote_version=remote.remote_version,
                **_remote_content(remote),
            )
        if change.kind == ChangeKind.UPDATE_FROM_REMOTE:
            return local.evolve(
                updated_at=max(local.updated_at, remote.updated_at),
                sync_state=SyncState.SYNCED,
                remote_version=remote.remote_version,
                conflict_remote=None,
                **_remote_content(remote),
            )
        if change.kind == ChangeKind.CONFLICT:
            return local.evolve(
                updated_at=max(local.updated_at, now),
                sync_state=SyncState.CONFLICT,
                conflict_remote=remote,
            )
        # REMOTE_DELETED: tombstone now, purged once confirmed
        return local.evolve(
            updated_at=max(local.updated_at, now),
            deleted_at=now,
        )

    async def _commit(self, planned: list[tuple[Change, Record]], result: SyncResult) -> None:
        """One write per record; failures are collected, not raised."""
        for change, record in planned:
            expected = change.local.updated_at if change.local else None
            try:
                await self._repo.apply_sync(record, expected_updated_at=expected)
            except (StorageError, StaleRecordError) as e:
                logger.warning("Sync commit failed for %s: %s", change.record_id, e)
                result.failures.append(change.record_id)
                continue
            if change.kind == ChangeKind.NEW:
                result.new_count += 1
            elif change.kind == ChangeKind.UPDATE_FROM_REMOTE:
                result.updated_count += 1
            elif change.kind == ChangeKind.CONFLICT:
                result.conflict_count += 1
            else:
                result.deleted_count += 1

    async def _push(self, result: SyncResult) -> None:
        """Send unpushed local changes; acknowledged records become synced."""
        failed = set(result.failures)
        outgoing = [
            r for r in await self._repo.all_records()
            if r.sync_state in _UNPUSHED
            and r.id not in failed
            # a tombstone the remote never saw has nothing to delete remotely
            and not (r.is_deleted and r.sync_state == SyncState.LOCAL_ONLY)
        ]
        if not outgoing:
            return

        try:
            versions = await asyncio.wait_for(self._remote.push(outgoing), self._fetch_timeout)
        except Exception as e:
            logger.warning("Push of %d record(s) failed: %s", len(outgoing), e)
            result.failures.extend(r.id for r in outgoing)
            return

        rejected: list[Record] = []
        for record in outgoing:
            version = versions.get(record.id)
            if version is None:
                rejected.append(record)
                continue
            acked = record.evolve(sync_state=SyncState.SYNCED, remote_version=version)
            try:
                await self._repo.apply_sync(acked, expected_updated_at=record.updated_at)
            except (StorageError, StaleRecordError) as e:
                logger.warning("Could not mark %s as pushed: %s", record.id, e)
                result.failures.append(record.id)
                continue
            result.pushed_count += 1

        if rejected:
            await self._conflicts_from_rejected(rejected, result)

    async def _conflicts_from_rejected(self, rejected: list[Record], result: SyncResult) -> None:
        """
        A push the remote refused because its copy moved on is a conflict.

        Rejections with no newer remote copy to hold alongside stay failures,
        to be retried next cycle.
        """
        try:
            current = {r.id: r for r in await self._fetch(True)}
        except SyncCycleError as e:
            logger.warning("Could not fetch remote copies of rejected records: %s", e)
            result.failures.extend(r.id for r in rejected)
            return

        for record in rejected:
            remote = current.get(record.id)
            if remote is None or remote.remote_version == record.remote_version:
                logger.warning("Remote did not accept %s", record.id)
                result.failures.append(record.id)
                continue
            change = Change(ChangeKind.CONFLICT, record.id, record, remote)
            try:
                await self._repo.apply_sync(
                    self._reconcile(change), expected_updated_at=record.updated_at
                )
            except (StorageError, StaleRecordError) as e:
                logger.warning("Could not record conflict on %s: %s", record.id, e)
                result.failures.append(record.id)
                continue
            logger.info("Push of %s rejected by a newer remote copy; now in conflict",
                        record.id)
            result.conflict_count += 1

    async def _purge_confirmed(self, result: SyncResult) -> None:
        """Hard-delete tombstones the remote has confirmed (or never knew)."""
        for record in await self._repo.all_records():
            if not record.is_deleted:
                continue
            if record.sync_state not in (SyncState.SYNCED, SyncState.LOCAL_ONLY):
                continue
            try:
                await self._repo.purge(record.id)
            except StorageError as e:
                logger.warning("Could not purge %s: %s", record.id, e)
                result.failures.append(record.id)

    # -------------------------------------------------------------------------
    # Conflict resolution
    # -------------------------------------------------------------------------

    async def conflicts(self) -> list[Record]:
        """Records awaiting conflict resolution."""
        return [r for r in await self._repo.all_records() if r.sync_state == SyncState.CONFLICT]

    async def resolve_conflict(self, id: str, keep: Resolution) -> Record:
        """Resolve a conflict with an explicit choice; see resolve_conflict()."""
        return await resolve_conflict(self._repo, id, keep, clock=self._clock)


async def resolve_conflict(
    repository: "Repository",
    id: str,
    keep: Resolution,
    *,
    clock: Optional[Clock] = None,
) -> Record:
    """
    Resolve a conflict with an explicit choice.

    Needs no remote: the remote copy was cached on the record when the
    conflict was detected.

    KEEP_LOCAL keeps local content and marks it pending_push against the
    remote's version, so the next push supersedes the remote copy.
    KEEP_REMOTE replaces local content with the cached remote copy.

    Raises:
        NotFoundError: If the record does not exist
        ValueError: If the record is not in conflict
    """
    keep = Resolution(keep)
    record = await repository.get(id, include_deleted=True)
    if record is None:
        raise NotFoundError(id)
    if record.sync_state != SyncState.CONFLICT or record.conflict_remote is None:
        raise ValueError(f"Record {id} is not in conflict")

    remote = record.conflict_remote
    now = (clock or repository.clock).now()
    if keep == Resolution.KEEP_LOCAL:
        resolved = record.evolve(
            updated_at=max(record.updated_at, now),
            sync_state=SyncState.PENDING_PUSH,
            remote_version=remote.remote_version,
            conflict_remote=None,
        )
    else:
        resolved = record.evolve(
            updated_at=max(record.updated_at, remote.updated_at, now),
            sync_state=SyncState.SYNCED,
            remote_version=remote.remote_version,
            conflict_remote=None,
            deleted_at=None,
            **_remote_content(remote),
        )
    await repository.apply_sync(resolved, expected_updated_at=record.updated_at)
    logger.info("Resolved conflict on %s keeping %s", id, keep.value)
    return resolved
