"""
Error types and error logging for notekeep.

Callers get typed failures that distinguish "retry later" (I/O, timeout)
from "needs manual resolution" (conflict state on a record) from "data
integrity issue" (corrupt record). Conflicts are never raised; they live
on the record as ``sync_state == conflict``.

The CLI logs full stack traces to a file while showing clean messages.
"""

import os
import traceback
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional


class NotekeepError(Exception):
    """Base class for all notekeep errors."""


class StorageErrorKind(str, Enum):
    IO_FAILURE = "io_failure"
    CORRUPT_RECORD = "corrupt_record"
    NOT_FOUND = "not_found"


class StorageError(NotekeepError):
    """A storage engine failed to read or write a record."""

    def __init__(
        self,
        kind: StorageErrorKind,
        message: str,
        record_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.record_id = record_id

    @property
    def retryable(self) -> bool:
        return self.kind == StorageErrorKind.IO_FAILURE

    def __repr__(self) -> str:
        return f"StorageError({self.kind.value}, {str(self)!r}, record_id={self.record_id!r})"


class NotFoundError(StorageError):
    """The requested record does not exist (or is tombstoned)."""

    def __init__(self, record_id: str):
        super().__init__(
            StorageErrorKind.NOT_FOUND, f"Record not found: {record_id}", record_id
        )


class StaleRecordError(NotekeepError):
    """A write expected an ``updated_at`` that no longer matches the stored record."""

    def __init__(
        self,
        record_id: str,
        expected: Optional[datetime],
        actual: Optional[datetime],
    ):
        def _show(ts: Optional[datetime]) -> str:
            return ts.isoformat() if ts else "absent"
        super().__init__(
            f"Record {record_id} changed: expected {_show(expected)}, found {_show(actual)}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class MigrationError(NotekeepError):
    """Copying records into the target backend failed; the switch was rolled back."""

    def __init__(self, message: str, *, source: str, target: str):
        super().__init__(message)
        self.source = source
        self.target = target


class SyncErrorKind(str, Enum):
    FETCH_TIMEOUT = "fetch_timeout"
    FETCH_FAILURE = "fetch_failure"
    PARTIAL_COMMIT_FAILURE = "partial_commit_failure"


class SyncCycleError(NotekeepError):
    """A sync cycle failed as a whole (or, on request, partially)."""

    def __init__(self, kind: SyncErrorKind, message: str, failures: Optional[list[str]] = None):
        super().__init__(message)
        self.kind = kind
        self.failures = failures or []

    @property
    def retryable(self) -> bool:
        return self.kind in (SyncErrorKind.FETCH_TIMEOUT, SyncErrorKind.FETCH_FAILURE)


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting NOTEKEEP_STORE_PATH."""
    store = store_path or os.environ.get("NOTEKEEP_STORE_PATH")
    if store:
        return Path(store) / "notekeep-errors.log"
    return Path.home() / ".notekeep" / "notekeep-errors.log"


def log_exception(exc: Exception, context: str = "", store_path: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory holding the log (default: env or ~/.notekeep)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
