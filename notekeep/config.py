"""
Configuration management for note stores.

The configuration is stored as a TOML file in the store directory.
It records which storage backend is active plus search and sync tuning.
Sync also keeps its fetch window here: one timestamp per remote, so the next
incremental cycle against that remote asks only for newer changes.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w

from .types import BackendKind, format_timestamp, parse_utc_timestamp


CONFIG_FILENAME = "notekeep.toml"
CONFIG_VERSION = 1

KV_DB_FILENAME = "records-kv.db"
RELATIONAL_DB_FILENAME = "records.db"

DEFAULT_HYBRID_MIN_RESULTS = 5
DEFAULT_FETCH_TIMEOUT = 30.0
DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    backend: BackendKind = BackendKind.KEY_VALUE
    hybrid_min_results: int = DEFAULT_HYBRID_MIN_RESULTS
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS
    # remote key -> ISO timestamp of the last cycle without failures
    last_sync: dict[str, str] = field(default_factory=dict)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def kv_db_path(self) -> Path:
        return self.path / KV_DB_FILENAME

    @property
    def relational_db_path(self) -> Path:
        return self.path / RELATIONAL_DB_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    def last_sync_at(self, remote: str) -> Optional[datetime]:
        value = self.last_sync.get(remote)
        return parse_utc_timestamp(value) if value else None

    def set_last_sync_at(self, remote: str, when: Optional[datetime]) -> None:
        if when is None:
            self.last_sync.pop(remote, None)
        else:
            self.last_sync[remote] = format_timestamp(when)


def get_default_store_path() -> Path:
    """Store directory from NOTEKEEP_STORE_PATH, else ~/.notekeep."""
    env = os.environ.get("NOTEKEEP_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".notekeep"


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    storage = data.get("storage", {})
    search = data.get("search", {})
    sync = data.get("sync", {})

    try:
        backend = BackendKind(storage.get("backend", BackendKind.KEY_VALUE.value))
    except ValueError:
        raise ValueError(f"Unknown storage backend: {storage.get('backend')!r}") from None

    hybrid_min_results = int(search.get("hybrid_min_results", DEFAULT_HYBRID_MIN_RESULTS))
    if hybrid_min_results < 0:
        raise ValueError("search.hybrid_min_results must be >= 0")
    fetch_timeout = float(sync.get("fetch_timeout", DEFAULT_FETCH_TIMEOUT))
    if fetch_timeout <= 0:
        raise ValueError("sync.fetch_timeout must be > 0")
    last_sync = sync.get("last_sync", {})
    if not isinstance(last_sync, dict):
        raise ValueError("sync.last_sync must be a table")

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        backend=backend,
        hybrid_min_results=hybrid_min_results,
        fetch_timeout=fetch_timeout,
        retry_delays=tuple(float(d) for d in sync.get("retry_delays", DEFAULT_RETRY_DELAYS)),
        last_sync={str(k): str(v) for k, v in last_sync.items()},
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "storage": {
            "backend": config.backend.value,
        },
        "search": {
            "hybrid_min_results": config.hybrid_min_results,
        },
        "sync": {
            "fetch_timeout": config.fetch_timeout,
            "retry_delays": list(config.retry_delays),
            "last_sync": dict(config.last_sync),
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Optional[Path] = None) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    store_path = store_path or get_default_store_path()
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
