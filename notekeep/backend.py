"""
Storage backend factory.

Creates both storage engines for a store directory. The Repository holds
the pair and routes every operation to whichever one is active.
"""

from typing import NamedTuple

from .config import StoreConfig
from .protocol import StorageBackend
from .types import BackendKind


class BackendBundle(NamedTuple):
    """Both storage engines of one store."""
    key_value: StorageBackend
    relational: StorageBackend

    def as_mapping(self) -> dict[BackendKind, StorageBackend]:
        return {
            BackendKind.KEY_VALUE: self.key_value,
            BackendKind.RELATIONAL: self.relational,
        }

    def close(self) -> None:
        self.key_value.close()
        self.relational.close()


def create_backends(config: StoreConfig) -> BackendBundle:
    """Open the key-value and relational engines under the store path."""
    from .kv_store import KeyValueBackend
    from .relational_store import RelationalBackend

    return BackendBundle(
        key_value=KeyValueBackend(config.kv_db_path),
        relational=RelationalBackend(config.relational_db_path),
    )


def create_memory_backends() -> BackendBundle:
    """In-memory engines, for tests and throwaway stores."""
    from .kv_store import KeyValueBackend
    from .relational_store import RelationalBackend

    return BackendBundle(key_value=KeyValueBackend(), relational=RelationalBackend())
