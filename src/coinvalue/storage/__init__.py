"""coinvalue.storage - Append-only time-series persistence."""

from coinvalue.storage.store import SqliteStore, StorageProtocol, create_store, to_utc

__all__ = ["SqliteStore", "StorageProtocol", "create_store", "to_utc"]
