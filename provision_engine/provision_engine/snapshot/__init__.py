"""Prior-state capture and LIFO restore of host resources."""

from provision_engine.snapshot.backend import FileSystemBackend, InMemoryBackend, ResourceBackend
from provision_engine.snapshot.store import SnapshotStore

__all__ = [
    "FileSystemBackend",
    "InMemoryBackend",
    "ResourceBackend",
    "SnapshotStore",
]
