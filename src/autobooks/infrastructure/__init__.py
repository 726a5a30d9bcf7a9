"""Infrastructure layer for autobooks."""

from autobooks.infrastructure.memory_store import MemoryStore

__all__ = [
    "MemoryStore",
]
