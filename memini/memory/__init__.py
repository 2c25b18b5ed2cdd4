"""Long-term memory store clients."""

from .store import HttpMemoryStore, LocalMemoryStore, MemoryRecord, MemoryStore, create_memory_store

__all__ = ["MemoryStore", "LocalMemoryStore", "HttpMemoryStore", "MemoryRecord", "create_memory_store"]
