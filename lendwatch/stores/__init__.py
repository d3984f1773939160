"""Position and fee-config stores."""
from .memory import InMemoryPositionStore
from .sqlite import SqlitePositionStore

__all__ = ["InMemoryPositionStore", "SqlitePositionStore"]
