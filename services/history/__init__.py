"""
Durable per-unit history mirror.
"""

from .mirror import HistoryMirror
from .postgres import PostgresHistoryStore
from .store import HistoryEntry, HistoryStore, InMemoryHistoryStore

__all__ = [
    "HistoryEntry",
    "HistoryMirror",
    "HistoryStore",
    "InMemoryHistoryStore",
    "PostgresHistoryStore",
]
