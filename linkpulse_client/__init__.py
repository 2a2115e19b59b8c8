"""
Client-side analytics: dedup gate, local event queue and page tracker
"""

from .deduplicator import EventDeduplicator
from .event_queue import ClientEventQueue
from .events import QueuedClick, QueuedView
from .storage import JsonFileStore, MemoryStore, StorageUnavailable
from .tracker import PageTracker

__all__ = [
    'EventDeduplicator',
    'ClientEventQueue',
    'QueuedView',
    'QueuedClick',
    'MemoryStore',
    'JsonFileStore',
    'StorageUnavailable',
    'PageTracker',
]
