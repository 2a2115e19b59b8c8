"""
Local key/value stores used by the client side.

``MemoryStore`` stands in for page/tab-scoped storage, ``JsonFileStore``
for persistent storage that survives restarts. Both raise
``StorageUnavailable`` when they cannot serve a call; ``attempt`` is the
one place that turns such failures into a caller-chosen default.
"""

import json
import logging
import os
import tempfile
from typing import Callable, Dict, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class StorageUnavailable(Exception):
    """The store is disabled, full or unreadable"""


def attempt(fn: Callable[[], T], default: T) -> T:
    try:
        return fn()
    except StorageUnavailable as e:
        log.debug(f"Local storage unavailable: {e}")
        return default


class MemoryStore:
    def __init__(self, max_items: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self.max_items = max_items
        self.disabled = False

    def _check(self):
        if self.disabled:
            raise StorageUnavailable("store disabled")

    def get(self, key: str) -> Optional[str]:
        self._check()
        return self._data.get(key)

    def set(self, key: str, value: str):
        self._check()
        if self.max_items is not None and key not in self._data and len(self._data) >= self.max_items:
            raise StorageUnavailable("quota exceeded")
        self._data[key] = value

    def remove(self, key: str):
        self._check()
        self._data.pop(key, None)


class JsonFileStore:
    """Persistent store backed by one JSON document on disk"""

    def __init__(self, path: str):
        self.path = path

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise StorageUnavailable(f"cannot read {self.path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]):
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            # write-then-rename so a crash never leaves a half-written file
            fd, tmp = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageUnavailable(f"cannot write {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str):
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str):
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)
