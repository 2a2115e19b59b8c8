import json
import time

from linkpulse_client.storage import MemoryStore, attempt

DAY_MS = 24 * 60 * 60 * 1000
KINDS = ("view", "click")

SESSION_PREFIX = "linkpulse_session_"
STORAGE_PREFIX = "linkpulse_tracked_"


def now_ms() -> int:
    return int(time.time() * 1000)


class EventDeduplicator:
    """Advisory "already tracked" gate for views and clicks.

    Three layers, fastest first: an in-memory set for this page instance,
    a session-scoped store, and a persistent store whose entries expire
    after ``expiry_days``. Storage failures are swallowed; the memory
    layer always works. The database stays the real arbiter of
    uniqueness, this only cuts network chatter.
    """

    def __init__(self, session_store=None, persistent_store=None, clock=now_ms, expiry_days=30):
        self.session = session_store if session_store is not None else MemoryStore()
        self.persistent = persistent_store
        self.clock = clock
        self.expiry_ms = expiry_days * DAY_MS
        self._memory = set()

    @staticmethod
    def _name(kind: str, key: str) -> str:
        if kind not in KINDS:
            raise ValueError(f"Unknown event kind: {kind!r}")
        return f"{kind}_{key}"

    def has_tracked(self, kind: str, key: str) -> bool:
        name = self._name(kind, key)

        if name in self._memory:
            return True

        session_key = SESSION_PREFIX + name
        if attempt(lambda: self.session.get(session_key), None):
            self._memory.add(name)
            return True

        if self.persistent is None:
            return False

        storage_key = STORAGE_PREFIX + name
        raw = attempt(lambda: self.persistent.get(storage_key), None)
        if not raw:
            return False

        try:
            tracked_at = json.loads(raw)["timestamp"]
            expired = self.clock() > tracked_at + self.expiry_ms
        except (ValueError, TypeError, KeyError):
            # unreadable entry: drop it and allow tracking
            attempt(lambda: self.persistent.remove(storage_key), None)
            return False

        if expired:
            attempt(lambda: self.persistent.remove(storage_key), None)
            return False

        self._memory.add(name)
        attempt(lambda: self.session.set(session_key, "1"), None)
        return True

    def mark_tracked(self, kind: str, key: str):
        name = self._name(kind, key)
        self._memory.add(name)
        attempt(lambda: self.session.set(SESSION_PREFIX + name, "1"), None)
        if self.persistent is not None:
            data = json.dumps({"timestamp": self.clock(), "id": key})
            attempt(lambda: self.persistent.set(STORAGE_PREFIX + name, data), None)
