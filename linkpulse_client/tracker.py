import httpx

from linkpulse_client.deduplicator import EventDeduplicator
from linkpulse_client.event_queue import ClientEventQueue
from linkpulse_client.storage import JsonFileStore, MemoryStore


class PageTracker:
    """What a rendered page uses: dedup gate in front of the event queue"""

    def __init__(self, queue: ClientEventQueue, deduplicator: EventDeduplicator, http_client=None):
        self.queue = queue
        self.deduplicator = deduplicator
        # closed by close() when the tracker created it
        self._http_client = http_client

    @classmethod
    def create(cls, base_url: str, state_path=None, timeout=10.0) -> "PageTracker":
        """Tracker posting to ``base_url``; state persists to ``state_path`` if given"""
        persistent = JsonFileStore(state_path) if state_path else MemoryStore()
        client = httpx.AsyncClient(base_url=base_url, timeout=timeout)
        queue = ClientEventQueue(client, storage=persistent)
        return cls(queue, EventDeduplicator(MemoryStore(), persistent), http_client=client)

    def track_view(self, uid) -> bool:
        """Queue a view unless this uid was already tracked; True if queued"""
        uid = str(uid or "").strip()
        if not uid or self.deduplicator.has_tracked("view", uid):
            return False
        self.deduplicator.mark_tracked("view", uid)
        self.queue.enqueue_view(uid)
        return True

    async def track_click(self, link_id, linktree_id) -> bool:
        """Queue a click and flush straight away, before the visitor navigates off"""
        link_id = str(link_id or "").strip()
        linktree_id = str(linktree_id or "").strip()
        if not link_id or not linktree_id or self.deduplicator.has_tracked("click", link_id):
            return False
        self.deduplicator.mark_tracked("click", link_id)
        self.queue.enqueue_click(link_id, linktree_id)
        await self.queue.flush()
        return True

    def on_visibility_change(self, hidden: bool):
        return self.queue.on_visibility_change(hidden)

    def start(self):
        self.queue.start()

    async def close(self):
        await self.queue.stop()
        if self._http_client is not None:
            await self._http_client.aclose()
