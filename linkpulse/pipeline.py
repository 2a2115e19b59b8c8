import logging
from typing import Dict

from linkpulse.cache import CacheInvalidator, InvalidationScope
from linkpulse.errors import FlushError
from linkpulse.flush_scheduler import FlushScheduler
from linkpulse.ingress import IngressService
from linkpulse.logger import AuditLogger
from linkpulse.redis_store import RedisStore
from linkpulse.server_queue import ServerQueue
from linkpulse.storage_mongodb import MongoStorage

log = logging.getLogger(__name__)


class AnalyticsPipeline:
    """Owns every analytics component of one server process"""

    def __init__(self, settings, store, storage):
        self.settings = settings
        self.store = store
        self.storage = storage
        self.queue = ServerQueue(store)
        self.ingress = IngressService(self.queue, storage)
        self.invalidator = CacheInvalidator(store)
        self.audit = AuditLogger(storage)
        self.scheduler = FlushScheduler(
            self.queue, storage, store,
            flush_interval=settings.flush_interval,
            batch_size=settings.batch_size,
            lock_ttl=settings.flush_lock_ttl,
        )

    @classmethod
    def from_settings(cls, settings) -> "AnalyticsPipeline":
        store = RedisStore.from_url(settings.redis_url, settings.redis_key_prefix)
        storage = MongoStorage(settings, store)
        return cls(settings, store, storage)

    async def start(self):
        await self.storage.ensure_indexes()
        self.scheduler.start()

    async def shutdown(self):
        await self.scheduler.stop()
        await self.store.close()
        self.storage.close()

    # --- ADMIN OPERATIONS ---

    async def flush_now(self, admin: str) -> Dict[str, int]:
        try:
            trimmed = await self.scheduler.flush_once()
        except FlushError as e:
            await self.audit.log("ERROR", admin, str(e))
            raise
        await self.audit.log("FLUSH", admin, f"views={trimmed['views']} clicks={trimmed['clicks']}")
        return trimmed

    async def flush_linktree(self, linktree_id: str, admin: str) -> Dict[str, int]:
        trimmed = await self.flush_now(admin)
        await self.invalidator.invalidate(InvalidationScope.for_linktree(linktree_id))
        return trimmed

    async def clear_all(self, admin: str) -> Dict[str, int]:
        deleted = await self.storage.clear_all_analytics()
        await self.invalidator.invalidate(InvalidationScope.everything())
        await self.audit.log("CLEAR", admin,
                             f"all linktrees: {deleted['page_views']} views, {deleted['link_clicks']} clicks")
        return deleted

    async def clear_linktree(self, linktree_id: str, admin: str) -> Dict[str, int]:
        deleted = await self.storage.clear_linktree_analytics(linktree_id)
        await self.invalidator.invalidate(InvalidationScope.for_linktree(linktree_id))
        await self.audit.log("CLEAR", admin,
                             f"linktree {linktree_id}: {deleted['page_views']} views, {deleted['link_clicks']} clicks")
        return deleted
