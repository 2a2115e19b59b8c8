import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, UpdateOne
from pymongo.errors import BulkWriteError, PyMongoError

from linkpulse.cache import TOTALS_KEY, analytics_key, uid_cache
from linkpulse.errors import DuplicateRecordError, PartialWriteError, StorageError
from linkpulse.records import clean

log = logging.getLogger(__name__)

DUPLICATE_KEY = 11000
TOP_LINKS = 10
RECENT_ROWS = 20


def _iso(value):
    return value.isoformat() if hasattr(value, "isoformat") else value


class MongoStorage:
    def __init__(self, settings, cache_store, db=None):
        self.settings = settings
        self.cache = cache_store
        self.client = None

        if db is None:
            if not settings.mongo_url:
                raise ValueError("MONGO_URL not found in environment")
            self.client = AsyncIOMotorClient(
                settings.mongo_url,
                maxPoolSize=50,
                minPoolSize=5,
                maxIdleTimeMS=30000,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=5000,
                socketTimeoutMS=10000,
                retryWrites=True,
                w='majority'
            )
            db = self.client[settings.mongo_db_name]
        self.db = db

        # Collections
        self.linktrees = self.db['linktrees']
        self.links = self.db['links']
        self.page_views = self.db['page_views']
        self.link_clicks = self.db['link_clicks']
        self.action_logs = self.db['action_logs']

        log.info("✅ MongoDB storage ready")

    async def ensure_indexes(self):
        """Create the indexes the analytics pipeline relies on.

        The unique compound indexes make a re-flushed record (inserted but
        never trimmed from the queue) collide instead of double counting.
        """
        await self.linktrees.create_index([("uid", ASCENDING)], unique=True, name="idx_linktree_uid")
        await self.links.create_index([("linktree_id", ASCENDING), ("click_count", DESCENDING)],
                                      name="idx_links_linktree_clicks")
        await self.page_views.create_index(
            [("linktree_id", ASCENDING), ("ip_address", ASCENDING),
             ("session_id", ASCENDING), ("viewed_at", ASCENDING)],
            unique=True, name="uniq_page_view"
        )
        await self.page_views.create_index([("linktree_id", ASCENDING), ("viewed_at", DESCENDING)],
                                           name="idx_views_linktree_ts")
        await self.link_clicks.create_index(
            [("link_id", ASCENDING), ("ip_address", ASCENDING),
             ("session_id", ASCENDING), ("clicked_at", ASCENDING)],
            unique=True, name="uniq_link_click"
        )
        await self.link_clicks.create_index([("linktree_id", ASCENDING), ("clicked_at", DESCENDING)],
                                            name="idx_clicks_linktree_ts")
        await self.action_logs.create_index([("timestamp", DESCENDING)], name="idx_action_logs_ts")

    # --- LOOKUPS ---

    async def resolve_uids_to_ids(self, uids: Iterable[str]) -> Dict[str, str]:
        """Map public uids to linktree ids in one query for all cache misses"""
        wanted = {clean(u) for u in uids} - {""}
        resolved = {}
        misses = []
        for uid in wanted:
            cached = uid_cache.get(uid)
            if cached:
                resolved[uid] = cached
            else:
                misses.append(uid)

        if misses:
            docs = await self.linktrees.find({"uid": {"$in": misses}}, {"_id": 1, "uid": 1}).to_list(len(misses))
            for doc in docs:
                uid, lt_id = doc.get("uid"), doc.get("_id")
                if uid and lt_id:
                    resolved[uid] = str(lt_id)
                    uid_cache[uid] = str(lt_id)
        return resolved

    async def get_link(self, link_id: str) -> Optional[Dict]:
        return await self.links.find_one({"_id": link_id}, {"_id": 1, "linktree_id": 1})

    async def linktree_exists(self, linktree_id: str) -> bool:
        return await self.linktrees.find_one({"_id": linktree_id}, {"_id": 1}) is not None

    async def _existing_ids(self, coll, ids) -> set:
        ids = list(set(ids))
        if not ids:
            return set()
        return set(await coll.distinct("_id", {"_id": {"$in": ids}}))

    # --- BATCH INSERTS ---

    async def _insert_many(self, coll, docs: List[Dict]) -> Tuple[List[Dict], int]:
        """Unordered multi-insert; returns (inserted docs, duplicate count)"""
        if not docs:
            return [], 0
        try:
            # ordered=False lets the rest of the batch land even when some rows collide
            await coll.insert_many(docs, ordered=False)
            return docs, 0
        except BulkWriteError as e:
            errors = e.details.get("writeErrors", [])
            if errors and all(err.get("code") == DUPLICATE_KEY for err in errors):
                failed = {err.get("index") for err in errors}
                inserted = [d for i, d in enumerate(docs) if i not in failed]
                return inserted, len(failed)
            failed = {err.get("index") for err in errors}
            raise PartialWriteError(
                f"Batch insert into {coll.name} failed: {e}",
                [d for i, d in enumerate(docs) if i not in failed],
            ) from e
        except PyMongoError as e:
            raise StorageError(f"Batch insert into {coll.name} failed: {e}") from e

    async def insert_page_views_batch(self, records) -> int:
        """Insert view records; rows whose linktree no longer exists are skipped.

        Raises DuplicateRecordError when some rows were already present.
        """
        if not records:
            return 0
        try:
            alive = await self._existing_ids(self.linktrees, [r.linktree_id for r in records])
        except PyMongoError as e:
            raise StorageError(f"Linktree existence check failed: {e}") from e
        docs = [r.to_document() for r in records if r.linktree_id in alive]

        inserted, duplicates = await self._insert_many(self.page_views, docs)
        if duplicates:
            raise DuplicateRecordError(len(inserted), duplicates)
        return len(inserted)

    async def insert_link_clicks_batch(self, records) -> int:
        """Insert click records and bump links.click_count for the new rows"""
        if not records:
            return 0
        try:
            alive_trees, alive_links = await asyncio.gather(
                self._existing_ids(self.linktrees, [r.linktree_id for r in records]),
                self._existing_ids(self.links, [r.link_id for r in records]),
            )
        except PyMongoError as e:
            raise StorageError(f"Link existence check failed: {e}") from e
        docs = [
            r.to_document() for r in records
            if r.linktree_id in alive_trees and r.link_id in alive_links
        ]

        try:
            inserted, duplicates = await self._insert_many(self.link_clicks, docs)
        except PartialWriteError as e:
            # rows that landed will collide on retry, so count them now
            await self._bump_click_counts(e.inserted)
            raise
        await self._bump_click_counts(inserted)

        if duplicates:
            raise DuplicateRecordError(len(inserted), duplicates)
        return len(inserted)

    async def _bump_click_counts(self, inserted: List[Dict]):
        counts = {}
        for doc in inserted:
            counts[doc["link_id"]] = counts.get(doc["link_id"], 0) + 1
        if not counts:
            return
        ops = [UpdateOne({"_id": link_id}, {"$inc": {"click_count": n}}) for link_id, n in counts.items()]
        try:
            await self.links.bulk_write(ops, ordered=False)
        except PyMongoError as e:
            # the click rows themselves are stored; counters are derived
            log.error(f"❌ click_count update failed: {e}")

    # --- ADMIN MUTATIONS ---

    async def clear_all_analytics(self) -> Dict[str, int]:
        """Delete every view/click row and reset link counters"""
        try:
            views = await self.page_views.delete_many({})
            clicks = await self.link_clicks.delete_many({})
            await self.links.update_many({}, {"$set": {"click_count": 0}})
        except PyMongoError as e:
            raise StorageError(f"Clearing analytics failed: {e}") from e
        return {"page_views": views.deleted_count, "link_clicks": clicks.deleted_count}

    async def clear_linktree_analytics(self, linktree_id: str) -> Dict[str, int]:
        q = {"linktree_id": linktree_id}
        try:
            views = await self.page_views.delete_many(q)
            clicks = await self.link_clicks.delete_many(q)
            await self.links.update_many(q, {"$set": {"click_count": 0}})
        except PyMongoError as e:
            raise StorageError(f"Clearing analytics for {linktree_id} failed: {e}") from e
        return {"page_views": views.deleted_count, "link_clicks": clicks.deleted_count}

    # --- AGGREGATES (ASYNC + CACHE) ---

    async def get_linktree_analytics(self, linktree_id: str) -> Dict:
        """Per-linktree summary (Cached)"""
        k = analytics_key(linktree_id)
        cached = await self.cache.get_json(k)
        if cached is not None:
            return cached

        q = {"linktree_id": linktree_id}
        (total_views, total_clicks, view_ips, click_ips,
         top_links, recent_views, recent_clicks) = await asyncio.gather(
            self.page_views.count_documents(q),
            self.link_clicks.count_documents(q),
            self.page_views.distinct("ip_address", q),
            self.link_clicks.distinct("ip_address", q),
            self.links.find(q, {"_id": 1, "click_count": 1})
                .sort("click_count", DESCENDING).limit(TOP_LINKS).to_list(TOP_LINKS),
            self.page_views.find(q, {"_id": 0, "ip_address": 1, "viewed_at": 1})
                .sort("viewed_at", DESCENDING).limit(RECENT_ROWS).to_list(RECENT_ROWS),
            self.link_clicks.find(q, {"_id": 0, "link_id": 1, "ip_address": 1, "clicked_at": 1})
                .sort("clicked_at", DESCENDING).limit(RECENT_ROWS).to_list(RECENT_ROWS),
        )

        result = {
            "total_views": total_views,
            "unique_views": len(view_ips),
            "total_clicks": total_clicks,
            "unique_clicks": len(click_ips),
            "top_clicked_links": [
                {"link_id": str(d["_id"]), "click_count": d.get("click_count", 0)}
                for d in top_links if d.get("click_count", 0) > 0
            ],
            "recent_views": [
                {"ip_address": d.get("ip_address"), "viewed_at": _iso(d.get("viewed_at"))}
                for d in recent_views
            ],
            "recent_clicks": [
                {"link_id": d.get("link_id"), "ip_address": d.get("ip_address"),
                 "clicked_at": _iso(d.get("clicked_at"))}
                for d in recent_clicks
            ],
        }
        await self.cache.set(k, result, self.settings.cache_ttl)
        return result

    async def get_total_analytics(self) -> Dict:
        """Totals across every linktree (Cached)"""
        cached = await self.cache.get_json(TOTALS_KEY)
        if cached is not None:
            return cached

        total_views, total_clicks, view_ips, click_ips = await asyncio.gather(
            self.page_views.count_documents({}),
            self.link_clicks.count_documents({}),
            self.page_views.distinct("ip_address"),
            self.link_clicks.distinct("ip_address"),
        )
        result = {
            "total_views": total_views,
            "unique_views": len(view_ips),
            "total_clicks": total_clicks,
            "unique_clicks": len(click_ips),
        }
        await self.cache.set(TOTALS_KEY, result, self.settings.cache_ttl)
        return result

    # --- AUDIT & HEALTH ---

    async def log_action(self, admin, action: str, details: str = ""):
        """Append an audit document (best-effort, never raises)"""
        try:
            await self.action_logs.insert_one({
                "admin": admin,
                "action": action,
                "details": details,
                "timestamp": int(time.time()),
            })
        except PyMongoError as e:
            log.warning(f"⚠️ Failed to write action log: {e}")

    async def ping(self) -> Optional[float]:
        try:
            start = time.perf_counter()
            await self.db.command("ping")
            return round((time.perf_counter() - start) * 1000, 2)
        except PyMongoError as e:
            log.error(f"❌ MongoDB ping failed: {e}")
            return None

    def close(self):
        if self.client is not None:
            self.client.close()
