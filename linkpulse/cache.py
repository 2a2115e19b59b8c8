import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from cachetools import TTLCache

log = logging.getLogger(__name__)

# -- Cache Stores --------------------------------------
# TTLCache(maxsize, ttl_seconds)
uid_cache = TTLCache(maxsize=5000, ttl=300)   # 5 min: public uid -> linktree id

# -- Cache Key Builders --------------------------------
TOTALS_KEY = 'lt:analytics:totals'
LIST_ANALYTICS_KEY = 'lt:list:all:analytics'
ANALYTICS_PATTERN = 'lt:analytics:*'

def analytics_key(linktree_id):             return f'lt:analytics:{linktree_id}'


@dataclass(frozen=True)
class InvalidationScope:
    """Which aggregate entries to drop"""
    linktree_id: Optional[str] = None
    totals: bool = False
    patterns: Tuple[str, ...] = ()
    keys: Tuple[str, ...] = ()

    @classmethod
    def for_linktree(cls, linktree_id: str) -> "InvalidationScope":
        return cls(linktree_id=linktree_id, totals=True, keys=(LIST_ANALYTICS_KEY,))

    @classmethod
    def everything(cls) -> "InvalidationScope":
        return cls(totals=True, patterns=(ANALYTICS_PATTERN,), keys=(LIST_ANALYTICS_KEY,))

    def exact_keys(self):
        keys = list(self.keys)
        if self.linktree_id:
            keys.append(analytics_key(self.linktree_id))
        if self.totals:
            keys.append(TOTALS_KEY)
        return keys


class CacheInvalidator:
    """Drops precomputed aggregates so the next read recomputes them.

    Only administrative mutations call this; batch flushes rely on the
    aggregate TTL instead. A store outage makes this a no-op.
    """

    def __init__(self, store):
        self.store = store

    async def invalidate(self, scope: InvalidationScope) -> int:
        ops = [self.store.delete_pattern(p) for p in scope.patterns]
        keys = scope.exact_keys()
        if keys:
            ops.append(self.store.delete(*keys))
        if not ops:
            return 0
        deleted = sum(await asyncio.gather(*ops))
        log.debug(f"🧹 Cache invalidated ({deleted} keys) for {scope}")
        return deleted
