"""
Ingress: turns a batch of client-submitted events into queued records.

Nothing here may fail a request. Malformed events are dropped at the
earliest point, uids are resolved with a single bulk lookup per batch,
and any unexpected error is logged and reported as zero processed.
"""

import asyncio
import logging
import re
from typing import Dict, Mapping, Optional

from linkpulse.records import ClickRecord, ViewRecord, clean, is_identifier

log = logging.getLogger(__name__)

SESSION_COOKIE_RE = re.compile(r"^session[_-]?id$", re.IGNORECASE)


def client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> str:
    """Best-effort client IP from proxy headers, falling back to the peer"""
    for header in ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP"):
        value = headers.get(header)
        if value:
            first = value.split(",")[0].strip()
            if first:
                return first
    return clean(remote_addr)


def session_fingerprint(ip: str, user_agent: str = "", cookies: Optional[Mapping[str, str]] = None) -> str:
    """Opaque session id: a session cookie if present, else derived from IP + UA"""
    for name, value in (cookies or {}).items():
        if SESSION_COOKIE_RE.match(name) and clean(value):
            return clean(value)
    return f"{ip}-{user_agent or ''}"[:32]


def _items(payload, field):
    items = payload.get(field) if isinstance(payload, dict) else None
    if not isinstance(items, list):
        return []
    return [i for i in items if isinstance(i, dict)]


class IngressService:
    def __init__(self, queue, storage):
        self.queue = queue
        self.storage = storage

    async def process_batch(self, payload, ip: str, session_id: Optional[str] = None) -> Dict[str, int]:
        """Enqueue the views and clicks of one batch; returns per-kind counts"""
        ip = clean(ip)
        if not ip:
            return {"views": 0, "clicks": 0}
        try:
            views, clicks = await asyncio.gather(
                self._process_views(_items(payload, "views"), ip, session_id),
                self._process_clicks(_items(payload, "clicks"), ip, session_id),
            )
        except Exception as e:
            log.error(f"❌ Batch analytics error: {e}")
            return {"views": 0, "clicks": 0}
        return {"views": views, "clicks": clicks}

    async def _process_views(self, views, ip, session_id) -> int:
        uids = []
        for view in views:
            uid = clean(view.get("uid"))
            if uid and uid not in uids:
                uids.append(uid)
        if not uids:
            return 0

        resolved = await self.storage.resolve_uids_to_ids(uids)
        records = [ViewRecord.create(resolved[uid], ip, session_id) for uid in uids if uid in resolved]
        return await self._enqueue([r for r in records if r is not None])

    async def _process_clicks(self, clicks, ip, session_id) -> int:
        unique = {}
        for click in clicks:
            link_id, linktree_id = clean(click.get("linkId")), clean(click.get("linktreeId"))
            if is_identifier(link_id) and is_identifier(linktree_id):
                unique.setdefault((link_id, linktree_id), None)
        records = [ClickRecord.create(link_id, linktree_id, ip, session_id) for link_id, linktree_id in unique]
        return await self._enqueue([r for r in records if r is not None])

    async def process_view(self, uid, ip: str, session_id: Optional[str] = None) -> bool:
        """Single-view ingress for one page; True if a view was queued"""
        uid = clean(uid)
        if not uid or not clean(ip):
            return False
        try:
            linktree_id = (await self.storage.resolve_uids_to_ids([uid])).get(uid)
            record = ViewRecord.create(linktree_id, ip, session_id)
            return record is not None and await self.queue.append(record)
        except Exception as e:
            log.error(f"❌ View analytics error: {e}")
            return False

    async def process_click(self, link_id, linktree_id, ip: str, session_id: Optional[str] = None) -> bool:
        """Single-click ingress; looks the link up only when linktree_id is missing"""
        link_id, linktree_id = clean(link_id), clean(linktree_id)
        if not is_identifier(link_id) or not clean(ip):
            return False
        try:
            if not is_identifier(linktree_id):
                link = await self.storage.get_link(link_id)
                linktree_id = clean(link.get("linktree_id")) if link else ""
                if not is_identifier(linktree_id):
                    return False
            record = ClickRecord.create(link_id, linktree_id, ip, session_id)
            return record is not None and await self.queue.append(record)
        except Exception as e:
            log.error(f"❌ Click analytics error: {e}")
            return False

    async def _enqueue(self, records) -> int:
        if not records:
            return 0
        results = await asyncio.gather(*(self.queue.append(r) for r in records))
        return sum(1 for ok in results if ok)
