"""
Client-side analytics queue.

Events are kept in a local store and sent to the ingress endpoint in one
batched request, triggered when the queue fills up, on a timer, when the
page goes hidden and right after a click.
"""

import asyncio
import json
import logging
from typing import List, Optional

import httpx

from linkpulse_client.deduplicator import DAY_MS, now_ms
from linkpulse_client.events import QueuedClick, QueuedView, batch_payload, event_from_dict, event_to_dict
from linkpulse_client.storage import MemoryStore, attempt

log = logging.getLogger("linkpulse_client.queue")

QUEUE_KEY = "analytics_queue"


def _clean(value) -> str:
    return str(value).strip() if value is not None else ""


class ClientEventQueue:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        endpoint: str = "/analytics/batch",
        storage=None,
        clock=now_ms,
        max_size: int = 100,
        max_age_days: int = 7,
        flush_interval: float = 30,
    ):
        self._http = http_client
        self.endpoint = endpoint
        self.storage = storage if storage is not None else MemoryStore()
        self.clock = clock
        self.max_size = max_size
        self.max_age_ms = max_age_days * DAY_MS
        self.flush_interval = flush_interval
        self._flushing = False
        self._task: Optional[asyncio.Task] = None
        self._background = set()

    # --- PERSISTED QUEUE ---

    def _read(self) -> List:
        """Current queue, with stale and unreadable entries purged"""
        raw = attempt(lambda: self.storage.get(QUEUE_KEY), None)
        if not raw:
            return []
        try:
            stored = json.loads(raw)
        except ValueError:
            self._write([])
            return []
        if not isinstance(stored, list):
            self._write([])
            return []

        now = self.clock()
        events = [
            e for e in (event_from_dict(item) for item in stored)
            if e is not None and now - e.enqueued_at_ms < self.max_age_ms
        ]
        if len(events) != len(stored):
            self._write(events)
        return events

    def _write(self, events) -> bool:
        data = json.dumps([event_to_dict(e) for e in events])

        def _set():
            self.storage.set(QUEUE_KEY, data)
            return True
        return attempt(_set, False)

    def pending(self) -> List:
        return self._read()

    # --- ENQUEUE ---

    def enqueue_view(self, uid) -> Optional[asyncio.Task]:
        """Queue a page view; returns the flush task if the queue filled up"""
        uid = _clean(uid)
        if not uid:
            return None
        return self._add(QueuedView(uid, self.clock()))

    def enqueue_click(self, link_id, linktree_id) -> Optional[asyncio.Task]:
        link_id, linktree_id = _clean(link_id), _clean(linktree_id)
        if not link_id or not linktree_id:
            return None
        return self._add(QueuedClick(link_id, linktree_id, self.clock()))

    def _add(self, event) -> Optional[asyncio.Task]:
        queue = self._read()
        queue.append(event)
        if len(queue) > self.max_size:
            # evict oldest
            queue = queue[-self.max_size:]
        self._write(queue)

        if len(queue) >= self.max_size:
            return self.schedule_flush()
        return None

    # --- FLUSH ---

    def schedule_flush(self) -> Optional[asyncio.Task]:
        """Fire-and-forget flush on the running loop (None outside a loop)"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(self._flush_quietly())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _flush_quietly(self) -> bool:
        try:
            return await self.flush()
        except Exception as e:
            log.warning(f"Analytics flush error: {e}")
            return False

    async def flush(self) -> bool:
        """Send every queued event in one request.

        Returns True when the server accepted the batch. A flush already in
        progress or an empty queue makes this a no-op returning False. On
        failure the snapshot is put back, merged with whatever was queued
        while the request was in flight.
        """
        if self._flushing:
            return False
        snapshot = self._read()
        if not snapshot:
            return False

        self._flushing = True
        try:
            payload = batch_payload(snapshot)
            cleared = self._write([])
            try:
                response = await self._http.post(self.endpoint, json=payload)
                delivered = response.is_success
                if not delivered:
                    log.warning(f"Analytics flush failed with status {response.status_code}")
            except httpx.HTTPError as e:
                log.warning(f"Analytics flush error: {e}")
                delivered = False

            if not delivered and cleared:
                self._restore(snapshot)
            return delivered
        finally:
            self._flushing = False

    def _restore(self, snapshot):
        arrived = self._read()
        merged = sorted(list(snapshot) + arrived, key=lambda e: e.enqueued_at_ms)
        self._write(merged)

    # --- TRIGGERS ---

    def start(self):
        """Start the periodic flush timer (no-op if already running)"""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._flush_loop())

    async def stop(self):
        """Stop the timer and make a last delivery attempt"""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._flush_quietly()

    async def _flush_loop(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            if self._read():
                await self._flush_quietly()

    def on_visibility_change(self, hidden: bool) -> Optional[asyncio.Task]:
        if hidden and self._read():
            return self.schedule_flush()
        return None
