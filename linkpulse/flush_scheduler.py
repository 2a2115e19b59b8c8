import asyncio
import logging
from typing import Dict

from linkpulse.errors import DuplicateRecordError, FlushError, FlushSkipped
from linkpulse.records import ClickRecord, ViewRecord
from linkpulse.server_queue import CLICKS, STREAMS, VIEWS

log = logging.getLogger(__name__)

FLUSH_LOCK = "analytics:flush:lock"


class FlushScheduler:
    """Drains the server queue into MongoDB on a timer, on demand and at shutdown.

    Each cycle peeks up to ``batch_size`` entries per stream, drops the ones
    that do not parse, batch-inserts the rest and then trims exactly the
    peeked count. Duplicate-key conflicts count as applied; any other
    insert failure leaves the entries queued for the next cycle.
    """

    def __init__(self, queue, storage, store, flush_interval=30, batch_size=1000, lock_ttl=60):
        self.queue = queue
        self.storage = storage
        self.store = store
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.lock_ttl = lock_ttl
        self._lock = asyncio.Lock()
        self._task = None
        self._parsers = {VIEWS: ViewRecord.from_json, CLICKS: ClickRecord.from_json}
        self._inserters = {
            VIEWS: self.storage.insert_page_views_batch,
            CLICKS: self.storage.insert_link_clicks_batch,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the background flush loop (no-op if already running)"""
        if self.running:
            return
        self._task = asyncio.create_task(self._flush_loop())
        log.info(f"🚀 FlushScheduler started (interval: {self.flush_interval}s, batch: {self.batch_size})")

    async def stop(self):
        """Final drain, then cancel the timer"""
        if self._task is None:
            return
        try:
            await self.flush_once()
        except FlushSkipped as e:
            log.warning(f"⚠️ Final analytics flush skipped: {e}")
        except Exception as e:
            log.error(f"❌ Final analytics flush failed: {e}")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("🛑 FlushScheduler stopped")

    async def _flush_loop(self):
        while True:
            try:
                await asyncio.sleep(self.flush_interval)
                await self.flush_once()
            except asyncio.CancelledError:
                break
            except FlushSkipped as e:
                log.debug(f"Analytics flush skipped: {e}")
            except Exception as e:
                log.error(f"⚠️ Analytics flush cycle error: {e}")

    async def flush_once(self) -> Dict[str, int]:
        """Run one drain cycle over both streams.

        Returns the number of queue entries trimmed per stream. Raises
        FlushSkipped when the drain lease is held elsewhere, and FlushError
        if any stream failed with something other than a duplicate-key
        conflict.
        """
        async with self._lock:
            lease = await self.store.acquire_lock(FLUSH_LOCK, self.lock_ttl)
            if lease is None:
                # another instance holds the drain lease, or the store is down
                raise FlushSkipped("Drain lease not acquired: another flush is running or Redis is unavailable")

            trimmed, failures = {}, {}
            try:
                for stream in STREAMS:
                    try:
                        trimmed[stream] = await self._flush_stream(stream)
                    except Exception as e:
                        log.error(f"❌ Analytics flush error [{stream}]: {e}")
                        trimmed[stream] = 0
                        failures[stream] = e
            finally:
                await self.store.release_lock(lease)

        if failures:
            raise FlushError(failures)
        return trimmed

    async def _flush_stream(self, stream: str) -> int:
        raw = await self.queue.drain(stream, self.batch_size)
        if not raw:
            return 0

        parse = self._parsers[stream]
        records = [r for r in (parse(item) for item in raw) if r is not None]
        if len(records) < len(raw):
            log.warning(f"⚠️ Discarded {len(raw) - len(records)} malformed {stream} entries")

        if records:
            try:
                inserted = await self._inserters[stream](records)
                log.debug(f"✅ Flushed {inserted} {stream} to MongoDB")
            except DuplicateRecordError as e:
                log.debug(f"Duplicate {stream} treated as applied: {e}")

        if not await self.queue.trim(stream, len(raw)):
            log.warning(f"⚠️ Could not trim {len(raw)} {stream} entries, they will be read again")
            return 0
        return len(raw)
