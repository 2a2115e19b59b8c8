import asyncio
from unittest.mock import AsyncMock

import pytest
from pymongo.errors import OperationFailure

from linkpulse.errors import FlushError, FlushSkipped
from linkpulse.flush_scheduler import FLUSH_LOCK, FlushScheduler
from linkpulse.records import ClickRecord, ViewRecord
from linkpulse.server_queue import CLICKS, VIEWS, ServerQueue

from conftest import LINK_ID, LT_ID


@pytest.fixture
def queue(store):
    return ServerQueue(store)


@pytest.fixture
def scheduler(queue, storage, store):
    return FlushScheduler(queue, storage, store, flush_interval=3600, batch_size=1000)


async def _fill_views(queue, n):
    for i in range(n):
        await queue.append(ViewRecord.create(LT_ID, f"10.{i // 250}.{i % 250}.1"))


class TestFlushOnce:

    @pytest.mark.asyncio
    async def test_drains_in_batches(self, scheduler, queue, fake_db):
        await _fill_views(queue, 1500)

        assert await scheduler.flush_once() == {VIEWS: 1000, CLICKS: 0}
        assert await queue.depth(VIEWS) == 500
        assert len(fake_db["page_views"].docs) == 1000

        assert await scheduler.flush_once() == {VIEWS: 500, CLICKS: 0}
        assert await queue.depth(VIEWS) == 0
        assert len(fake_db["page_views"].docs) == 1500

    @pytest.mark.asyncio
    async def test_empty_queue(self, scheduler):
        assert await scheduler.flush_once() == {VIEWS: 0, CLICKS: 0}

    @pytest.mark.asyncio
    async def test_duplicate_counts_as_applied(self, scheduler, queue, fake_db):
        rec = ViewRecord.create(LT_ID, "1.1.1.1", "s")
        await queue.append(rec)
        await scheduler.flush_once()

        # re-queue the same record, as if the earlier trim had been lost
        await queue.append(rec)
        assert await scheduler.flush_once() == {VIEWS: 1, CLICKS: 0}
        assert await queue.depth(VIEWS) == 0
        assert len(fake_db["page_views"].docs) == 1

    @pytest.mark.asyncio
    async def test_failure_keeps_records_queued(self, scheduler, queue, fake_db):
        await _fill_views(queue, 3)
        await queue.append(ClickRecord.create(LINK_ID, LT_ID, "1.1.1.1"))
        fake_db["page_views"].fail_with = OperationFailure("primary stepped down")

        with pytest.raises(FlushError) as exc:
            await scheduler.flush_once()
        assert list(exc.value.failures) == [VIEWS]
        assert await queue.depth(VIEWS) == 3
        # the other stream still went through
        assert await queue.depth(CLICKS) == 0
        assert len(fake_db["link_clicks"].docs) == 1

        fake_db["page_views"].fail_with = None
        assert await scheduler.flush_once() == {VIEWS: 3, CLICKS: 0}
        assert len(fake_db["page_views"].docs) == 3

    @pytest.mark.asyncio
    async def test_malformed_entries_are_discarded(self, scheduler, store, queue, fake_db):
        await store.append(ServerQueue.list_key(VIEWS), "{not json")
        await queue.append(ViewRecord.create(LT_ID, "1.1.1.1"))
        await store.append(ServerQueue.list_key(VIEWS), '{"linktree_id": ""}')

        assert await scheduler.flush_once() == {VIEWS: 3, CLICKS: 0}
        assert len(fake_db["page_views"].docs) == 1
        assert await queue.depth(VIEWS) == 0

    @pytest.mark.asyncio
    async def test_skips_when_lease_is_held(self, scheduler, store, queue):
        await _fill_views(queue, 2)
        other = await store.acquire_lock(FLUSH_LOCK, 60)

        with pytest.raises(FlushSkipped):
            await scheduler.flush_once()
        assert await queue.depth(VIEWS) == 2

        await store.release_lock(other)
        assert (await scheduler.flush_once())[VIEWS] == 2

    @pytest.mark.asyncio
    async def test_lease_released_after_failure(self, scheduler, queue, fake_redis, fake_db):
        await _fill_views(queue, 1)
        fake_db["page_views"].fail_with = OperationFailure("boom")
        with pytest.raises(FlushError):
            await scheduler.flush_once()
        assert fake_redis.locks == set()

    @pytest.mark.asyncio
    async def test_store_outage_skips(self, scheduler, fake_redis):
        fake_redis.broken = True
        with pytest.raises(FlushSkipped):
            await scheduler.flush_once()

    @pytest.mark.asyncio
    async def test_failed_trim_reports_nothing_trimmed(self, scheduler, queue, fake_db):
        await _fill_views(queue, 2)
        queue.trim = AsyncMock(return_value=False)

        assert await scheduler.flush_once() == {VIEWS: 0, CLICKS: 0}
        assert await queue.depth(VIEWS) == 2
        assert len(fake_db["page_views"].docs) == 2

    @pytest.mark.asyncio
    async def test_partial_click_failure_keeps_counts_on_retry(self, scheduler, queue, fake_db):
        await queue.append(ClickRecord.create(LINK_ID, LT_ID, "1.1.1.1"))
        await queue.append(ClickRecord.create(LINK_ID, LT_ID, "2.2.2.2"))
        fake_db["link_clicks"].reject = {1: 121}

        with pytest.raises(FlushError):
            await scheduler.flush_once()
        assert await queue.depth(CLICKS) == 2

        fake_db["link_clicks"].reject = {}
        assert await scheduler.flush_once() == {VIEWS: 0, CLICKS: 2}
        assert len(fake_db["link_clicks"].docs) == 2
        assert fake_db["links"].docs[0]["click_count"] == 2


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler):
        scheduler.start()
        task = scheduler._task
        scheduler.start()
        assert scheduler._task is task
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining(self, scheduler, queue, fake_db):
        scheduler.start()
        await _fill_views(queue, 4)
        await scheduler.stop()
        assert len(fake_db["page_views"].docs) == 4
        assert await queue.depth(VIEWS) == 0

    @pytest.mark.asyncio
    async def test_stop_survives_failed_final_flush(self, scheduler, queue, fake_db):
        scheduler.start()
        await _fill_views(queue, 1)
        fake_db["page_views"].fail_with = OperationFailure("down")
        await scheduler.stop()
        assert not scheduler.running
        assert await queue.depth(VIEWS) == 1

    @pytest.mark.asyncio
    async def test_loop_keeps_running_after_errors(self, queue, storage, store):
        scheduler = FlushScheduler(queue, storage, store, flush_interval=0.01)
        scheduler.flush_once = AsyncMock(side_effect=[FlushError({VIEWS: Exception("x")}), {VIEWS: 0, CLICKS: 0}])
        scheduler._task = asyncio.create_task(scheduler._flush_loop())
        for _ in range(50):
            if scheduler.flush_once.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        assert scheduler.flush_once.await_count >= 2
        assert scheduler.running
        scheduler._task.cancel()
        await scheduler._task
