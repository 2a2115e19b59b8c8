# utils/queue_monitor.py
import asyncio
import logging

from linkpulse.server_queue import CLICKS, VIEWS

log = logging.getLogger(__name__)

# A backlog this deep means the scheduler is not keeping up
BACKLOG_WARN = 5000


async def check_pipeline(pipeline):
    """
    Collect analytics pipeline health metrics.
    pipeline: Instance of AnalyticsPipeline
    """
    results = {}
    try:
        redis_ms, mongo_ms, views, clicks = await asyncio.gather(
            pipeline.store.ping(),
            pipeline.storage.ping(),
            pipeline.queue.depth(VIEWS),
            pipeline.queue.depth(CLICKS),
        )
        results['redis_ping_ms'] = redis_ms
        results['mongo_ping_ms'] = mongo_ms
        results['queue'] = {VIEWS: views, CLICKS: clicks}
        results['scheduler_running'] = pipeline.scheduler.running

        if mongo_ms is None:
            results['status'] = "Critical"
        elif redis_ms is None or not results['scheduler_running'] or views + clicks > BACKLOG_WARN:
            results['status'] = "Degraded"
        else:
            results['status'] = "Healthy"
        return results

    except Exception as e:
        log.error(f"❌ Pipeline Monitoring Error: {e}")
        return {"status": "Critical", "error": str(e)}


async def get_status_report(pipeline):
    """Generate a one-line human-readable status summary"""
    metrics = await check_pipeline(pipeline)
    queue = metrics.get('queue', {})
    icon = '✅' if metrics.get('status') == 'Healthy' else '⚠️'
    return (
        f"{icon} Analytics {metrics.get('status')} | "
        f"redis {metrics.get('redis_ping_ms', 'N/A')}ms | "
        f"mongo {metrics.get('mongo_ping_ms', 'N/A')}ms | "
        f"queued views={queue.get(VIEWS, 'N/A')} clicks={queue.get(CLICKS, 'N/A')}"
    )
