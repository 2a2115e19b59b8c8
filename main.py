import asyncio
import logging
import signal
import sys

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

from linkpulse.config import Settings
from linkpulse.errors import ConfigError
from linkpulse.logger import setup_logging
from linkpulse.pipeline import AnalyticsPipeline
from linkpulse.web_server import LoopBridge, create_app, start_server
from utils.queue_monitor import get_status_report

log = logging.getLogger("linkpulse")


async def main():
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"[ERROR] Invalid configuration: {e}")
        sys.exit(1)
    setup_logging(settings.log_level)

    try:
        pipeline = AnalyticsPipeline.from_settings(settings)
    except Exception as e:
        log.error(f"❌ Database Connection Error: {e}")
        sys.exit(1)

    await pipeline.start()

    loop = asyncio.get_running_loop()
    app = create_app(pipeline, LoopBridge(loop))
    start_server(app, settings.port)
    log.info(await get_status_report(pipeline))

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
            pass

    log.info("Online.")
    await stop.wait()

    log.info("🛑 Shutdown signal received, draining analytics queue...")
    await pipeline.shutdown()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    run()
