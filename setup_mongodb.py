import asyncio
import logging

from dotenv import load_dotenv

from linkpulse.config import Settings
from linkpulse.logger import setup_logging
from linkpulse.redis_store import RedisStore
from linkpulse.storage_mongodb import MongoStorage

# Load environment variables
load_dotenv()


async def create_all_indexes():
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    if not settings.mongo_url:
        print("[ERROR] MONGO_URL not found in environment")
        return

    print("[INFO] Connecting to MongoDB for Index Creation...")
    storage = MongoStorage(settings, RedisStore(None, settings.redis_key_prefix))
    try:
        await storage.ensure_indexes()
        print("[SUCCESS] Analytics indexes created")
    except Exception as e:
        print(f"[ERROR] Index creation error: {e}")
    finally:
        storage.close()


if __name__ == "__main__":
    asyncio.run(create_all_indexes())
