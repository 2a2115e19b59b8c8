"""
Analytics ingestion pipeline for linkpulse pages
"""

from .config import Settings
from .storage_mongodb import MongoStorage
from .redis_store import RedisStore
from .server_queue import ServerQueue
from .flush_scheduler import FlushScheduler
from .ingress import IngressService
from .cache import CacheInvalidator, InvalidationScope
from .pipeline import AnalyticsPipeline

__all__ = [
    'Settings',
    'MongoStorage',
    'RedisStore',
    'ServerQueue',
    'FlushScheduler',
    'IngressService',
    'CacheInvalidator',
    'InvalidationScope',
    'AnalyticsPipeline',
]
