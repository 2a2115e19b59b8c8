import logging
from typing import List

from linkpulse.records import ClickRecord, ViewRecord

log = logging.getLogger(__name__)

VIEWS = "views"
CLICKS = "clicks"
STREAMS = (VIEWS, CLICKS)


class ServerQueue:
    """Shared append-only buffer per event stream, kept in Redis lists.

    Reads are two-phase: ``drain`` peeks at the head without removing, and
    the caller calls ``trim`` once the peeked entries have been accepted
    downstream. Entries that were peeked but never trimmed (crash, DB
    outage) are simply read again on the next cycle.
    """

    def __init__(self, store):
        self.store = store

    @staticmethod
    def list_key(stream: str) -> str:
        if stream not in STREAMS:
            raise ValueError(f"Unknown analytics stream: {stream!r}")
        return f"analytics:queue:{stream}"

    @staticmethod
    def stream_for(record) -> str:
        if isinstance(record, ViewRecord):
            return VIEWS
        if isinstance(record, ClickRecord):
            return CLICKS
        raise TypeError(f"Not an analytics record: {type(record).__name__}")

    async def append(self, record) -> bool:
        """Push one record to the tail of its stream; False if the store dropped it"""
        stream = self.stream_for(record)
        return await self.store.append(self.list_key(stream), record.to_json()) > 0

    async def drain(self, stream: str, max_count: int) -> List[str]:
        """Peek at up to max_count raw entries from the head, FIFO order"""
        if max_count <= 0:
            return []
        return await self.store.peek(self.list_key(stream), 0, max_count - 1)

    async def trim(self, stream: str, count: int) -> bool:
        """Drop the first ``count`` entries (those previously drained)"""
        if count <= 0:
            return True
        return await self.store.trim(self.list_key(stream), count, -1)

    async def depth(self, stream: str) -> int:
        return await self.store.length(self.list_key(stream))
