"""Broadcaster — pushes full state snapshots to every live subscriber."""
import asyncio
import logging
from typing import Optional

from ..config import SUBSCRIBER_QUEUE_SIZE
from ..errors import SubscriberWriteFailure

logger = logging.getLogger(__name__)


class Subscriber:
    def __init__(self, client_id: str, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.client_id = client_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def push(self, snapshot: dict):
        if self.closed:
            raise SubscriberWriteFailure(f"{self.client_id} is closed")
        try:
            self.queue.put_nowait(snapshot)
        except asyncio.QueueFull as e:
            raise SubscriberWriteFailure(f"{self.client_id} is not keeping up") from e

    def close(self):
        """Mark closed and wake the reader so its stream can end."""
        self.closed = True
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            try:
                self.queue.get_nowait()
                self.queue.put_nowait(None)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                pass

    async def next(self) -> Optional[dict]:
        """Next snapshot, or None once the subscriber has been dropped."""
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()


class Broadcaster:
    def __init__(self):
        self._subscribers: dict[str, Subscriber] = {}

    def subscribe(self, client_id: str, snapshot: Optional[dict] = None) -> Subscriber:
        """Register a client. The current snapshot is queued straight away."""
        sub = Subscriber(client_id)
        self._subscribers[client_id] = sub
        if snapshot is not None:
            sub.push(snapshot)
        logger.debug("Subscriber added: %s (%d live)", client_id, len(self._subscribers))
        return sub

    def unsubscribe(self, client_id: str):
        sub = self._subscribers.pop(client_id, None)
        if sub is not None:
            sub.close()

    @property
    def client_count(self) -> int:
        return len(self._subscribers)

    async def broadcast(self, snapshot: dict):
        """Push a snapshot to all connected clients. A failed write drops only that client."""
        for cid, sub in list(self._subscribers.items()):
            try:
                sub.push(snapshot)
            except SubscriberWriteFailure as e:
                logger.info("Dropping subscriber: %s", e)
                self.unsubscribe(cid)

    def close_all(self):
        for cid in list(self._subscribers):
            self.unsubscribe(cid)
