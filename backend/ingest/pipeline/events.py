"""Worker event channel - fan-out of pool events to subscribers."""

import asyncio
import logging

from backend.ingest.models import WorkerEventData

logger = logging.getLogger(__name__)


class EventChannel:
    """Broadcasts worker events to every subscribed queue.

    Publishing never blocks: a subscriber whose queue is full misses the
    event.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self._maxsize = maxsize
        self._subscribers: list[asyncio.Queue[WorkerEventData]] = []

    def subscribe(self) -> asyncio.Queue[WorkerEventData]:
        queue: asyncio.Queue[WorkerEventData] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[WorkerEventData]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: WorkerEventData) -> None:
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Dropping %s event for slow subscriber", event.event.value)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
