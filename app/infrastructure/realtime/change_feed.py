import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Set

from ...application.ports.appointments_repo import AppointmentDto

logger = logging.getLogger(__name__)


class ChangeFeed:
    """In-process fan-out of appointment snapshots to live subscribers.

    Every committed write is published once to every listener queue. A slow
    listener whose queue is full loses its oldest buffered snapshot, never the
    newest one. Must be used from the event loop thread.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._listeners: Set["asyncio.Queue[AppointmentDto]"] = set()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, snapshot: AppointmentDto) -> None:
        for queue in list(self._listeners):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.warning(f"Subscriber lagging; dropped oldest snapshot before appointment {snapshot.id}")
            queue.put_nowait(snapshot)

    @asynccontextmanager
    async def listen(self) -> AsyncIterator["asyncio.Queue[AppointmentDto]"]:
        queue: "asyncio.Queue[AppointmentDto]" = asyncio.Queue(maxsize=self._queue_size)
        self._listeners.add(queue)
        try:
            yield queue
        finally:
            self._listeners.discard(queue)
