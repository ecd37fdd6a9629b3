"""In-memory transport for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import JobMessage
from .base import BaseTransport

Delivery = Tuple[str, JobMessage]


class InMemoryTransport(BaseTransport[Delivery]):
    """Per-topic FIFO queues held in process memory."""

    def __init__(self, poll_interval: float = 0.1) -> None:
        self._queues: Dict[str, Deque[JobMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    async def publish(self, topic: str, message: JobMessage) -> None:
        async with self._lock:
            self._queues[topic].append(message)

    def pending(self, topic: str) -> List[JobMessage]:
        """Messages published to ``topic`` and not consumed yet, due or not."""
        return list(self._queues[topic])

    async def drain(self, topic: str) -> List[JobMessage]:
        """Remove and return every queued message of ``topic``, ignoring delays."""
        async with self._lock:
            messages = list(self._queues[topic])
            self._queues[topic].clear()
        return messages

    async def _pop_due(self, topic: str) -> Optional[JobMessage]:
        async with self._lock:
            queue = self._queues[topic]
            for index, message in enumerate(queue):
                if self.is_due(message):
                    del queue[index]
                    return message
        return None

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Delivery, JobMessage]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            message = await self._pop_due(topic)
            if message is None:
                await asyncio.sleep(self.poll_interval)
                continue
            yield (topic, message), message

    async def ack(self, raw_message: Delivery) -> None:
        pass

    async def nack(self, raw_message: Delivery, requeue: bool = True) -> None:
        """Put the message back at the head of its topic."""
        if requeue:
            topic, message = raw_message
            async with self._lock:
                self._queues[topic].appendleft(message)
