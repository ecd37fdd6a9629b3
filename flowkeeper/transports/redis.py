"""Redis transport for cross-process job delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..contracts import JobMessage
from ..utils.time import utcnow
from .base import BaseTransport

if TYPE_CHECKING:
    from ..config import RedisConfig

logger = logging.getLogger(__name__)

# (queue name, serialized message)
Delivery = Tuple[str, str]


class RedisTransport(BaseTransport[Delivery]):
    """Each topic is a Redis list. Delayed jobs wait in a sorted set
    scored by their due time and are moved onto the list once due."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "flowkeeper",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    @classmethod
    def from_config(cls, config: "RedisConfig") -> "RedisTransport":
        return cls(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            prefix=config.prefix,
        )

    def queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def delayed_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:delayed"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: JobMessage) -> None:
        if not self._redis:
            await self.connect()
        payload = message.to_json()
        if message.delay_seconds > 0:
            due = self.available_at(message).timestamp()
            await self._redis.zadd(self.delayed_name(topic), {payload: due})
        else:
            await self._redis.lpush(self.queue_name(topic), payload)

    async def promote_due(self, topic: str) -> int:
        """Move delayed messages whose time has come onto the topic list."""
        delayed = self.delayed_name(topic)
        due = await self._redis.zrangebyscore(delayed, "-inf", utcnow().timestamp())
        moved = 0
        for payload in due:
            # zrem guards against another consumer promoting the same entry
            if await self._redis.zrem(delayed, payload):
                await self._redis.lpush(self.queue_name(topic), payload)
                moved += 1
        return moved

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Delivery, JobMessage]]:
        if not self._redis:
            await self.connect()

        queue_name = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            await self.promote_due(topic)
            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue
            _, payload = result
            try:
                message = JobMessage.from_json(payload)
            except ValidationError as e:
                logger.warning(f"Dropping malformed message on {queue_name}: {e}")
                continue
            yield (queue_name, payload), message

    async def ack(self, raw_message: Delivery) -> None:
        """Nothing to do, brpop already removed the message."""
        pass

    async def nack(self, raw_message: Delivery, requeue: bool = True) -> None:
        """Push the message back on the consuming end of its list."""
        if requeue:
            queue_name, payload = raw_message
            await self._redis.rpush(queue_name, payload)
