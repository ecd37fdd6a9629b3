"""Transport interface between the engine and job workers."""

from __future__ import annotations

import abc
from datetime import datetime, timedelta
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import JobMessage
from ..utils.time import utcnow

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Delivers JobMessages from the engine to the workers of a queue.

    The engine only ever calls ``publish``. Workers consume a topic with
    ``subscribe`` and ``ack`` each message once its outcome has been
    reported back. Messages carrying ``delay_seconds`` are withheld from
    subscribers until they become due.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, message: JobMessage) -> None:
        """Queue ``message`` on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, JobMessage]]:
        """Yield due messages of ``topic`` with their raw transport handle.

        Args:
            topic: Queue name the jobs were published to
            lifespan: Seconds to keep consuming. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivered message as handled."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a delivered message. Transports without redelivery just ack."""
        await self.ack(raw_message)

    @staticmethod
    def available_at(message: JobMessage) -> datetime:
        return message.timestamp + timedelta(seconds=message.delay_seconds)

    @classmethod
    def is_due(cls, message: JobMessage, now: Optional[datetime] = None) -> bool:
        return cls.available_at(message) <= (now or utcnow())
