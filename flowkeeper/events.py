"""In-process event sink for domain events."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Type

from .domain.events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """Fan domain events out to subscribed async handlers.

    Handlers subscribed to a base class receive every subclass as well, so
    subscribing to :class:`DomainEvent` observes everything. Handler errors
    propagate to whoever dispatched the event.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    async def dispatch(self, event: DomainEvent) -> None:
        logger.debug(f"{event.name} for workflow_id={event.workflow_id}")
        for event_type in type(event).__mro__:
            for handler in list(self._handlers.get(event_type, ())):
                await handler(event)
            if event_type is DomainEvent:
                break
