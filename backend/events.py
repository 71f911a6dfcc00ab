"""In-process event channel for checkout outcomes."""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()

ORDER_PLACED = "order_placed"
PAYMENT_CONFIRMED = "payment_confirmed"
PAYMENT_FAILED = "payment_failed"


@dataclass
class Event:
    kind: str
    order_id: str
    data: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Event], Awaitable[None]]


class EventBus:
    """Publish/subscribe by event kind.

    Handlers run in subscription order. A failing handler is logged and the
    remaining handlers still run; ``publish`` returns the handler errors
    instead of raising them.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, kind: str, handler: Handler) -> None:
        self._handlers[kind].append(handler)

    async def publish(self, event: Event) -> list[Exception]:
        logger.info("event_published", kind=event.kind, order_id=event.order_id)
        errors = []
        for handler in list(self._handlers.get(event.kind, ())):
            try:
                await handler(event)
            except Exception as e:
                logger.error("event_handler_failed", kind=event.kind, order_id=event.order_id, error=str(e))
                errors.append(e)
        return errors
