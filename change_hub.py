"""Fan-out of document change notifications to websocket clients."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


logger = logging.getLogger("docvault.hub")

SUBSCRIBER_QUEUE_SIZE = 128


class ChangeEvent(BaseModel):
    type: str
    action: str
    path: str
    id: Optional[int] = None
    from_path: Optional[str] = Field(default=None, alias="from")
    to_path: Optional[str] = Field(default=None, alias="to")

    model_config = ConfigDict(populate_by_name=True)

    def to_message(self) -> Dict[str, object]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Subscription:
    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)

    def offer(self, message: Dict[str, object]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("websocket queue full, dropping event action=%s", message.get("action"))

    async def next_message(self) -> Dict[str, object]:
        return await self.queue.get()


class ChangeHub:
    """Registry of websocket subscribers.

    ``broadcast`` is called from sync endpoints running in the threadpool,
    so delivery goes through each subscriber's own event loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: set[Subscription] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(asyncio.get_running_loop())
        with self._lock:
            self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    def broadcast(self, event: ChangeEvent) -> None:
        message = event.to_message()

        with self._lock:
            subscribers = list(self._subscribers)

        for subscription in subscribers:
            try:
                subscription.loop.call_soon_threadsafe(subscription.offer, message)
            except RuntimeError:
                # loop already closed
                self.unsubscribe(subscription)
