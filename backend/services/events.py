import asyncio
import logging
from pydantic import BaseModel
from typing import Literal, Optional, Set, Union

logger = logging.getLogger(__name__)


class More(BaseModel):
    kind: Literal["More"] = "More"
    message_id: int
    conversation_id: int
    text: str


class Done(BaseModel):
    kind: Literal["Done"] = "Done"
    message_id: int
    conversation_id: int


GenerationEvent = Union[More, Done]

# Marks the end of every subscription when the hub shuts down
_CLOSED = object()


class Subscription:
    """
    One receiver of the hub. Sees only events published after it was created.

    With a bounded backlog a slow reader loses the oldest unread events instead
    of holding up the publisher; `missed` counts how many were dropped.
    """

    def __init__(self, hub: "BroadcastHub", maxsize: int):
        self._hub = hub
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.missed = 0

    def _offer(self, item):
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.missed += 1
                logger.debug("Subscriber lagging, dropped oldest event (%d missed so far)", self.missed)

    async def get(self, timeout: Optional[float] = None) -> Optional[GenerationEvent]:
        """Next event, or None once the hub is closed. Raises asyncio.TimeoutError on timeout."""
        if self._closed and self._queue.empty():
            return None
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            self._closed = True
            return None
        return item

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self):
        self._hub._unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> GenerationEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class BroadcastHub:
    """Process-wide fan-out of generation events to any number of independent subscribers."""

    def __init__(self, backlog: int = 10):
        self.backlog = backlog
        self._subscribers: Set[Subscription] = set()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        """
        Fresh receive handle. `maxsize` overrides the hub backlog; 0 means unbounded,
        which is what the persistence writer uses so no text is ever dropped.
        """
        subscription = Subscription(self, self.backlog if maxsize is None else maxsize)
        if self._closed:
            subscription._offer(_CLOSED)
        else:
            self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription):
        self._subscribers.discard(subscription)

    def publish(self, event: GenerationEvent):
        if self._closed:
            return
        for subscription in list(self._subscribers):
            subscription._offer(event)

    def close(self):
        self._closed = True
        for subscription in list(self._subscribers):
            subscription._offer(_CLOSED)
        self._subscribers.clear()
