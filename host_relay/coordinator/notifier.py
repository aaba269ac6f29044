"""Client notification: direct reply channel with broadcast fallback."""

import asyncio
import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Set

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ClientNotifier:
    """
    Two delivery strategies behind one notify() call.

    - direct: a queue owned by the one caller that asked for this output
    - broadcast: every client currently subscribed to the event stream

    Delivery never raises; failures are logged and reported as False.
    """

    def __init__(self, max_queue_size: int = 256):
        self.max_queue_size = max_queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @contextmanager
    def subscribe(self) -> Iterator[asyncio.Queue]:
        """Register a listening client for the lifetime of the with-block."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.add(queue)
        logger.debug(f"Client subscribed ({len(self._subscribers)} listening)")
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)
            logger.debug(f"Client unsubscribed ({len(self._subscribers)} listening)")

    @staticmethod
    def _offer(queue: asyncio.Queue, message: BaseModel) -> bool:
        try:
            queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    def broadcast(self, message: BaseModel) -> int:
        """Best-effort delivery to every subscriber. Returns how many received it."""
        delivered = 0
        for queue in list(self._subscribers):
            if self._offer(queue, message):
                delivered += 1
            else:
                logger.warning(f"Subscriber queue full, dropped {message.type} event")
        return delivered

    def notify(self, message: BaseModel, reply: Optional[asyncio.Queue] = None) -> bool:
        """
        Deliver message to the direct reply channel if there is one that
        accepts it, otherwise broadcast it.

        Returns:
            True if at least one client received the message
        """
        if reply is not None:
            if self._offer(reply, message):
                return True
            logger.warning(f"Direct delivery of {message.type} failed, broadcasting")
        return self.broadcast(message) > 0
