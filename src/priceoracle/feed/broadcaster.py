"""Best-effort fan-out of price snapshots to live subscribers."""

from __future__ import annotations

import asyncio
import json
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import structlog

logger = structlog.get_logger()


class SubscriberClosedError(RuntimeError):
    """Raised when sending to a channel that can no longer receive."""


class Subscriber(Protocol):
    @property
    def is_open(self) -> bool: ...

    def send(self, message: str) -> None:
        """Queue a message without blocking; raise if the channel cannot take it."""
        ...

    def close(self) -> None: ...


class QueueSubscriber:
    """Subscriber channel backed by a bounded asyncio queue.

    A full queue means the consumer has stopped keeping up, which is treated
    the same as a failed send.
    """

    def __init__(self, maxsize: int = 16) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def send(self, message: str) -> None:
        if not self._open:
            raise SubscriberClosedError("Subscriber is closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull as e:
            raise SubscriberClosedError("Subscriber queue is full") from e

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def receive(self) -> str | None:
        """Next message, or None once the channel is closed and drained."""
        if not self._open and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self) -> QueueSubscriber:
        return self

    async def __anext__(self) -> str:
        message = await self.receive()
        if message is None:
            raise StopAsyncIteration
        return message


@dataclass(frozen=True)
class PublishResult:
    delivered: int = 0
    dropped: int = 0


def encode_price_update(updates: list[dict]) -> str:
    return json.dumps({"type": "price_update", "data": updates})


class Broadcaster:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: set[Subscriber] = set()
        self._latest: str | None = None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, channel: Subscriber) -> Callable[[], None]:
        """Register a channel and immediately send it the latest snapshot."""
        with self._lock:
            self._subscribers.add(channel)
            latest = self._latest
            total = len(self._subscribers)
        logger.info("Price feed subscriber added", subscribers=total)

        if latest is not None and not self._deliver(channel, latest):
            self._drop(channel)

        def unsubscribe() -> None:
            self._remove(channel)

        return unsubscribe

    def publish(self, updates: list[dict]) -> PublishResult:
        if not updates:
            logger.debug("No price updates to broadcast")
            return PublishResult()

        message = encode_price_update(updates)
        with self._lock:
            self._latest = message
            subscribers = list(self._subscribers)

        delivered = 0
        dropped = 0
        for channel in subscribers:
            if self._deliver(channel, message):
                delivered += 1
            else:
                self._drop(channel)
                dropped += 1

        logger.debug("Broadcast price updates", updates=len(updates), delivered=delivered, dropped=dropped)
        return PublishResult(delivered=delivered, dropped=dropped)

    def _deliver(self, channel: Subscriber, message: str) -> bool:
        try:
            if not channel.is_open:
                return False
            channel.send(message)
            return True
        except Exception as e:
            logger.warning("Price feed send failed", error=str(e))
            return False

    def _remove(self, channel: Subscriber) -> None:
        with self._lock:
            if channel not in self._subscribers:
                return
            self._subscribers.discard(channel)
            total = len(self._subscribers)
        logger.info("Price feed subscriber removed", subscribers=total)

    def _drop(self, channel: Subscriber) -> None:
        """Remove a channel that failed delivery and tell its consumer it is gone."""
        self._remove(channel)
        try:
            channel.close()
        except Exception as e:
            logger.warning("Price feed close failed", error=str(e))
