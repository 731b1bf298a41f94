"""Topic-based fan-out of session events to async consumers."""

from __future__ import annotations

import asyncio
import logging
from typing import Final, Protocol

logger = logging.getLogger(__name__)

TOPIC_CHUNK_READY: Final = "session.chunk_ready"
TOPIC_PROGRESS: Final = "session.progress"
TOPIC_FINISHED: Final = "session.finished"
TOPIC_FAILED: Final = "session.failed"

SESSION_TOPICS: Final = (TOPIC_CHUNK_READY, TOPIC_PROGRESS, TOPIC_FINISHED, TOPIC_FAILED)


class ConsumerCallback(Protocol):
    """Protocol describing consumer callbacks invoked for topic events."""

    async def __call__(self, event: object) -> None:  # pragma: no cover - protocol signature
        """Consume a single session event."""

        ...


class EventBus:
    """Delivers each published event to every consumer subscribed to its topic.

    Consumers of one event run concurrently. A consumer that raises is logged and
    neither blocks delivery to the others nor propagates to the publisher.
    """

    def __init__(self) -> None:
        """Create a bus without consumers."""

        self._consumers: dict[str, tuple[ConsumerCallback, ...]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str, callback: ConsumerCallback) -> None:
        """Register *callback* for *topic*; registering twice has no effect."""

        async with self._lock:
            current = self._consumers.get(topic, ())
            if callback not in current:
                self._consumers[topic] = (*current, callback)

    async def unsubscribe(self, topic: str, callback: ConsumerCallback) -> bool:
        """Remove *callback* from *topic*, returning whether it was registered."""

        async with self._lock:
            current = self._consumers.get(topic, ())
            if callback not in current:
                return False
            remaining = tuple(consumer for consumer in current if consumer is not callback)
            if remaining:
                self._consumers[topic] = remaining
            else:
                del self._consumers[topic]
            return True

    async def publish(self, topic: str, event: object) -> int:
        """Deliver *event* to the consumers of *topic* and return how many raised."""

        async with self._lock:
            consumers = self._consumers.get(topic, ())
        if not consumers:
            return 0
        outcomes = await asyncio.gather(
            *(consumer(event) for consumer in consumers), return_exceptions=True
        )
        failures = 0
        for consumer, outcome in zip(consumers, outcomes, strict=True):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                failures += 1
                logger.error(
                    "Consumer %r failed handling %s event: %s",
                    consumer,
                    topic,
                    outcome,
                    exc_info=outcome,
                )
        return failures

    async def topics(self) -> dict[str, int]:
        """Return a snapshot of topics and their consumer counts."""

        async with self._lock:
            return {topic: len(consumers) for topic, consumers in self._consumers.items()}
