"""Tests for session event fan-out."""

from __future__ import annotations

import pytest

from streamscribe.eventbus import TOPIC_FINISHED, TOPIC_PROGRESS, EventBus


@pytest.mark.asyncio
async def test_publish_reaches_topic_subscribers_only() -> None:
    bus = EventBus()
    progress: list[object] = []
    finished: list[object] = []

    async def on_progress(event: object) -> None:
        progress.append(event)

    async def on_finished(event: object) -> None:
        finished.append(event)

    await bus.subscribe(TOPIC_PROGRESS, on_progress)
    await bus.subscribe(TOPIC_PROGRESS, on_progress)
    await bus.subscribe(TOPIC_FINISHED, on_finished)

    assert await bus.publish(TOPIC_PROGRESS, "partial") == 0
    assert progress == ["partial"]
    assert finished == []
    assert await bus.topics() == {TOPIC_PROGRESS: 1, TOPIC_FINISHED: 1}


@pytest.mark.asyncio
async def test_failing_consumer_does_not_block_others() -> None:
    bus = EventBus()
    received: list[object] = []

    async def broken(_: object) -> None:
        raise RuntimeError("display closed")

    async def healthy(event: object) -> None:
        received.append(event)

    await bus.subscribe(TOPIC_FINISHED, broken)
    await bus.subscribe(TOPIC_FINISHED, healthy)

    assert await bus.publish(TOPIC_FINISHED, "done") == 1
    assert received == ["done"]


@pytest.mark.asyncio
async def test_unsubscribe() -> None:
    bus = EventBus()

    async def consumer(_: object) -> None:
        return None

    await bus.subscribe(TOPIC_PROGRESS, consumer)
    assert await bus.unsubscribe(TOPIC_PROGRESS, consumer) is True
    assert await bus.unsubscribe(TOPIC_PROGRESS, consumer) is False
    assert await bus.topics() == {}
    assert await bus.publish(TOPIC_PROGRESS, "ignored") == 0
