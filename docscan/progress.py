"""
Progress reporting as a publish/subscribe channel.

The pipeline publishes (phase, progress) events; any number of consumers
subscribe and iterate them asynchronously:

    channel = ProgressChannel()
    subscription = channel.subscribe()

    async def show():
        async for event in subscription:
            print(event.phase, event.progress)

A subscription ends when the channel is closed or when the consumer cancels it.
"""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

PHASE_OCR = "ocr"
PHASE_OCR_COMPLETE = "ocr-complete"
PHASE_ENHANCING = "enhancing"
PHASE_DONE = "done"


@dataclass(frozen=True)
class ProgressEvent:
    phase: str
    progress: float

    @property
    def percent(self) -> int:
        return int(round(self.progress * 100))


class ProgressSubscription:
    """Async iterator over events published after subscription."""

    def __init__(self, channel: "ProgressChannel"):
        self._channel = channel
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._done = False

    def _push(self, event: ProgressEvent | None) -> None:
        if not self._done:
            self._queue.put_nowait(event)

    def cancel(self) -> None:
        """Stop receiving events; a pending iteration ends."""
        self._channel._unsubscribe(self)
        self._push(None)
        self._done = True

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self._queue.get()
        if event is None:
            self._done = True
            raise StopAsyncIteration
        return event

    def drain(self) -> list[ProgressEvent]:
        """Return every queued event without waiting."""
        events: list[ProgressEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is None:
                self._done = True
                break
            events.append(event)
        return events


class ProgressChannel:
    """Fan-out of progress events to every current subscriber."""

    def __init__(self) -> None:
        self._subscribers: list[ProgressSubscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> ProgressSubscription:
        subscription = ProgressSubscription(self)
        if self._closed:
            subscription._push(None)
        else:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: ProgressSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, phase: str, progress: float) -> None:
        """Send an event to every subscriber. Ignored once closed."""
        if self._closed:
            return
        event = ProgressEvent(phase=phase, progress=min(1.0, max(0.0, progress)))
        for subscription in list(self._subscribers):
            subscription._push(event)

    def close(self) -> None:
        """End every subscription. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscribers:
            subscription._push(None)
        self._subscribers.clear()
