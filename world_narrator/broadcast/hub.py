"""Per-world fan-out with resumable, gap-free delivery.

A subscription starts in replay mode and pages through the persisted log
after its cursor. Events published meanwhile are buffered and flushed once
the replay catches up, so the consumer sees every sequence after its cursor
exactly once and in order before any live event. Each subscriber owns a
bounded queue; a subscriber that falls behind is dropped rather than slowing
down ``publish``.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Iterable

from loguru import logger

from world_narrator.broadcast.envelope import Envelope
from world_narrator.domain.errors import NarrativeError
from world_narrator.domain.events import StoryEvent
from world_narrator.domain.ids import SubscriptionId

ReadEvents = Callable[..., Awaitable[list[StoryEvent]]]

_DROPPED = object()
_CLOSED = object()


class SubscriberDroppedError(NarrativeError):
    def __init__(self, subscription_id: SubscriptionId, cursor: int) -> None:
        super().__init__(f"Subscription {subscription_id} fell behind and was dropped at cursor {cursor}")
        self.subscription_id = subscription_id
        self.cursor = cursor


class SubscriptionClosedError(NarrativeError):
    pass


class Subscription:
    def __init__(
        self,
        world_id: str,
        cursor: int,
        *,
        read_events: ReadEvents,
        queue_size: int,
        replay_page_size: int,
    ):
        self.id = SubscriptionId.new()
        self.world_id = world_id
        self.cursor = cursor
        self._read_events = read_events
        self._queue_size = queue_size
        self._replay_page_size = replay_page_size
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._backlog: deque[Envelope] = deque()
        self._pending: list[Envelope] = []
        self._replay_cursor = cursor
        self._replaying = True
        self._dropped = False
        self._closed = False

    @property
    def is_live(self) -> bool:
        return not self._replaying and not self._dropped and not self._closed

    @property
    def dropped(self) -> bool:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, envelope: Envelope) -> bool:
        """Queues one envelope without waiting; False means the subscriber overflowed."""

        if self._dropped or self._closed:
            return True
        if self._replaying:
            if envelope.ephemeral:
                return True
            if len(self._pending) >= self._queue_size:
                return False
            self._pending.append(envelope)
            return True
        try:
            self._queue.put_nowait(envelope)
        except asyncio.QueueFull:
            return False
        return True

    def _drain(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self._backlog.clear()
        self._pending.clear()

    def _mark_dropped(self) -> None:
        self._dropped = True
        self._replaying = False
        self._drain()
        self._queue.put_nowait(_DROPPED)

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._replaying = False
        self._drain()
        self._queue.put_nowait(_CLOSED)

    async def _replay_next_page(self) -> None:
        page = await self._read_events(self.world_id, after_sequence=self._replay_cursor, limit=self._replay_page_size)
        if not self._replaying:
            return
        for event in page:
            self._backlog.append(Envelope.from_event(event))
            self._replay_cursor = event.sequence
        if len(page) < self._replay_page_size:
            self._go_live()

    def _go_live(self) -> None:
        pending, self._pending = self._pending, []
        self._replaying = False
        for envelope in pending:
            if envelope.sequence is not None and envelope.sequence <= self._replay_cursor:
                continue
            self._queue.put_nowait(envelope)

    async def _pull(self, timeout: float | None) -> Envelope:
        while True:
            if self._dropped:
                raise SubscriberDroppedError(self.id, self.cursor)
            if self._closed:
                raise SubscriptionClosedError(f"Subscription {self.id} is closed")
            if self._backlog:
                return self._backlog.popleft()
            if self._replaying:
                await self._replay_next_page()
                continue

            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            if item is _DROPPED or item is _CLOSED:
                continue
            return item

    async def next(self, timeout: float | None = None) -> Envelope:
        """Returns the next envelope after the cursor.

        Raises:
            SubscriberDroppedError: the hub dropped this subscriber; resume
                with a new subscription from ``error.cursor``.
            SubscriptionClosedError: the subscription was closed.
            asyncio.TimeoutError: nothing arrived within ``timeout``.
        """

        while True:
            envelope = await self._pull(timeout)
            if envelope.sequence is not None:
                if envelope.sequence <= self.cursor:
                    continue
                self.cursor = envelope.sequence
            return envelope

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Envelope:
        try:
            return await self.next()
        except SubscriptionClosedError as exc:
            raise StopAsyncIteration from exc


class BroadcastHub:
    def __init__(self, read_events: ReadEvents, *, queue_size: int = 256, replay_page_size: int = 500):
        self._read_events = read_events
        self.queue_size = queue_size
        self.replay_page_size = replay_page_size
        self._subscribers: dict[str, dict[SubscriptionId, Subscription]] = {}

    def subscriber_count(self, world_id: str) -> int:
        return len(self._subscribers.get(world_id, {}))

    def subscribe(self, world_id: str, cursor: int = 0) -> Subscription:
        if cursor < 0:
            raise ValueError("cursor must be non-negative")
        subscription = Subscription(
            world_id,
            cursor,
            read_events=self._read_events,
            queue_size=self.queue_size,
            replay_page_size=self.replay_page_size,
        )
        self._subscribers.setdefault(world_id, {})[subscription.id] = subscription
        logger.bind(world_id=world_id, subscription=str(subscription.id)[:8]).info("Subscribed cursor={}", cursor)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        world_subscribers = self._subscribers.get(subscription.world_id)
        if world_subscribers is not None:
            world_subscribers.pop(subscription.id, None)
            if not world_subscribers:
                self._subscribers.pop(subscription.world_id, None)
        subscription._mark_closed()
        logger.bind(world_id=subscription.world_id, subscription=str(subscription.id)[:8]).info(
            "Unsubscribed cursor={}", subscription.cursor
        )

    def _drop(self, subscription: Subscription) -> None:
        world_subscribers = self._subscribers.get(subscription.world_id, {})
        world_subscribers.pop(subscription.id, None)
        if not world_subscribers:
            self._subscribers.pop(subscription.world_id, None)
        subscription._mark_dropped()
        logger.bind(world_id=subscription.world_id, subscription=str(subscription.id)[:8]).warning(
            "Dropped slow subscriber cursor={} queue_size={}", subscription.cursor, self.queue_size
        )

    def _fan_out(self, world_id: str, envelopes: list[Envelope]) -> int:
        delivered = 0
        for subscription in list(self._subscribers.get(world_id, {}).values()):
            for envelope in envelopes:
                if not subscription._offer(envelope):
                    self._drop(subscription)
                    break
            else:
                delivered += 1
        return delivered

    def publish(self, world_id: str, events: Iterable[StoryEvent]) -> int:
        """Hands committed events to every subscriber of ``world_id`` without waiting.

        Returns the number of subscribers that received the whole batch.
        """

        envelopes = [Envelope.from_event(event) for event in events]
        if not envelopes:
            return 0
        delivered = self._fan_out(world_id, envelopes)
        logger.bind(world_id=world_id).debug(
            "Published events first={} last={} subscribers={}",
            envelopes[0].sequence,
            envelopes[-1].sequence,
            delivered,
        )
        return delivered

    def notify(self, world_id: str, kind: str, payload: dict[str, Any]) -> int:
        """Sends an unsequenced notice to live subscribers only."""

        return self._fan_out(world_id, [Envelope.notice(world_id, kind, payload)])

    def close_all(self) -> None:
        for world_subscribers in list(self._subscribers.values()):
            for subscription in list(world_subscribers.values()):
                self.unsubscribe(subscription)
