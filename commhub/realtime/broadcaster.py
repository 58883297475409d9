"""Room based fan-out of state changes to live clients."""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

GLOBAL_ROOM = "global"


def queue_room(name: str) -> str:
    return f"queue:{name}"


def worker_room(worker_id: str) -> str:
    return f"worker:{worker_id}"


def interaction_room(interaction_id: str) -> str:
    return f"interaction:{interaction_id}"


def role_room(role: str) -> str:
    return f"role:{role}"


@dataclass(frozen=True)
class RealtimeEvent:
    room: str
    seq: int
    type: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"room": self.room, "seq": self.seq, "type": self.type, "data": self.data}


class Subscriber(Protocol):
    """Receives events for the rooms it joined.

    ``deliver`` must not block; raising drops the subscriber.
    """

    def deliver(self, event: RealtimeEvent) -> None: ...


class _Room:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.seq = itertools.count(1)
        self.subscribers: list[Subscriber] = []


class Broadcaster:
    """Publishes events to rooms.

    Publishing into one room is serialized by that room's lock so every
    current subscriber sees the room's events in publish order. Rooms are
    independent of each other and exist only while someone is subscribed;
    a room that empties is forgotten and its sequence starts again at 1.
    """

    def __init__(self) -> None:
        # Lock order: _guard, then a room's lock.
        self._guard = threading.Lock()
        self._rooms: dict[str, _Room] = {}

    def subscribe(self, subscriber: Subscriber, rooms: Iterable[str]) -> None:
        with self._guard:
            for name in rooms:
                room = self._rooms.get(name)
                if room is None:
                    room = _Room()
                    self._rooms[name] = room
                with room.lock:
                    if subscriber not in room.subscribers:
                        room.subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber, rooms: Iterable[str] | None = None) -> None:
        with self._guard:
            names = list(self._rooms) if rooms is None else list(rooms)
            for name in names:
                room = self._rooms.get(name)
                if room is None:
                    continue
                with room.lock:
                    if subscriber in room.subscribers:
                        room.subscribers.remove(subscriber)
                    if not room.subscribers:
                        del self._rooms[name]

    def publish(
        self, room_name: str, event_type: str, data: dict[str, Any]
    ) -> RealtimeEvent | None:
        """Fire-and-forget delivery to every subscriber of ``room_name``.

        Returns ``None`` when nobody is listening.
        """

        with self._guard:
            room = self._rooms.get(room_name)
        if room is None:
            return None
        with room.lock:
            event = RealtimeEvent(room_name, next(room.seq), event_type, data)
            dropped = []
            for subscriber in room.subscribers:
                try:
                    subscriber.deliver(event)
                except Exception as exc:
                    logger.debug("Dropping subscriber from %s: %s", room_name, exc)
                    dropped.append(subscriber)
            for subscriber in dropped:
                room.subscribers.remove(subscriber)
        if dropped:
            self._forget_if_empty(room_name, room)
        return event

    def _forget_if_empty(self, name: str, room: _Room) -> None:
        with self._guard:
            with room.lock:
                if not room.subscribers and self._rooms.get(name) is room:
                    del self._rooms[name]

    def publish_many(
        self, rooms: Iterable[str], event_type: str, data: dict[str, Any]
    ) -> None:
        for name in dict.fromkeys(rooms):
            self.publish(name, event_type, data)

    def subscriber_count(self, room_name: str) -> int:
        with self._guard:
            room = self._rooms.get(room_name)
        if room is None:
            return 0
        with room.lock:
            return len(room.subscribers)

    def room_count(self) -> int:
        with self._guard:
            return len(self._rooms)


class QueueSubscriber:
    """Buffers events in a bounded thread-safe list; used by tests and tooling."""

    def __init__(self, max_events: int = 1000) -> None:
        self._lock = threading.Lock()
        self._max_events = max_events
        self.events: list[RealtimeEvent] = []

    def deliver(self, event: RealtimeEvent) -> None:
        with self._lock:
            if len(self.events) >= self._max_events:
                raise OverflowError("subscriber buffer full")
            self.events.append(event)

    def snapshot(self) -> list[RealtimeEvent]:
        with self._lock:
            return list(self.events)


class AsyncQueueSubscriber:
    """Hands events from publisher threads to an asyncio consumer.

    Delivery schedules a non-blocking put on the consumer's loop; a full queue
    or a closed loop drops the subscriber.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, max_events: int = 1000) -> None:
        self._loop = loop
        self.queue: asyncio.Queue[RealtimeEvent] = asyncio.Queue(maxsize=max_events)
        self._closed = False

    def deliver(self, event: RealtimeEvent) -> None:
        if self._closed or self._loop.is_closed():
            raise RuntimeError("subscriber closed")
        if self.queue.full():
            raise OverflowError("subscriber queue full")
        self._loop.call_soon_threadsafe(self._put, event)

    def _put(self, event: RealtimeEvent) -> None:
        if self._closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self._closed = True
            logger.debug("Realtime client fell behind; closing its queue")

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True
