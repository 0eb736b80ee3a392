from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import Any

from maestro.models import Orchestration, utcnow_iso

logger = logging.getLogger(__name__)

_CLOSED = object()


def task_scope(orchestration_id: str, task_id: str) -> str:
    return f"{orchestration_id}/{task_id}"


def record_event(
    hub: EventHub,
    orchestration: Orchestration,
    event_type: str,
    **payload: Any,
) -> dict[str, Any]:
    """Publish on the orchestration scope and keep a copy in its summary log."""
    event = hub.publish(orchestration.id, event_type, **payload)
    orchestration.record(event)
    return event


class Subscription:
    """Live view of one scope; iterate it, and close it (or leave ``async with``) when done."""

    def __init__(
        self,
        hub: EventHub,
        scope_id: str,
        queue: asyncio.Queue[Any],
        heartbeat_seconds: float,
    ) -> None:
        self.hub = hub
        self.scope_id = scope_id
        self.queue = queue
        self.heartbeat_seconds = heartbeat_seconds
        self.replayed = queue.qsize()
        self.closed = False
        self.dropped = False

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        while True:
            if self.closed or (self.dropped and self.queue.empty()):
                self.close()
                raise StopAsyncIteration
            try:
                item = await asyncio.wait_for(self.queue.get(), timeout=self.heartbeat_seconds)
            except TimeoutError:
                if self.dropped:
                    continue
                return {"type": "heartbeat", "scope": self.scope_id, "timestamp": utcnow_iso()}
            if item is _CLOSED:
                self.close()
                raise StopAsyncIteration
            return item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.hub._unsubscribe(self)

    async def aclose(self) -> None:
        self.close()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventHub:
    """Scoped pub/sub with bounded per-scope history replay."""

    def __init__(
        self,
        *,
        replay_limit: int = 5,
        history_limit: int = 200,
        heartbeat_seconds: float = 15.0,
        queue_size: int = 1000,
    ) -> None:
        self.replay_limit = replay_limit
        self.heartbeat_seconds = heartbeat_seconds
        self.queue_size = queue_size
        self._history: dict[str, deque[dict[str, Any]]] = defaultdict(
            lambda: deque(maxlen=history_limit)
        )
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def subscriber_count(self, scope_id: str) -> int:
        return len(self._subscribers.get(scope_id, []))

    def history(self, scope_id: str) -> list[dict[str, Any]]:
        return list(self._history.get(scope_id, []))

    def seed(self, scope_id: str, events: list[dict[str, Any]]) -> None:
        history = self._history[scope_id]
        for event in events:
            history.append(event)

    def publish(self, scope_id: str, event_type: str, **payload: Any) -> dict[str, Any]:
        event = {"type": event_type, "scope": scope_id, "timestamp": utcnow_iso(), **payload}
        self._history[scope_id].append(event)
        for subscription in list(self._subscribers.get(scope_id, [])):
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("dropping slow subscriber on %s", scope_id)
                subscription.dropped = True
                self._unsubscribe(subscription)
        return event

    def subscribe(self, scope_id: str) -> Subscription:
        """Register a subscriber on ``scope_id``.

        Breaking out of ``async for`` leaves it registered. Callers that may stop early
        should use ``async with`` or ``contextlib.aclosing``, or call ``close()``.
        """
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.queue_size)
        history = self._history.get(scope_id)
        if history and self.replay_limit > 0:
            for event in list(history)[-self.replay_limit :]:
                queue.put_nowait(event)
        subscription = Subscription(self, scope_id, queue, self.heartbeat_seconds)
        self._subscribers[scope_id].append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.scope_id)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.scope_id, None)

    def close_scope(self, scope_id: str) -> None:
        for subscription in list(self._subscribers.pop(scope_id, [])):
            try:
                subscription.queue.put_nowait(_CLOSED)
            except asyncio.QueueFull:
                subscription.dropped = True
        self._history.pop(scope_id, None)
