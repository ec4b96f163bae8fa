"""Event bus for home state change notifications."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .logging import get_logger


@dataclass
class HomeEvent:
    """Home event with type, timestamp, and data."""

    event_type: str
    timestamp: str
    data: Dict[str, Any]

    @classmethod
    def create(cls, event_type: str, data: Dict[str, Any]) -> "HomeEvent":
        return cls(
            event_type=event_type,
            timestamp=datetime.now(tz=timezone.utc).isoformat(),
            data=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_type,
            "timestamp": self.timestamp,
            "data": self.data,
        }


Subscriber = Callable[[HomeEvent], Any]


class EventBus:
    """
    Async pub/sub bus for home state changes.

    Subscribers register for one event type or ``"*"`` for every event.
    Coroutine subscribers run as tasks; plain callables run inline.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[Subscriber]] = defaultdict(set)
        self._wildcard_subscribers: Set[Subscriber] = set()
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._lock = asyncio.Lock()
        self.logger = get_logger("smarthome.events")

    async def publish(self, event_type: str, data: Dict[str, Any]) -> HomeEvent:
        event = HomeEvent.create(event_type, data)

        async with self._lock:
            subscribers = list(self._subscribers.get(event_type, set()))
            subscribers.extend(self._wildcard_subscribers)

        # Callbacks run outside the lock so they may subscribe or publish.
        for callback in subscribers:
            try:
                if asyncio.iscoroutinefunction(callback):
                    task = asyncio.create_task(callback(event))
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
                else:
                    callback(event)
            except Exception:
                self.logger.exception(
                    "Event subscriber failed", extra={"event_type": event_type}
                )
        return event

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(
                "Async event subscriber failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )

    async def subscribe(self, event_type: str, callback: Subscriber) -> Callable[[], None]:
        """Register `callback`; returns a function that removes it again."""

        async with self._lock:
            if event_type == "*":
                self._wildcard_subscribers.add(callback)
            else:
                self._subscribers[event_type].add(callback)

        def unsubscribe() -> None:
            if event_type == "*":
                self._wildcard_subscribers.discard(callback)
            else:
                self._subscribers[event_type].discard(callback)

        return unsubscribe

    async def subscriber_count(self, event_type: Optional[str] = None) -> int:
        async with self._lock:
            if event_type is None:
                total = len(self._wildcard_subscribers)
                total += sum(len(subs) for subs in self._subscribers.values())
                return total
            if event_type == "*":
                return len(self._wildcard_subscribers)
            return len(self._subscribers.get(event_type, set()))

    async def drain(self) -> None:
        """Wait for pending async subscriber tasks."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def event_types(self) -> List[str]:
        return [key for key, subs in self._subscribers.items() if subs]


EVENT_DEVICE_UPDATED = "device_updated"
EVENT_ACTIVITY_LOGGED = "activity_logged"
EVENT_SCENE_APPLIED = "scene_applied"
EVENT_SCENES_CHANGED = "scenes_changed"
EVENT_SETTING_UPDATED = "setting_updated"
EVENT_STATE_ERROR = "state_error"
