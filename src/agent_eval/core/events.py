import asyncio
from collections.abc import Callable, Coroutine
from typing import Any

from pydantic import BaseModel

TURN_COMPLETED = "eval.turn.completed"
CONVERSATION_TERMINATED = "eval.conversation.terminated"
CASE_COMPLETED = "eval.case.completed"


class Event(BaseModel):
    """Observability event emitted while cases run."""

    name: str
    case_id: str | None = None
    payload: dict[str, Any] = {}


Subscriber = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    """
    Event bus for evaluation progress (turns, terminations, finished cases).
    """

    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = {}

    def subscribe(self, event_name: str, callback: Subscriber) -> None:
        self._subscribers.setdefault(event_name, []).append(callback)

    def unsubscribe(self, event_name: str, callback: Subscriber) -> None:
        callbacks = self._subscribers.get(event_name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def emit(self, event: Event) -> None:
        tasks = [cb(event) for cb in self._subscribers.get(event.name, [])]
        tasks.extend(cb(event) for cb in self._subscribers.get("*", []))

        if tasks:
            await asyncio.gather(*tasks)


event_bus = EventBus()
