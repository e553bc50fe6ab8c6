"""Event Bus - pub/sub for runtime diagnostics.

Every wait registration, resume, miss and invalidation is published here.
Subscribers can listen to one event type, to a dotted prefix
("wait.*") or to everything ("*").
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


@dataclass
class EventDefinition(Generic[T]):
    """Typed event definition.

    Usage:
        WaitResumed = Bus.define("wait.resumed", WaitResumedProps)
        await Bus.publish(WaitResumed, WaitResumedProps(wait_id="..."))
    """

    type: str
    schema: type[T]

    @property
    def prefix(self) -> str:
        return self.type.split(".", 1)[0] + ".*"


# Type for event callbacks
EventCallback = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]


class Bus:
    """Event bus with exact, prefix and wildcard subscriptions.

    Subscriber lists are guarded by an asyncio.Lock. Subscriber failures
    are logged and never reach the publisher.
    """

    _subscriptions: dict[str, list[EventCallback]] = {}
    _lock: asyncio.Lock | None = None
    _pending: set[asyncio.Task[None]] = set()

    @classmethod
    def _get_lock(cls) -> asyncio.Lock:
        """Get or create the lock (lazy init for event loop safety)."""
        if cls._lock is None:
            cls._lock = asyncio.Lock()
        return cls._lock

    @classmethod
    def define(cls, event_type: str, schema: type[T]) -> EventDefinition[T]:
        """Define a typed event.

        Args:
            event_type: Dot-separated event name (e.g., "wait.resumed")
            schema: Pydantic model for event properties

        Returns:
            EventDefinition that can be used with publish/subscribe
        """
        return EventDefinition(type=event_type, schema=schema)

    @classmethod
    async def publish(cls, event_def: EventDefinition[T], properties: T) -> None:
        """Publish event to all matching subscribers.

        Args:
            event_def: The event definition (created via Bus.define)
            properties: Event properties (must match the schema)
        """
        payload = {"type": event_def.type, "properties": properties.model_dump(mode="json")}

        async with cls._get_lock():
            # Copy subscriber lists to avoid mutation during iteration
            callbacks = [
                *cls._subscriptions.get(event_def.type, []),
                *cls._subscriptions.get(event_def.prefix, []),
                *cls._subscriptions.get("*", []),
            ]

        for callback in callbacks:
            try:
                await callback(payload)
            except Exception:
                logger.exception(f"Error in subscriber for {event_def.type}")

    @classmethod
    def publish_soon(cls, event_def: EventDefinition[T], properties: T) -> None:
        """Publish from synchronous code such as timer callbacks.

        Requires a running event loop.
        """
        task = asyncio.get_running_loop().create_task(cls.publish(event_def, properties))
        cls._pending.add(task)
        task.add_done_callback(cls._pending.discard)

    @classmethod
    async def subscribe(
        cls, event_def: EventDefinition[T], callback: EventCallback
    ) -> Callable[[], None]:
        """Subscribe to a specific event type.

        Returns:
            Unsubscribe function
        """
        return await cls._subscribe(event_def.type, callback)

    @classmethod
    async def subscribe_prefix(cls, prefix: str, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to every event whose type starts with ``prefix + "."``.

        Usage:
            await Bus.subscribe_prefix("wait", on_wait_event)
        """
        return await cls._subscribe(f"{prefix}.*", callback)

    @classmethod
    async def subscribe_all(cls, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to ALL events."""
        return await cls._subscribe("*", callback)

    @classmethod
    async def _subscribe(cls, key: str, callback: EventCallback) -> Callable[[], None]:
        """Internal subscribe implementation."""
        async with cls._get_lock():
            cls._subscriptions.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            # Synchronous unsubscribe (safe because we're just removing)
            if key in cls._subscriptions and callback in cls._subscriptions[key]:
                cls._subscriptions[key].remove(callback)

        return unsubscribe

    @classmethod
    def reset(cls) -> None:
        """Reset bus state (for testing)."""
        cls._subscriptions = {}
        cls._lock = None
        cls._pending = set()
