"""Pending waits: continuations, the wait registry and the pattern binder.

Every parked wait_for() call is a ``PendingWait`` keyed by
(source, pattern). The registry is the only mutable state shared between
the dispatch stream, invalidation timers and worker threads, so every
operation on it is a single critical section.

Routing rules for wait patterns are shared: one rule per pattern text, kept
alive by reference counting in ``PatternBinder`` for as long as any wait
uses it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from .routing import MappingOptions

if TYPE_CHECKING:
    from .fiber import Fiber
    from .message import Message
    from .routing import Handler, PatternRouter

logger = logging.getLogger(__name__)

ScopeKey = tuple[str, str]


class InvalidatePolicy(str, Enum):
    """When an unanswered wait is given up."""

    TIMED = "timed"
    NEXT_MESSAGE = "next_message"


class WaitOptions(BaseModel):
    """Per-wait options accepted by wait_for().

    ``fiber``/``threaded`` are not accepted: wait patterns are always bound
    with both disabled.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    invalidate: InvalidatePolicy = InvalidatePolicy.TIMED
    timeout: float | None = Field(default=None, gt=0)
    defaults: dict[str, str] = Field(default_factory=dict)


class ContinuationState(str, Enum):
    SUSPENDED = "suspended"
    RESUMED = "resumed"
    INVALIDATED = "invalidated"


class Continuation:
    """A fiber parked at one wait_for() call.

    Holds a single-slot channel: at most one (message, params) pair or one
    abort exception is ever delivered to it.
    """

    def __init__(self, fiber: Fiber) -> None:
        self.id = f"cont_{uuid.uuid4().hex[:12]}"
        self.fiber = fiber
        self.state = ContinuationState.SUSPENDED
        self._slot: asyncio.Future[tuple[Message, dict[str, str]]] = (
            asyncio.get_running_loop().create_future()
        )

    def __repr__(self) -> str:
        return f"<Continuation {self.id} {self.state.value} {self.fiber!r}>"

    @property
    def terminal(self) -> bool:
        return self.state is not ContinuationState.SUSPENDED

    async def wait(self) -> tuple[Message, dict[str, str]]:
        """Park the owning fiber until a result is delivered."""
        return await self.fiber.park(self._slot)

    async def resume(self, message: Message, params: dict[str, str]) -> bool:
        """Deliver a result and run the fiber to its next hand-off.

        Returns False, without touching the fiber, if already terminal or
        if the fiber is not parked here yet.
        """
        if self.terminal or self._slot.done() or not self.fiber.parked:
            return False
        self.state = ContinuationState.RESUMED
        return await self.fiber.send(self._slot, (message, params))

    async def abort(self, exc: BaseException) -> bool:
        """Raise ``exc`` at the parked wait_for() call.

        If the fiber is still running towards its park, the exception is
        left in the slot and raised as soon as it parks; its current driver
        sees it through. Returns False if already terminal or the fiber ended.
        """
        if self.terminal or self._slot.done() or not self.fiber.alive:
            return False
        self.state = ContinuationState.INVALIDATED
        if not self.fiber.parked:
            self._slot.set_exception(exc)
            return True
        return await self.fiber.throw(self._slot, exc)


@dataclass
class PendingWait:
    """Registry entry correlating (source, pattern) to a continuation."""

    source: str
    pattern: str
    options: WaitOptions
    continuation: Continuation
    id: str = field(default_factory=lambda: f"wait_{uuid.uuid4().hex[:12]}")
    created_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def key(self) -> ScopeKey:
        return (self.source, self.pattern)

    @property
    def policy(self) -> InvalidatePolicy:
        return self.options.invalidate

    def disarm(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def describe(self) -> dict[str, Any]:
        return {
            "wait_id": self.id,
            "source": self.source,
            "pattern": self.pattern,
            "invalidate": self.policy.value,
            "timeout": self.options.timeout,
            "age": round(time.monotonic() - self.created_at, 3),
            "continuation": self.continuation.id,
            "fiber": self.continuation.fiber.id,
        }


class WaitRegistry:
    """All pending waits, keyed by (source, pattern)."""

    def __init__(self, exclusive_patterns: bool = True) -> None:
        self.exclusive_patterns = exclusive_patterns
        self._waits: dict[ScopeKey, PendingWait] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._waits)

    def add(self, wait: PendingWait) -> list[PendingWait]:
        """Insert ``wait`` and return the entries it displaced.

        The same key is always replaced. With exclusive patterns, any wait on
        the same pattern text is replaced too, whatever its source.
        """
        with self._lock:
            if self.exclusive_patterns:
                keys = [k for k in self._waits if k[1] == wait.pattern]
            else:
                keys = [wait.key] if wait.key in self._waits else []
            displaced = [self._waits.pop(k) for k in keys]
            self._waits[wait.key] = wait
            return displaced

    def take(self, keys: list[ScopeKey]) -> PendingWait | None:
        """Remove and return the first wait found under ``keys``, in order."""
        with self._lock:
            for key in keys:
                wait = self._waits.pop(key, None)
                if wait is not None:
                    return wait
            return None

    def remove(self, wait_id: str) -> PendingWait | None:
        """Remove a wait by id; None if it is no longer registered."""
        with self._lock:
            for key, wait in self._waits.items():
                if wait.id == wait_id:
                    return self._waits.pop(key)
            return None

    def get(self, key: ScopeKey) -> PendingWait | None:
        with self._lock:
            return self._waits.get(key)

    def for_sources(self, *sources: str | None) -> list[PendingWait]:
        wanted = {s for s in sources if s is not None}
        with self._lock:
            return [w for w in self._waits.values() if w.source in wanted]

    def drain(self) -> list[PendingWait]:
        with self._lock:
            waits = list(self._waits.values())
            self._waits.clear()
            return waits

    def snapshot(self) -> list[PendingWait]:
        with self._lock:
            return list(self._waits.values())


class PatternBinder:
    """Reference-counted routing rules for wait patterns.

    The first wait on a pattern installs a rule pointing at the resume
    callback; the last one to go removes it. A pattern the router already
    had for some other handler is never registered or removed here.
    """

    def __init__(self, router: PatternRouter, callback: Handler) -> None:
        self._router = router
        self._callback = callback
        self._refs: Counter[str] = Counter()
        self._owned: set[str] = set()
        self._lock = threading.Lock()

    def refcount(self, pattern: str) -> int:
        with self._lock:
            return self._refs[pattern]

    def is_bound(self, pattern: str) -> bool:
        with self._lock:
            return pattern in self._owned

    def acquire(self, pattern: str, options: WaitOptions) -> bool:
        """Take a reference; returns True if a new rule was installed."""
        with self._lock:
            self._refs[pattern] += 1
            if pattern in self._owned:
                return False
            if self._router.has_pattern(pattern):
                logger.warning(f"Pattern {pattern!r} is already routed elsewhere, not binding")
                return False
            self._router.register_pattern(
                pattern,
                self._callback,
                MappingOptions(fiber=False, threaded=False, defaults=dict(options.defaults)),
            )
            self._owned.add(pattern)
            return True

    def release(self, pattern: str) -> bool:
        """Drop a reference; returns True if the rule was removed."""
        with self._lock:
            if self._refs[pattern] <= 0:
                logger.warning(f"Release of unreferenced pattern {pattern!r}")
                return False
            self._refs[pattern] -= 1
            if self._refs[pattern] > 0:
                return False
            del self._refs[pattern]
            if pattern not in self._owned:
                return False
            self._owned.discard(pattern)
            self._router.unregister_pattern(pattern)
            return True
