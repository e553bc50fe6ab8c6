"""Fibers: handler invocations that can park and be resumed.

A fiber wraps one handler call in its own asyncio task. Whoever drives the
fiber (the dispatcher on start, the plugin on resume) waits until the fiber
either parks in wait_for() or finishes, so exactly one unit of work runs at
a time and control returns to the dispatch stream only at those points.

The running fiber is tracked in a ContextVar. The dispatch stream itself
is the root context: ``Fiber.current()`` is ``None`` there and it can never
park.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from enum import Enum
from typing import Any, TypeVar

from .errors import ProtocolMisuseError, WaitAbortedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_current_fiber: ContextVar[Fiber | None] = ContextVar("current_fiber", default=None)


class FiberState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PARKED = "parked"
    FINISHED = "finished"


class Fiber:
    """One resumable handler invocation."""

    def __init__(
        self,
        target: Callable[..., Awaitable[Any]],
        *args: Any,
        name: str | None = None,
    ) -> None:
        self.id = f"fiber_{uuid.uuid4().hex[:12]}"
        self.name = name or getattr(target, "__name__", "fiber")
        self.state = FiberState.CREATED
        self.result: Any = None
        self.error: BaseException | None = None

        self._target = target
        self._args = args
        self._task: asyncio.Task[Any] | None = None
        # Resolved whenever the fiber hands control back (parks or ends)
        self._handoff: asyncio.Future[None] | None = None

    def __repr__(self) -> str:
        return f"<Fiber {self.id} {self.name} {self.state.value}>"

    @staticmethod
    def current() -> Fiber | None:
        """The fiber running in the current task, or None at the root."""
        fiber = _current_fiber.get()
        if fiber is None or fiber._task is not asyncio.current_task():
            # Tasks spawned from inside a fiber inherit the ContextVar but
            # are not the fiber and cannot park it.
            return None
        return fiber

    @property
    def alive(self) -> bool:
        return self.state is not FiberState.FINISHED

    @property
    def parked(self) -> bool:
        return self.state is FiberState.PARKED

    async def start(self) -> None:
        """Run the fiber until it parks or finishes."""
        if self.state is not FiberState.CREATED:
            raise RuntimeError(f"{self!r} already started")
        loop = asyncio.get_running_loop()
        self._handoff = loop.create_future()
        self._task = loop.create_task(self._main(), name=self.id)
        self._task.add_done_callback(self._on_done)
        await self._handoff

    async def park(self, slot: asyncio.Future[T]) -> T:
        """Hand control back to the driver until ``slot`` is resolved.

        Must be called from inside this fiber.
        """
        if Fiber.current() is not self:
            raise ProtocolMisuseError(f"{self!r} can only be parked from inside itself")
        if slot.done():
            # Resolved before we got here; keep running under the current driver
            return slot.result()
        self.state = FiberState.PARKED
        self._release()
        try:
            return await slot
        finally:
            self.state = FiberState.RUNNING

    async def send(self, slot: asyncio.Future[T], value: T) -> bool:
        """Resolve ``slot`` with ``value`` and run until the next hand-off.

        Returns False, leaving ``slot`` untouched, when the fiber is not parked.
        """
        return await self._drive(lambda: slot.set_result(value))

    async def throw(self, slot: asyncio.Future[Any], exc: BaseException) -> bool:
        """Raise ``exc`` at the parked await and run until the next hand-off."""
        return await self._drive(lambda: slot.set_exception(exc))

    async def cancel(self) -> None:
        """Cancel the fiber wherever it is parked and wait for it to end."""
        if self._task is None or self._task.done():
            return
        if self._handoff is not None and not self._handoff.done():
            # Another driver owns the hand-off; it sees the cancellation end
            self._task.cancel()
            return
        await self._drive(self._task.cancel, parked_only=False)

    async def _drive(self, wake: Callable[[], Any], *, parked_only: bool = True) -> bool:
        if self._task is None or self._task.done():
            logger.warning(f"Cannot drive {self!r}: not running")
            return False
        if self._handoff is not None and not self._handoff.done():
            logger.warning(f"Cannot drive {self!r}: already being driven")
            return False
        if parked_only and not self.parked:
            logger.warning(f"Cannot drive {self!r}: not parked")
            return False
        # The hand-off must exist before the fiber can possibly run again
        self._handoff = asyncio.get_running_loop().create_future()
        wake()
        await self._handoff
        return True

    async def _main(self) -> Any:
        _current_fiber.set(self)
        self.state = FiberState.RUNNING
        return await self._target(*self._args)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self.state = FiberState.FINISHED
        if task.cancelled():
            logger.debug(f"{self!r} cancelled")
        else:
            exc = task.exception()
            if exc is None:
                self.result = task.result()
                logger.debug(f"{self!r} finished")
            elif isinstance(exc, WaitAbortedError):
                self.error = exc
                logger.info(f"{self!r} ended: {exc}")
            else:
                self.error = exc
                logger.error(f"Error in fiber {self.name}", exc_info=exc)
        self._release()

    def _release(self) -> None:
        if self._handoff is not None and not self._handoff.done():
            self._handoff.set_result(None)
