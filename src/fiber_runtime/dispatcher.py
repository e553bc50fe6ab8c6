"""Dispatcher - the single dispatch stream.

Messages are processed one at a time: next-message invalidation first,
then routing, then the matched handler. Fiber-backed handlers run in a new
fiber that is driven until it parks or finishes before the next message is
taken. Deferred plugin work (timer expiries) runs under the same stream
lock, so it never overlaps a dispatch, whether or not ``run()`` is active.

No handler failure ever escapes the dispatcher; failures are logged.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Coroutine
from typing import Any

from .bus import Bus
from .config import FiberConfig
from .events import FiberSpawned, FiberSpawnedProps
from .fiber import Fiber
from .message import Message
from .plugin import FiberPlugin, report_finished
from .routing import RouteMatch, TemplateRouter

logger = logging.getLogger(__name__)

_STOP = object()


class Dispatcher:
    """Routes messages to handlers through one serialized stream.

    Usage:
        router = TemplateRouter()
        dispatcher = Dispatcher(router)
        router.map("list *topic", pager.list_items, fiber=True)
        await dispatcher.dispatch(Message(sender="alice", text="list fruit"))
    """

    def __init__(
        self,
        router: TemplateRouter | None = None,
        plugin: FiberPlugin | None = None,
        config: FiberConfig | None = None,
    ) -> None:
        self.config = config or (plugin.config if plugin else FiberConfig.from_env())
        self.router = router or TemplateRouter()
        self.plugin = plugin or FiberPlugin(self.router, self.config)
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.config.queue_size)
        self._running = False
        self._stopped: asyncio.Event | None = None
        self._lock: asyncio.Lock | None = None
        self._deferred: set[asyncio.Task[None]] = set()
        self.plugin.set_scheduler(self.schedule)

    def _get_lock(self) -> asyncio.Lock:
        """Get or create the stream lock (lazy init for event loop safety)."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Direct dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, message: Message) -> RouteMatch | None:
        """Process one message to completion (or to its handler's next park).

        Returns:
            The route taken, or None if nothing matched
        """
        async with self._get_lock():
            await self.plugin.observe(message)

            found = self.router.route(message)
            if found is None:
                logger.debug(f"No pattern matches {message.text!r} from {message.sender}")
                return None

            await self._invoke(found, message)
            return found

    async def _invoke(self, found: RouteMatch, message: Message) -> None:
        mapping = found.mapping
        params = dict(found.params)

        if mapping.options.fiber:
            fiber = Fiber(mapping.handler, message, params, name=mapping.pattern)
            await Bus.publish(
                FiberSpawned,
                FiberSpawnedProps(
                    fiber_id=fiber.id, pattern=mapping.pattern, message_id=message.id
                ),
            )
            await fiber.start()
            await report_finished(fiber)
            return

        try:
            if mapping.options.threaded:
                result = await asyncio.to_thread(mapping.handler, message, params)
            else:
                result = mapping.handler(message, params)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Error in handler for {mapping.pattern!r}")

    # ------------------------------------------------------------------
    # Queued stream
    # ------------------------------------------------------------------

    async def submit(self, message: Message) -> None:
        """Queue a message for the running stream."""
        await self._queue.put(message)

    def schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        """Run deferred work as soon as the stream lock is free.

        Safe to call from timer callbacks; never blocks and never fails on a
        full message queue.
        """
        task = asyncio.get_running_loop().create_task(self._run_deferred(coro))
        self._deferred.add(task)
        task.add_done_callback(self._deferred.discard)

    async def _run_deferred(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            async with self._get_lock():
                await coro
        except Exception:
            logger.exception("Error in deferred dispatcher work")

    async def join(self) -> None:
        """Wait until everything queued or deferred so far has been processed."""
        await self._queue.join()
        if self._deferred:
            await asyncio.gather(*list(self._deferred), return_exceptions=True)

    async def run(self) -> None:
        """Process queued messages until stop() is called."""
        if self._running:
            raise RuntimeError("Dispatcher is already running")
        self._running = True
        self._stopped = asyncio.Event()
        logger.debug("Dispatcher started")
        try:
            while True:
                item = await self._queue.get()
                try:
                    if item is _STOP:
                        break
                    await self._process(item)
                finally:
                    self._queue.task_done()
        finally:
            self._running = False
            self._stopped.set()
            logger.debug("Dispatcher stopped")

    async def _process(self, message: Message) -> None:
        try:
            await self.dispatch(message)
        except Exception:
            logger.exception(f"Error processing message {message.id}")

    async def stop(self, shutdown: bool = True) -> None:
        """Stop the stream after queued messages; optionally cancel all waits."""
        if self._running and self._stopped is not None:
            await self._queue.put(_STOP)
            await self._stopped.wait()
        self._drain()
        if self._deferred:
            await asyncio.gather(*list(self._deferred), return_exceptions=True)
        if shutdown:
            async with self._get_lock():
                await self.plugin.shutdown()

    def _drain(self) -> None:
        """Drop messages left behind the stop marker."""
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if isinstance(item, Message):
                logger.warning(f"Dropping unprocessed message {item.id} on stop")
            self._queue.task_done()
