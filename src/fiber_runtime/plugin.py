"""Fiber plugin: wait_for() and the resume callback.

Handlers mapped with ``fiber=True`` run inside a fiber and may pause for
a follow-up message:

    async def list_items(message, params):
        ...
        reply, params = await fibers.wait_for(message.source, "page_to :page")
        ...

wait_for() registers a pending wait under (source, pattern), makes sure a
routing rule for the pattern points at ``fiber_callback`` and parks the
fiber. When a message matching the pattern arrives from that source, the
callback removes the wait (and the rule, if nothing else uses it) and
resumes the fiber with ``(message, params)``.

Unanswered waits are given up according to their invalidation policy:

- ``timed`` (default): after ``timeout`` seconds (``invalidate_after``
  from the config when not given) wait_for() raises WaitExpiredError.
- ``next_message``: the first message from the same source that does not
  match the pattern makes wait_for() raise WaitInvalidatedError.

Because rules are shared per pattern text, two conversations waiting on
the same pattern collide. With ``exclusive_patterns`` (the default) the
newer wait replaces the older one and the older fiber stays parked until
shutdown; it is never resumed or signalled.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from .bus import Bus
from .config import FiberConfig
from .errors import (
    ProtocolMisuseError,
    WaitAbortedError,
    WaitCancelledError,
    WaitExpiredError,
    WaitInvalidatedError,
)
from .events import (
    FiberFinished,
    FiberFinishedProps,
    PatternBound,
    PatternProps,
    PatternUnbound,
    WaitInvalidated,
    WaitInvalidatedProps,
    WaitNoMatch,
    WaitNoMatchProps,
    WaitRegistered,
    WaitRegisteredProps,
    WaitReplaced,
    WaitReplacedProps,
    WaitResumed,
    WaitResumedProps,
    WaitStale,
    WaitStaleProps,
)
from .fiber import Fiber
from .message import Message
from .routing import PatternRouter, Template
from .waits import (
    Continuation,
    InvalidatePolicy,
    PatternBinder,
    PendingWait,
    ScopeKey,
    WaitOptions,
    WaitRegistry,
)

logger = logging.getLogger(__name__)

Scheduler = Callable[[Coroutine[Any, Any, None]], None]


async def report_finished(fiber: Fiber) -> None:
    """Publish fiber.finished once a driven fiber has ended."""
    if fiber.alive:
        return
    error = None if fiber.error is None else f"{type(fiber.error).__name__}: {fiber.error}"
    await Bus.publish(FiberFinished, FiberFinishedProps(fiber_id=fiber.id, error=error))


class FiberPlugin:
    """Suspension, resumption and invalidation of fiber-backed handlers."""

    def __init__(self, router: PatternRouter, config: FiberConfig | None = None) -> None:
        self.config = config or FiberConfig.from_env()
        self._registry = WaitRegistry(exclusive_patterns=self.config.exclusive_patterns)
        self._binder = PatternBinder(router, self.fiber_callback)
        self._templates: dict[str, Template] = {}
        # Continuations displaced by a pattern collision, parked for good
        self._orphans: list[Continuation] = []
        self._scheduler: Scheduler | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def registry(self) -> WaitRegistry:
        return self._registry

    @property
    def binder(self) -> PatternBinder:
        return self._binder

    @property
    def count(self) -> int:
        return len(self._registry)

    @property
    def orphans(self) -> list[Continuation]:
        return [c for c in self._orphans if c.fiber.alive]

    def pending(self) -> list[dict[str, Any]]:
        """Describe every pending wait."""
        return [wait.describe() for wait in self._registry.snapshot()]

    def set_scheduler(self, scheduler: Scheduler | None) -> None:
        """Route deferred work (timer expiries) into a dispatch stream.

        Without a scheduler, deferred work runs as a plain asyncio task.
        """
        self._scheduler = scheduler

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------

    async def wait_for(
        self,
        source: str,
        pattern: str,
        options: WaitOptions | dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> tuple[Message, dict[str, str]]:
        """Park the calling fiber until ``source`` sends a message matching ``pattern``.

        Args:
            source: Channel or user allowed to resume this wait
            pattern: Template the follow-up must match (see routing)
            options: WaitOptions or a dict of its fields; keyword
                arguments are merged on top

        Returns:
            The matching message and the parameters its template extracted

        Raises:
            ProtocolMisuseError: If called outside a fiber-backed handler
            WaitExpiredError: If a timed wait elapsed
            WaitInvalidatedError: If a next-message wait saw another message
            WaitCancelledError: If the wait was cancelled
            pydantic.ValidationError: If the options are invalid
        """
        fiber = Fiber.current()
        if fiber is None:
            raise ProtocolMisuseError(f"tried to yield the root context waiting for {pattern!r}")

        opts = self._coerce_options(options, kwargs)
        template = self._template(pattern, opts)

        continuation = Continuation(fiber)
        wait = PendingWait(
            source=source, pattern=template.pattern, options=opts, continuation=continuation
        )

        logger.debug(f"wait_for parks {fiber!r}: source={source}, pattern={pattern!r}")
        displaced = self._registry.add(wait)

        # Take the new reference before dropping displaced ones so a shared
        # rule is never torn down and reinstalled.
        if self._binder.acquire(wait.pattern, opts):
            await Bus.publish(PatternBound, PatternProps(pattern=wait.pattern))
        for old in displaced:
            await self._displace(old, wait)

        await Bus.publish(
            WaitRegistered,
            WaitRegisteredProps(
                wait_id=wait.id,
                fiber_id=fiber.id,
                source=source,
                pattern=wait.pattern,
                invalidate=opts.invalidate.value,
                timeout=opts.timeout,
            ),
        )
        # No await between arming and parking: the timer can only fire on a
        # parked fiber.
        if opts.invalidate is InvalidatePolicy.TIMED and self._registry.get(wait.key) is wait:
            timeout = opts.timeout or self.config.invalidate_after
            wait.timer = asyncio.get_running_loop().call_later(timeout, self._expire, wait.id)
        return await continuation.wait()

    def _coerce_options(
        self, options: WaitOptions | dict[str, Any] | None, extra: dict[str, Any]
    ) -> WaitOptions:
        if isinstance(options, WaitOptions):
            if not extra:
                return options
            options = options.model_dump()
        return WaitOptions.model_validate({**(options or {}), **extra})

    def _template(self, pattern: str, options: WaitOptions) -> Template:
        template = self._templates.get(pattern)
        if template is None or dict(template.defaults) != options.defaults:
            template = Template.parse(pattern, options.defaults)
            self._templates[pattern] = template
        return template

    async def _displace(self, old: PendingWait, new: PendingWait) -> None:
        old.disarm()
        self._release(old.pattern)
        self._orphans.append(old.continuation)
        logger.warning(
            f"Wait {old.id} ({old.source}, {old.pattern!r}) replaced by {new.id} "
            f"from {new.source}; {old.continuation.fiber!r} stays parked"
        )
        await Bus.publish(
            WaitReplaced,
            WaitReplacedProps(
                wait_id=old.id, replaced_by=new.id, source=old.source, pattern=old.pattern
            ),
        )

    # ------------------------------------------------------------------
    # Resumption
    # ------------------------------------------------------------------

    @staticmethod
    def scope_keys(message: Message, pattern: str) -> list[ScopeKey]:
        """Lookup order for a message: channel scope first, then sender."""
        keys: list[ScopeKey] = []
        if message.channel_scope is not None:
            keys.append((message.channel_scope, pattern))
        keys.append((message.sender_scope, pattern))
        return keys

    async def fiber_callback(self, message: Message, params: dict[str, str]) -> None:
        """Resume the fiber waiting for ``message``, if there is one.

        Installed by the binder as the handler for every wait pattern and
        invoked by the dispatcher from the root context.
        """
        pattern = message.template
        if pattern is None:
            logger.debug(f"Message {message.id} reached fiber_callback without a template")
            return

        wait = self._registry.take(self.scope_keys(message, pattern))
        if wait is None:
            logger.debug(f"No pending wait for {pattern!r} from {message.sender}/{message.channel}")
            await Bus.publish(
                WaitNoMatch,
                WaitNoMatchProps(
                    message_id=message.id,
                    pattern=pattern,
                    sender=message.sender,
                    channel=message.channel,
                ),
            )
            await self._diagnose(message, "no pending wait")
            return

        await self._retire(wait)
        continuation = wait.continuation
        if continuation.terminal or not continuation.fiber.parked:
            logger.warning(f"Stale wait {wait.id}: {continuation!r}, dropping {message.id}")
            await Bus.publish(
                WaitStale,
                WaitStaleProps(
                    wait_id=wait.id, message_id=message.id, state=continuation.state.value
                ),
            )
            await self._diagnose(message, "wait found but its fiber is no longer parked")
            return

        logger.debug(f"Resuming {continuation.fiber!r} for wait {wait.id} with {message.id}")
        await self._diagnose(message, f"resuming {continuation.fiber.name}")
        await Bus.publish(
            WaitResumed,
            WaitResumedProps(
                wait_id=wait.id,
                fiber_id=continuation.fiber.id,
                message_id=message.id,
                params=dict(params),
            ),
        )
        if not await continuation.resume(message, dict(params)):
            logger.warning(f"Continuation {continuation.id} was completed concurrently")
            return
        await report_finished(continuation.fiber)

    async def _diagnose(self, message: Message, text: str) -> None:
        if self.config.debug_replies:
            await message.reply(f"fiber: {text}")

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def observe(self, message: Message) -> int:
        """Apply next-message invalidation for an incoming message.

        Called by the dispatcher before routing. Every next-message wait from
        the message's channel or sender whose pattern the text does not match
        is invalidated.

        Returns:
            Number of waits invalidated
        """
        invalidated = 0
        for wait in self._registry.for_sources(message.channel_scope, message.sender_scope):
            if wait.policy is not InvalidatePolicy.NEXT_MESSAGE:
                continue
            if self._template(wait.pattern, wait.options).match(message.text) is not None:
                continue
            if self._registry.remove(wait.id) is None:
                continue
            await self._retire(wait)
            await self._abort(wait, WaitInvalidatedError(wait.id, wait.source, wait.pattern))
            invalidated += 1
        return invalidated

    def _expire(self, wait_id: str) -> None:
        """Timer callback for timed waits."""
        wait = self._registry.remove(wait_id)
        if wait is None:
            return
        wait.timer = None
        logger.info(f"Wait {wait.id} for {wait.pattern!r} from {wait.source} expired")
        if self._release(wait.pattern):
            Bus.publish_soon(PatternUnbound, PatternProps(pattern=wait.pattern))
        self._schedule(self._abort(wait, WaitExpiredError(wait.id, wait.source, wait.pattern)))

    async def cancel(self, wait_id: str) -> bool:
        """Cancel a pending wait; its wait_for() raises WaitCancelledError.

        Returns:
            True if the wait was pending, False if unknown or already gone
        """
        wait = self._registry.remove(wait_id)
        if wait is None:
            logger.debug(f"No pending wait {wait_id} to cancel")
            return False
        await self._retire(wait)
        await self._abort(wait, WaitCancelledError(wait.id, wait.source, wait.pattern))
        return True

    async def shutdown(self) -> int:
        """Cancel every pending wait and every orphaned fiber.

        Returns:
            Number of waits cancelled
        """
        waits = self._registry.drain()
        for wait in waits:
            await self._retire(wait)
            await self._abort(wait, WaitCancelledError(wait.id, wait.source, wait.pattern))

        for continuation in self._orphans:
            await continuation.fiber.cancel()
        self._orphans.clear()

        for task in list(self._tasks):
            task.cancel()
        return len(waits)

    async def _retire(self, wait: PendingWait) -> None:
        """Release what a removed wait holds: its timer and its rule reference."""
        wait.disarm()
        if self._release(wait.pattern):
            await Bus.publish(PatternUnbound, PatternProps(pattern=wait.pattern))

    def _release(self, pattern: str) -> bool:
        """Drop one rule reference, forgetting the parsed template with the last."""
        removed = self._binder.release(pattern)
        if self._binder.refcount(pattern) == 0:
            self._templates.pop(pattern, None)
        return removed

    async def _abort(self, wait: PendingWait, exc: WaitAbortedError) -> None:
        await Bus.publish(
            WaitInvalidated,
            WaitInvalidatedProps(
                wait_id=wait.id, source=wait.source, pattern=wait.pattern, reason=exc.reason
            ),
        )
        if not await wait.continuation.abort(exc):
            logger.warning(f"Wait {wait.id} already completed, not aborting")
            return
        await report_finished(wait.continuation.fiber)

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        if self._scheduler is not None:
            self._scheduler(coro)
            return
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
