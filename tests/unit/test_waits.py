"""Unit tests for wait options, continuations, the registry and the binder."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from fiber_runtime.fiber import Fiber
from fiber_runtime.message import Message
from fiber_runtime.routing import TemplateRouter
from fiber_runtime.waits import (
    Continuation,
    ContinuationState,
    InvalidatePolicy,
    PatternBinder,
    PendingWait,
    WaitOptions,
    WaitRegistry,
)


def make_wait(source: str, pattern: str, **options) -> PendingWait:
    return PendingWait(
        source=source,
        pattern=pattern,
        options=WaitOptions(**options),
        continuation=MagicMock(),
    )


# =============================================================================
# WaitOptions Tests
# =============================================================================


class TestWaitOptions:
    def test_defaults_to_timed(self) -> None:
        options = WaitOptions()

        assert options.invalidate is InvalidatePolicy.TIMED
        assert options.timeout is None

    def test_accepts_policy_strings(self) -> None:
        options = WaitOptions.model_validate({"invalidate": "next_message"})

        assert options.invalidate is InvalidatePolicy.NEXT_MESSAGE

    def test_rejects_unknown_policy(self) -> None:
        with pytest.raises(ValidationError):
            WaitOptions.model_validate({"invalidate": "never"})

    def test_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValidationError):
            WaitOptions(timeout=0)

    def test_rejects_dispatch_flags(self) -> None:
        """fiber/threaded belong to the binder, not to callers."""
        with pytest.raises(ValidationError):
            WaitOptions.model_validate({"fiber": True})
        with pytest.raises(ValidationError):
            WaitOptions.model_validate({"threaded": True})


# =============================================================================
# Continuation Tests
# =============================================================================


class TestContinuation:
    """A continuation accepts exactly one result."""

    @pytest.mark.asyncio
    async def test_resume_once(self) -> None:
        received: list[tuple[Message, dict[str, str]]] = []
        holder: list[Continuation] = []

        async def body() -> None:
            continuation = Continuation(Fiber.current())
            holder.append(continuation)
            received.append(await continuation.wait())

        await Fiber(body).start()
        continuation = holder[0]
        message = Message(sender="alice", text="yes")

        assert await continuation.resume(message, {"a": "1"}) is True
        assert continuation.state is ContinuationState.RESUMED
        assert received == [(message, {"a": "1"})]

        assert await continuation.resume(message, {"a": "2"}) is False
        assert await continuation.abort(RuntimeError("late")) is False
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_abort_raises_in_fiber(self) -> None:
        errors: list[BaseException] = []
        holder: list[Continuation] = []

        async def body() -> None:
            continuation = Continuation(Fiber.current())
            holder.append(continuation)
            try:
                await continuation.wait()
            except LookupError as e:
                errors.append(e)

        await Fiber(body).start()
        continuation = holder[0]

        assert await continuation.abort(LookupError("gone")) is True
        assert continuation.state is ContinuationState.INVALIDATED
        assert continuation.terminal is True
        assert [str(e) for e in errors] == ["gone"]
        assert await continuation.resume(Message(sender="a", text="x"), {}) is False

    @pytest.mark.asyncio
    async def test_abort_before_park_is_raised_at_park(self) -> None:
        errors: list[BaseException] = []
        delivered: list[bool] = []

        async def body() -> None:
            continuation = Continuation(Fiber.current())
            delivered.append(await asyncio.create_task(continuation.abort(LookupError("early"))))
            try:
                await continuation.wait()
            except LookupError as e:
                errors.append(e)

        fiber = Fiber(body)
        await asyncio.wait_for(fiber.start(), timeout=1)

        assert delivered == [True]
        assert [str(e) for e in errors] == ["early"]
        assert fiber.alive is False

    @pytest.mark.asyncio
    async def test_resume_before_park_is_refused(self) -> None:
        holder: list[Continuation] = []
        early: list[bool] = []
        received: list[tuple[Message, dict[str, str]]] = []
        message = Message(sender="alice", text="yes")

        async def body() -> None:
            continuation = Continuation(Fiber.current())
            holder.append(continuation)
            early.append(await asyncio.create_task(continuation.resume(message, {})))
            received.append(await continuation.wait())

        await Fiber(body).start()

        assert early == [False]
        assert holder[0].state is ContinuationState.SUSPENDED
        assert await holder[0].resume(message, {"late": "1"}) is True
        assert received == [(message, {"late": "1"})]


# =============================================================================
# WaitRegistry Tests
# =============================================================================


class TestWaitRegistry:
    def test_add_and_get(self) -> None:
        registry = WaitRegistry()
        wait = make_wait("alice", "yes")

        assert registry.add(wait) == []
        assert registry.get(("alice", "yes")) is wait
        assert len(registry) == 1

    def test_same_key_is_replaced(self) -> None:
        registry = WaitRegistry(exclusive_patterns=False)
        first = make_wait("alice", "yes")
        second = make_wait("alice", "yes")

        registry.add(first)

        assert registry.add(second) == [first]
        assert registry.get(("alice", "yes")) is second
        assert len(registry) == 1

    def test_exclusive_pattern_displaces_other_sources(self) -> None:
        registry = WaitRegistry(exclusive_patterns=True)
        first = make_wait("#ops", "more")
        second = make_wait("bob", "more")

        registry.add(first)

        assert registry.add(second) == [first]
        assert registry.get(("#ops", "more")) is None
        assert registry.get(("bob", "more")) is second

    def test_shared_pattern_keeps_other_sources(self) -> None:
        registry = WaitRegistry(exclusive_patterns=False)
        first = make_wait("#ops", "more")
        second = make_wait("bob", "more")

        registry.add(first)

        assert registry.add(second) == []
        assert len(registry) == 2

    def test_different_patterns_coexist_when_exclusive(self) -> None:
        registry = WaitRegistry(exclusive_patterns=True)
        registry.add(make_wait("alice", "yes"))
        registry.add(make_wait("alice", "no"))

        assert len(registry) == 2

    def test_take_follows_key_order_and_removes(self) -> None:
        registry = WaitRegistry(exclusive_patterns=False)
        channel = make_wait("#ops", "more")
        sender = make_wait("alice", "more")
        registry.add(sender)
        registry.add(channel)

        taken = registry.take([("#ops", "more"), ("alice", "more")])

        assert taken is channel
        assert registry.take([("#ops", "more")]) is None
        assert registry.take([("#ops", "more"), ("alice", "more")]) is sender
        assert len(registry) == 0

    def test_remove_by_id(self) -> None:
        registry = WaitRegistry()
        wait = make_wait("alice", "yes")
        registry.add(wait)

        assert registry.remove(wait.id) is wait
        assert registry.remove(wait.id) is None

    def test_remove_does_not_touch_replacement(self) -> None:
        registry = WaitRegistry()
        old = make_wait("alice", "yes")
        new = make_wait("alice", "yes")
        registry.add(old)
        registry.add(new)

        assert registry.remove(old.id) is None
        assert registry.get(("alice", "yes")) is new

    def test_for_sources(self) -> None:
        registry = WaitRegistry()
        a = make_wait("alice", "yes")
        b = make_wait("#ops", "no")
        registry.add(a)
        registry.add(b)
        registry.add(make_wait("bob", "maybe"))

        assert registry.for_sources("#ops", "alice") == [a, b]
        assert registry.for_sources(None, "carol") == []

    def test_drain(self) -> None:
        registry = WaitRegistry()
        registry.add(make_wait("alice", "yes"))
        registry.add(make_wait("bob", "no"))

        assert len(registry.drain()) == 2
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_disarm_cancels_timer(self) -> None:
        wait = make_wait("alice", "yes")
        fired: list[bool] = []
        wait.timer = asyncio.get_running_loop().call_later(0.01, fired.append, True)

        wait.disarm()
        await asyncio.sleep(0.05)

        assert fired == []
        assert wait.timer is None


# =============================================================================
# PatternBinder Tests
# =============================================================================


class TestPatternBinder:
    """Rules are shared per pattern and removed with the last reference."""

    def test_first_acquire_registers_rule(self) -> None:
        router = TemplateRouter()
        callback = AsyncMock()
        binder = PatternBinder(router, callback)

        assert binder.acquire("page_to :page", WaitOptions()) is True

        mapping = router.get("page_to :page")
        assert mapping is not None
        assert mapping.handler is callback
        assert mapping.options.fiber is False
        assert mapping.options.threaded is False

    def test_rule_shared_until_last_release(self) -> None:
        router = TemplateRouter()
        binder = PatternBinder(router, AsyncMock())

        binder.acquire("more", WaitOptions())
        assert binder.acquire("more", WaitOptions()) is False
        assert binder.refcount("more") == 2

        assert binder.release("more") is False
        assert router.has_pattern("more") is True

        assert binder.release("more") is True
        assert router.has_pattern("more") is False
        assert binder.refcount("more") == 0

    def test_foreign_pattern_is_left_alone(self) -> None:
        router = TemplateRouter()
        other = AsyncMock()
        router.map("help", other)
        binder = PatternBinder(router, AsyncMock())

        assert binder.acquire("help", WaitOptions()) is False
        assert binder.is_bound("help") is False
        assert binder.release("help") is False
        assert router.get("help").handler is other

    def test_release_without_reference(self) -> None:
        binder = PatternBinder(TemplateRouter(), AsyncMock())

        assert binder.release("nothing") is False

    def test_defaults_pass_through_to_rule(self) -> None:
        router = TemplateRouter()
        binder = PatternBinder(router, AsyncMock())

        binder.acquire("more :count", WaitOptions(defaults={"count": "3"}))

        assert router.match("more").params == {"count": "3"}
