"""Exceptions raised by the fiber runtime.

Only ``ProtocolMisuseError`` and the ``WaitAbortedError`` family ever reach
handler code. Missing or stale waits are reported on the bus and the log,
never raised.
"""

from __future__ import annotations


class FiberError(Exception):
    """Base class for all fiber runtime errors."""


class ProtocolMisuseError(FiberError):
    """wait_for() was called outside a fiber-backed handler.

    The root dispatch context can never be parked; calling wait_for() from
    it is a programming error and nothing is registered.
    """


class WaitAbortedError(FiberError):
    """A parked wait_for() call ended without a matching message."""

    reason = "aborted"

    def __init__(self, wait_id: str, source: str, pattern: str) -> None:
        self.wait_id = wait_id
        self.source = source
        self.pattern = pattern
        super().__init__(f"wait {wait_id} for {pattern!r} from {source} {self.reason}")


class WaitExpiredError(WaitAbortedError):
    """A timed wait elapsed before a matching message arrived."""

    reason = "expired"


class WaitInvalidatedError(WaitAbortedError):
    """A next-message wait saw a non-matching message from its source."""

    reason = "invalidated"


class WaitCancelledError(WaitAbortedError):
    """A wait was cancelled explicitly (shutdown or abort)."""

    reason = "cancelled"
