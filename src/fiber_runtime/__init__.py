"""Fiber runtime: parked conversational handlers for a chat dispatcher."""

from .bus import Bus
from .config import FiberConfig
from .dispatcher import Dispatcher
from .errors import (
    FiberError,
    ProtocolMisuseError,
    WaitAbortedError,
    WaitCancelledError,
    WaitExpiredError,
    WaitInvalidatedError,
)
from .fiber import Fiber, FiberState
from .message import Message
from .plugin import FiberPlugin
from .routing import MappingOptions, PatternRouter, Template, TemplateRouter
from .waits import (
    Continuation,
    ContinuationState,
    InvalidatePolicy,
    PatternBinder,
    PendingWait,
    WaitOptions,
    WaitRegistry,
)

__all__ = [
    "Bus",
    "Continuation",
    "ContinuationState",
    "Dispatcher",
    "Fiber",
    "FiberConfig",
    "FiberError",
    "FiberPlugin",
    "FiberState",
    "InvalidatePolicy",
    "MappingOptions",
    "Message",
    "PatternBinder",
    "PatternRouter",
    "PendingWait",
    "ProtocolMisuseError",
    "Template",
    "TemplateRouter",
    "WaitAbortedError",
    "WaitCancelledError",
    "WaitExpiredError",
    "WaitInvalidatedError",
    "WaitOptions",
    "WaitRegistry",
]
