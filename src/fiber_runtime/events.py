"""Event type definitions.

Diagnostics published by the fiber plugin and the dispatcher.
"""

from pydantic import BaseModel

from .bus import Bus

# =============================================================================
# Fiber Events
# =============================================================================


class FiberSpawnedProps(BaseModel):
    """A fiber-backed handler was started for a message."""

    fiber_id: str
    pattern: str
    message_id: str


class FiberFinishedProps(BaseModel):
    """A fiber ran to completion (or failed) and will never park again."""

    fiber_id: str
    error: str | None = None


FiberSpawned = Bus.define("fiber.spawned", FiberSpawnedProps)
FiberFinished = Bus.define("fiber.finished", FiberFinishedProps)


# =============================================================================
# Wait Events
# =============================================================================


class WaitRegisteredProps(BaseModel):
    """A handler parked in wait_for()."""

    wait_id: str
    fiber_id: str
    source: str
    pattern: str
    invalidate: str
    timeout: float | None = None


class WaitReplacedProps(BaseModel):
    """A newer wait displaced an older one; the old fiber stays parked."""

    wait_id: str
    replaced_by: str
    source: str
    pattern: str


class WaitResumedProps(BaseModel):
    """A pending wait matched a message and its fiber was resumed."""

    wait_id: str
    fiber_id: str
    message_id: str
    params: dict[str, str]


class WaitNoMatchProps(BaseModel):
    """A message reached the resume callback but no wait was pending for it."""

    message_id: str
    pattern: str
    sender: str
    channel: str | None = None


class WaitStaleProps(BaseModel):
    """A wait was found whose continuation had already completed."""

    wait_id: str
    message_id: str
    state: str


class WaitInvalidatedProps(BaseModel):
    """A wait was given up without a matching message."""

    wait_id: str
    source: str
    pattern: str
    reason: str  # "expired" | "invalidated" | "cancelled"


WaitRegistered = Bus.define("wait.registered", WaitRegisteredProps)
WaitReplaced = Bus.define("wait.replaced", WaitReplacedProps)
WaitResumed = Bus.define("wait.resumed", WaitResumedProps)
WaitNoMatch = Bus.define("wait.no_match", WaitNoMatchProps)
WaitStale = Bus.define("wait.stale", WaitStaleProps)
WaitInvalidated = Bus.define("wait.invalidated", WaitInvalidatedProps)


# =============================================================================
# Pattern Events
# =============================================================================


class PatternProps(BaseModel):
    """A wait pattern routing rule was installed or removed."""

    pattern: str


PatternBound = Bus.define("pattern.bound", PatternProps)
PatternUnbound = Bus.define("pattern.unbound", PatternProps)
