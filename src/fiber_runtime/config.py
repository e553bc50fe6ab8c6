"""Runtime configuration.

Values come from keyword arguments or from ``FIBER_*`` environment
variables:

    FIBER_INVALIDATE_AFTER    seconds before a timed wait expires (default 60)
    FIBER_EXCLUSIVE_PATTERNS  one live wait per pattern text (default on)
    FIBER_DEBUG_REPLIES       echo resume diagnostics into the conversation
    FIBER_QUEUE_SIZE          dispatcher queue bound, 0 = unbounded
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_INVALIDATE_AFTER = 60.0

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning(f"Ignoring unrecognised value {raw!r} for {name}")
    return default


def _env_number(name: str, default: float, cast: type = float) -> Any:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric value {raw!r} for {name}")
        return default


@dataclass
class FiberConfig:
    """Settings shared by the plugin and the dispatcher."""

    invalidate_after: float = DEFAULT_INVALIDATE_AFTER
    # One live wait per pattern text. When off, waits are keyed purely by
    # (source, pattern) and several sources may wait on the same pattern.
    exclusive_patterns: bool = True
    debug_replies: bool = False
    queue_size: int = 0

    def __post_init__(self) -> None:
        if self.invalidate_after <= 0:
            raise ValueError(f"invalidate_after must be positive, got {self.invalidate_after}")
        if self.queue_size < 0:
            raise ValueError(f"queue_size must be >= 0, got {self.queue_size}")

    @classmethod
    def from_env(cls, **overrides: Any) -> FiberConfig:
        """Build a config from the environment, explicit overrides winning."""
        values: dict[str, Any] = {
            "invalidate_after": _env_number("FIBER_INVALIDATE_AFTER", DEFAULT_INVALIDATE_AFTER),
            "exclusive_patterns": _env_flag("FIBER_EXCLUSIVE_PATTERNS", True),
            "debug_replies": _env_flag("FIBER_DEBUG_REPLIES", False),
            "queue_size": _env_number("FIBER_QUEUE_SIZE", 0, int),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
