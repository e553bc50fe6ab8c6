"""Chat messages as seen by handlers.

A message knows who sent it (sender scope), where (channel scope, ``None``
for a private query), which pattern routed it and the parameters the
pattern extracted.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ReplyFn = Callable[["Message", str], Awaitable[None]]


@dataclass
class Message:
    """An incoming chat line."""

    sender: str
    text: str
    channel: str | None = None
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")

    # Set by the router once a pattern matched
    template: str | None = None
    params: dict[str, str] = field(default_factory=dict)

    reply_fn: ReplyFn | None = field(default=None, repr=False, compare=False)
    replies: list[str] = field(default_factory=list, repr=False, compare=False)

    @property
    def channel_scope(self) -> str | None:
        return self.channel

    @property
    def sender_scope(self) -> str:
        return self.sender

    @property
    def source(self) -> str:
        """Scope a follow-up should come from: the channel, else the sender."""
        return self.channel if self.channel is not None else self.sender

    @property
    def is_private(self) -> bool:
        return self.channel is None

    async def reply(self, text: str) -> None:
        """Answer in the same channel (or query) the message came from."""
        self.replies.append(text)
        if self.reply_fn is None:
            logger.debug(f"No reply function for {self.id}, dropping reply: {text}")
            return
        await self.reply_fn(self, text)
