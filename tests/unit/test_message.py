"""Unit tests for Message scopes and replies."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from fiber_runtime.message import Message


class TestMessageScopes:
    def test_channel_message(self) -> None:
        message = Message(sender="alice", text="hi", channel="#ops")

        assert message.channel_scope == "#ops"
        assert message.sender_scope == "alice"
        assert message.source == "#ops"
        assert message.is_private is False

    def test_private_query(self) -> None:
        message = Message(sender="alice", text="hi")

        assert message.channel_scope is None
        assert message.source == "alice"
        assert message.is_private is True

    def test_ids_are_unique(self) -> None:
        assert Message(sender="a", text="x").id != Message(sender="a", text="x").id
        assert Message(sender="a", text="x").id.startswith("msg_")


class TestMessageReply:
    @pytest.mark.asyncio
    async def test_reply_records_and_sends(self) -> None:
        reply_fn = AsyncMock()
        message = Message(sender="alice", text="hi", reply_fn=reply_fn)

        await message.reply("hello")

        assert message.replies == ["hello"]
        reply_fn.assert_awaited_once_with(message, "hello")

    @pytest.mark.asyncio
    async def test_reply_without_transport_is_recorded(self) -> None:
        message = Message(sender="alice", text="hi")

        await message.reply("hello")

        assert message.replies == ["hello"]
