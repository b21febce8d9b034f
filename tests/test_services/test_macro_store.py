"""Tests for the macro store."""

import pytest

from calendar_bot.services.macro_store import MacroStore
from calendar_bot.utils.errors import MacroNotFoundError


@pytest.fixture
def macros(session_factory):
    return MacroStore(session_factory)


class TestMacroStore:
    """Test suite for MacroStore."""

    async def test_create_and_get(self, macros):
        assert await macros.create("team", "conv-1", False, "standup", "Standup at 9:30")

        assert await macros.get("team", "conv-2", "standup") == "Standup at 9:30"

    async def test_create_overwrites(self, macros):
        await macros.create("team", "conv-1", False, "standup", "Standup at 9:30")

        assert not await macros.create("team", "conv-1", False, "standup", "Standup at 10:00")
        assert await macros.get("team", "conv-1", "standup") == "Standup at 10:00"

    async def test_conversation_macro_shadows_channel_macro(self, macros):
        await macros.create("team", "conv-1", False, "standup", "channel")
        await macros.create("team", "conv-1", True, "standup", "conversation")

        assert await macros.get("team", "conv-1", "standup") == "conversation"
        assert await macros.get("team", "conv-2", "standup") == "channel"

    async def test_missing_macro(self, macros):
        with pytest.raises(MacroNotFoundError):
            await macros.get("team", "conv-1", "nope")

    async def test_list(self, macros):
        await macros.create("team", "conv-1", False, "standup", "channel")
        await macros.create("team", "conv-1", True, "retro", "conversation")
        await macros.create("other", "conv-9", False, "lunch", "elsewhere")

        entries = await macros.list("team", "conv-1")

        assert sorted((e.name, e.is_conv) for e in entries) == [("retro", True), ("standup", False)]

    async def test_remove_prefers_conversation_scope(self, macros):
        await macros.create("team", "conv-1", False, "standup", "channel")
        await macros.create("team", "conv-1", True, "standup", "conversation")

        assert await macros.remove("team", "conv-1", "standup")
        assert await macros.get("team", "conv-1", "standup") == "channel"
        assert await macros.remove("team", "conv-1", "standup")
        assert not await macros.remove("team", "conv-1", "standup")
