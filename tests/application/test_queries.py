"""Unit tests for the read-side query handlers.

Tests cover:
- Active path of a conversation
- Single message lookup scoped to its conversation
- Tool catalogue with source filtering
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from application.queries import GetActivePathQuery, GetActivePathQueryHandler, GetMessageQuery, GetMessageQueryHandler, GetToolsQuery, GetToolsQueryHandler
from tests.fixtures.factories import MessageFactory


class TestGetActivePathQuery:
    @pytest.mark.asyncio
    async def test_returns_path(self, message_store):
        for message in MessageFactory.chain(texts=("q1", "a1")):
            await message_store.append_async(message)
        handler = GetActivePathQueryHandler(message_store=message_store)

        result = await handler.handle_async(GetActivePathQuery(conversation_id="conv-1"))

        assert result.is_success
        assert [message["role"] for message in result.data] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, message_store):
        handler = GetActivePathQueryHandler(message_store=message_store)

        result = await handler.handle_async(GetActivePathQuery(conversation_id="missing"))

        assert not result.is_success

    @pytest.mark.asyncio
    async def test_store_failure(self):
        store = MagicMock()
        store.read_active_path_async = AsyncMock(side_effect=RuntimeError("mongo down"))
        handler = GetActivePathQueryHandler(message_store=store)

        result = await handler.handle_async(GetActivePathQuery(conversation_id="conv-1"))

        assert not result.is_success


class TestGetMessageQuery:
    @pytest.mark.asyncio
    async def test_found(self, message_store):
        message = MessageFactory.user()
        await message_store.append_async(message)
        handler = GetMessageQueryHandler(message_store=message_store)

        result = await handler.handle_async(GetMessageQuery(conversation_id="conv-1", message_id=message.id))

        assert result.is_success
        assert result.data["id"] == message.id

    @pytest.mark.asyncio
    async def test_other_conversation_not_found(self, message_store):
        message = MessageFactory.user(conversation_id="conv-2")
        await message_store.append_async(message)
        handler = GetMessageQueryHandler(message_store=message_store)

        result = await handler.handle_async(GetMessageQuery(conversation_id="conv-1", message_id=message.id))

        assert not result.is_success


class TestGetToolsQuery:
    @pytest.mark.asyncio
    async def test_lists_tools(self, tool_registry):
        handler = GetToolsQueryHandler(tool_registry=tool_registry)

        result = await handler.handle_async(GetToolsQuery())

        assert result.is_success
        weather = next(tool for tool in result.data if tool["name"] == "get_weather")
        assert weather["parameters"]["required"] == ["city"]
        assert weather["source"] == "static"

    @pytest.mark.asyncio
    async def test_filter_by_source(self, tool_registry):
        handler = GetToolsQueryHandler(tool_registry=tool_registry)

        result = await handler.handle_async(GetToolsQuery(source="weather-server"))

        assert result.is_success
        assert result.data == []
