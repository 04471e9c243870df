"""Tests for EntityExtractor."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from mnemos.errors import CompletionError
from mnemos.extractor import EXTRACTION_PROMPT, EntityExtractor


@pytest.fixture
def mock_llm() -> AsyncMock:
    """Create a mock completion client."""
    return AsyncMock()


@pytest.fixture
def extractor(mock_llm: AsyncMock) -> EntityExtractor:
    return EntityExtractor(mock_llm)


class TestEntityExtractorExtract:
    """Tests for the extract method."""

    @pytest.mark.asyncio
    async def test_empty_messages_returns_empty(
        self, extractor: EntityExtractor, mock_llm: AsyncMock
    ):
        result = await extractor.extract([])

        assert result.is_empty
        mock_llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_valid_extraction(self, extractor: EntityExtractor, mock_llm: AsyncMock):
        """Valid JSON response is parsed into entities and relations."""
        mock_llm.complete.return_value = (
            '{"entities": [{"type": "person", "label": "Sarah", "body": "Friend"}, '
            '{"type": "project", "label": "Northwind", "body": "A startup", "category": "core"}], '
            '"relations": [{"source": "Sarah", "target": "Northwind", "relation": "belongs_to"}]}'
        )

        result = await extractor.extract([{"role": "user", "content": "Sarah works at Northwind"}])

        assert [e.label for e in result.entities] == ["Sarah", "Northwind"]
        assert result.entities[0].type == "person"
        assert result.entities[0].body == "Friend"
        assert result.entities[0].category is None
        assert result.entities[1].category == "core"
        assert len(result.relations) == 1
        assert result.relations[0].source == "Sarah"
        assert result.relations[0].target == "Northwind"
        assert result.relations[0].relation == "belongs_to"

    @pytest.mark.asyncio
    async def test_sends_system_prompt_and_conversation(
        self, extractor: EntityExtractor, mock_llm: AsyncMock
    ):
        mock_llm.complete.return_value = '{"entities": [], "relations": []}'

        await extractor.extract(
            [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello!"},
            ]
        )

        mock_llm.complete.assert_awaited_once_with(
            "user: Hi\nassistant: Hello!", system=EXTRACTION_PROMPT
        )

    @pytest.mark.asyncio
    async def test_only_last_six_messages_sent(
        self, extractor: EntityExtractor, mock_llm: AsyncMock
    ):
        mock_llm.complete.return_value = "{}"
        messages = [{"role": "user", "content": f"message {i}"} for i in range(10)]

        await extractor.extract(messages)

        conversation = mock_llm.complete.call_args.args[0]
        assert conversation.splitlines() == [f"user: message {i}" for i in range(4, 10)]

    @pytest.mark.asyncio
    async def test_tool_turns_do_not_crowd_out_conversation(
        self, extractor: EntityExtractor, mock_llm: AsyncMock
    ):
        """Tool and system turns at the tail do not count toward the window."""
        mock_llm.complete.return_value = "{}"
        messages = [
            {"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i}"}
            for i in range(8)
        ]
        messages += [{"role": "tool", "content": "ok", "tool_call_id": str(i)} for i in range(6)]
        messages.append({"role": "system", "content": "reminder"})

        await extractor.extract(messages)

        conversation = mock_llm.complete.call_args.args[0]
        assert conversation.splitlines() == [
            f"{'user' if i % 2 == 0 else 'assistant'}: turn {i}" for i in range(2, 8)
        ]

    @pytest.mark.asyncio
    async def test_invalid_json_returns_empty(
        self, extractor: EntityExtractor, mock_llm: AsyncMock
    ):
        mock_llm.complete.return_value = "not valid json"

        result = await extractor.extract([{"role": "user", "content": "test"}])

        assert result.is_empty
        assert result.relations == []

    @pytest.mark.asyncio
    async def test_truncated_json_returns_empty(
        self, extractor: EntityExtractor, mock_llm: AsyncMock
    ):
        mock_llm.complete.return_value = '{"entities": [{"type": "person", "label": "Sa}'

        result = await extractor.extract([{"role": "user", "content": "test"}])

        assert result.is_empty

    @pytest.mark.asyncio
    async def test_json_inside_prose(self, extractor: EntityExtractor, mock_llm: AsyncMock):
        mock_llm.complete.return_value = (
            'Here is what I found:\n{"entities": [{"type": "concept", "label": "RAG"}]}\nDone.'
        )

        result = await extractor.extract([{"role": "user", "content": "test"}])

        assert [e.label for e in result.entities] == ["RAG"]
        assert result.entities[0].body == ""

    @pytest.mark.asyncio
    async def test_markdown_code_block_stripped(
        self, extractor: EntityExtractor, mock_llm: AsyncMock
    ):
        mock_llm.complete.return_value = (
            '```json\n{"entities": [{"type": "person", "label": "Lucas"}], "relations": []}\n```'
        )

        result = await extractor.extract([{"role": "user", "content": "test"}])

        assert [e.label for e in result.entities] == ["Lucas"]

    @pytest.mark.asyncio
    async def test_non_list_fields_become_empty(
        self, extractor: EntityExtractor, mock_llm: AsyncMock
    ):
        mock_llm.complete.return_value = '{"entities": "Sarah", "relations": {"a": 1}}'

        result = await extractor.extract([{"role": "user", "content": "test"}])

        assert result.entities == []
        assert result.relations == []

    @pytest.mark.asyncio
    async def test_invalid_items_skipped(self, extractor: EntityExtractor, mock_llm: AsyncMock):
        mock_llm.complete.return_value = (
            '{"entities": [{"type": "person", "label": "Sarah"}, "invalid", '
            '{"type": "person"}, {"label": "NoType"}, {"type": "event", "label": "  "}], '
            '"relations": [{"source": "Sarah", "target": "X", "relation": "related_to"}, '
            '{"source": "Sarah", "target": "X"}, 42]}'
        )

        result = await extractor.extract([{"role": "user", "content": "test"}])

        assert [e.label for e in result.entities] == ["Sarah"]
        assert len(result.relations) == 1

    @pytest.mark.asyncio
    async def test_completion_error_propagates(
        self, extractor: EntityExtractor, mock_llm: AsyncMock
    ):
        mock_llm.complete.side_effect = CompletionError("API error")

        with pytest.raises(CompletionError):
            await extractor.extract([{"role": "user", "content": "test"}])

    @pytest.mark.asyncio
    async def test_timeout_raises_completion_error(self, mock_llm: AsyncMock):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return "{}"

        mock_llm.complete.side_effect = slow
        extractor = EntityExtractor(mock_llm, timeout=0.01)

        with pytest.raises(CompletionError, match="timed out"):
            await extractor.extract([{"role": "user", "content": "test"}])


class TestEntityExtractorFormatConversation:
    """Tests for conversation formatting."""

    def test_roles_prefixed(self, extractor: EntityExtractor):
        result = extractor._format_conversation(
            [{"role": "user", "content": "Hola"}, {"role": "assistant", "content": "Hi!"}]
        )
        assert result == "user: Hola\nassistant: Hi!"

    def test_system_and_tool_messages_skipped(self, extractor: EntityExtractor):
        messages = [
            {"role": "system", "content": "You are a helpful assistant"},
            {"role": "tool", "content": "result", "tool_call_id": "123"},
            {"role": "user", "content": "Hola"},
        ]
        assert extractor._format_conversation(messages) == "user: Hola"

    def test_empty_content_skipped(self, extractor: EntityExtractor):
        messages = [{"role": "assistant", "content": None}, {"role": "user", "content": "x"}]
        assert extractor._format_conversation(messages) == "user: x"
