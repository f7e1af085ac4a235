"""
test_model_client.py
--------------------
AgentForge — Claims Automation Engine — Tests for the Anthropic model client
-----------------------------------------------------------------------------
ChatAnthropic is patched out; no live API calls.

Run: pytest tests/test_model_client.py -v --tb=short

Project: AgentForge — Claims Automation Engine
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from model_client import AnthropicModelClient, ModelInvocationError, parse_json_content


def _reply(content, input_tokens=120, output_tokens=40):
    message = MagicMock()
    message.content = content
    message.usage_metadata = {"input_tokens": input_tokens, "output_tokens": output_tokens}
    return message


class TestGenerate:
    def test_returns_content_and_usage(self):
        """Text and token usage come back in a ModelResponse."""
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=_reply('{"summary": "ok"}'))
        with patch("model_client.ChatAnthropic", return_value=llm) as chat:
            response = asyncio.run(
                AnthropicModelClient(api_key="k").generate("claude-haiku-4-5", "prompt", system="sys")
            )

        assert response.content == '{"summary": "ok"}'
        assert response.model == "claude-haiku-4-5"
        assert (response.tokens_in, response.tokens_out) == (120, 40)
        assert chat.call_args.kwargs["model"] == "claude-haiku-4-5"
        messages = llm.ainvoke.call_args.args[0]
        assert isinstance(messages[0], SystemMessage)
        assert isinstance(messages[1], HumanMessage)

    def test_images_sent_as_blocks(self):
        """Image URLs are attached as image_url content blocks."""
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=_reply([{"type": "text", "text": "seen"}]))
        with patch("model_client.ChatAnthropic", return_value=llm):
            response = asyncio.run(
                AnthropicModelClient(api_key="k").generate("m", "describe", images=["https://x/roof.jpg"])
            )
        content = llm.ainvoke.call_args.args[0][0].content
        assert content[1] == {"type": "image_url", "image_url": {"url": "https://x/roof.jpg"}}
        assert response.content == "seen"

    def test_provider_error_wrapped(self):
        """Provider exceptions surface as ModelInvocationError."""
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("529 overloaded"))
        with patch("model_client.ChatAnthropic", return_value=llm):
            with pytest.raises(ModelInvocationError):
                asyncio.run(AnthropicModelClient(api_key="k").generate("m", "p"))


class TestParseJsonContent:
    def test_plain_json(self):
        """A bare JSON object decodes."""
        assert parse_json_content('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        """```json fences are stripped."""
        assert parse_json_content('```json\n{"a": 1}\n```') == {"a": 1}

    def test_non_json_wrapped(self):
        """Prose comes back under a text key."""
        assert parse_json_content("Not JSON.") == {"text": "Not JSON."}

    def test_non_object_wrapped(self):
        """A JSON array is not an artifact object."""
        assert parse_json_content("[1, 2]") == {"text": "[1, 2]"}
