"""
model_client.py
---------------
AgentForge — Claims Automation Engine — Model invocation client
----------------------------------------------------------------
Default ModelInvocationClient: sends one prompt (optionally with images) to
an Anthropic model through langchain-anthropic and returns a ModelResponse
carrying the text and the token usage the recorder prices.

The client does not cache, dedupe, time out or record anything — those
concerns belong to ai_control.AIControl, which wraps every call made here.

Key functions:
    AnthropicModelClient.generate: One async model call → ModelResponse.
    parse_json_content: Strip markdown fences and decode a JSON reply.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage

from schemas import ModelResponse

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 2048


class ModelInvocationError(Exception):
    """Raised when the model provider call fails or returns nothing usable."""


def _human_content(prompt: str, images: Optional[List[str]]) -> Any:
    if not images:
        return prompt
    blocks: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
    for url in images:
        blocks.append({"type": "image_url", "image_url": {"url": url}})
    return blocks


def _text_of(content: Any) -> str:
    """Flatten a message content (str or list of blocks) to plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content)


def parse_json_content(text: str) -> Dict[str, Any]:
    """
    Decode a JSON object from a model reply, tolerating ```json fences.

    Args:
        text: Raw model output.

    Returns:
        dict: Decoded object, or {"text": text} when the reply is not a JSON object.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("```")[1]
        if cleaned.startswith("json"):
            cleaned = cleaned[4:]
    cleaned = cleaned.strip()
    try:
        out = json.loads(cleaned)
    except json.JSONDecodeError:
        return {"text": text.strip()}
    return out if isinstance(out, dict) else {"text": text.strip()}


class AnthropicModelClient:
    """
    Async Anthropic client built on langchain-anthropic's ChatAnthropic.

    Args:
        api_key: Anthropic key; defaults to ANTHROPIC_API_KEY.
        temperature: Sampling temperature; 0 keeps cached outputs meaningful.
        max_tokens: Default completion budget per call.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _llm(self, model: str, max_tokens: Optional[int]) -> ChatAnthropic:
        return ChatAnthropic(
            model=model,
            anthropic_api_key=self.api_key,
            temperature=self.temperature,
            max_tokens=max_tokens or self.max_tokens,
        )

    async def generate(
        self,
        model: str,
        prompt: str,
        *,
        system: Optional[str] = None,
        images: Optional[List[str]] = None,
        max_tokens: Optional[int] = None,
    ) -> ModelResponse:
        """
        Send one prompt to *model*.

        Args:
            model: Anthropic model id chosen by the model selector.
            prompt: User prompt text.
            system: Optional system prompt.
            images: Optional image URLs (https or data: URLs) for vision calls.
            max_tokens: Completion budget override.

        Returns:
            ModelResponse: content text, model id, and token usage.

        Raises:
            ModelInvocationError: if the provider call fails.
        """
        messages: List[Any] = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=_human_content(prompt, images)))

        try:
            response = await self._llm(model, max_tokens).ainvoke(messages)
        except Exception as exc:
            raise ModelInvocationError(f"{model} call failed: {exc}") from exc

        usage = getattr(response, "usage_metadata", None) or {}
        content = _text_of(getattr(response, "content", response))
        logger.debug(
            "Model %s replied (%d chars, tokens %s/%s).",
            model, len(content), usage.get("input_tokens", 0), usage.get("output_tokens", 0),
        )
        return ModelResponse(
            content=content,
            model=model,
            tokens_in=int(usage.get("input_tokens") or 0),
            tokens_out=int(usage.get("output_tokens") or 0),
        )
