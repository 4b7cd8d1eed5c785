"""OpenAI-compatible provider.

Works with OpenRouter (the default base URL), OpenAI cloud, Ollama, vLLM,
llama.cpp server, LM Studio, or any server implementing the OpenAI chat
completions API.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from typing import Any

import openai

from . import LLMResponse, Usage, iterate_in_thread

log = logging.getLogger(__name__)


def _message_text(content: Any) -> str:
    """Reply content may be a string or a list of text parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list) and content:
        first = content[0]
        if isinstance(first, dict):
            return first.get("text", "") or ""
        return getattr(first, "text", "") or ""
    return ""


class OpenAICompatProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        base_url: str = "",
    ):
        kwargs: dict = {"api_key": api_key or "not-needed"}
        if base_url:
            kwargs["base_url"] = base_url
        self.client = openai.OpenAI(**kwargs)
        self.model = model
        self.max_tokens = max_tokens

    def format_messages(self, system: str, messages: list[dict]) -> list[dict]:
        result = []
        if system:
            result.append({"role": "system", "content": system})
        for msg in messages:
            result.append({"role": msg["role"], "content": msg.get("content", "")})
        return result

    def _params(self, system: str, messages: list[dict]) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": self.format_messages(system, messages),
            "max_tokens": self.max_tokens,
        }

    async def complete(self, system: str, messages: list[dict]) -> LLMResponse:
        """Call the chat completions API."""
        response = await asyncio.to_thread(
            self.client.chat.completions.create, **self._params(system, messages)
        )

        text = ""
        stop = "end_turn"
        if response.choices:
            choice = response.choices[0]
            text = _message_text(choice.message.content)
            if choice.finish_reason == "length":
                stop = "max_tokens"

        u = response.usage
        usage = Usage(
            input_tokens=u.prompt_tokens if u else 0,
            output_tokens=u.completion_tokens if u else 0,
        )
        return LLMResponse(
            text=text,
            usage=usage,
            model=getattr(response, "model", "") or self.model,
            stop_reason=stop,
            raw=response,
        )

    def _iter_chunks(self, system: str, messages: list[dict]) -> Iterator[str]:
        stream = self.client.chat.completions.create(
            stream=True, **self._params(system, messages),
        )
        for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta

    async def stream(self, system: str, messages: list[dict]) -> AsyncIterator[str]:
        async for chunk in iterate_in_thread(lambda: self._iter_chunks(system, messages)):
            yield chunk
