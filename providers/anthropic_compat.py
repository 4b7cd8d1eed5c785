"""Anthropic-compatible provider.

Works with any model accessible through the Anthropic Messages API.
System messages inside the conversation are folded into the system
prompt, since the Messages API only accepts user/assistant turns.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from typing import Any

import anthropic

from . import LLMResponse, Usage, iterate_in_thread

log = logging.getLogger(__name__)


class AnthropicCompatProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        base_url: str = "",
    ):
        if base_url:
            self.client = anthropic.Anthropic(api_key=api_key, base_url=base_url)
        else:
            self.client = anthropic.Anthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens

    def format_messages(self, system: str, messages: list[dict]) -> tuple[str, list[dict]]:
        """Split into (system text, user/assistant turns)."""
        system_parts = [system] if system else []
        result = []
        for msg in messages:
            role = msg.get("role", "")
            content = msg.get("content", "")
            if role == "system":
                if content:
                    system_parts.append(content)
            elif role in ("user", "assistant"):
                result.append({"role": role, "content": content})
        return "\n\n".join(system_parts), result

    def _params(self, system: str, messages: list[dict]) -> dict[str, Any]:
        sys_text, api_messages = self.format_messages(system, messages)
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": api_messages,
        }
        if sys_text:
            params["system"] = sys_text
        return params

    async def complete(self, system: str, messages: list[dict]) -> LLMResponse:
        """Call Anthropic Messages API."""
        response = await asyncio.to_thread(
            self.client.messages.create, **self._params(system, messages)
        )

        text_parts = [block.text for block in response.content if block.type == "text"]
        usage = Usage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return LLMResponse(
            text="\n".join(text_parts),
            usage=usage,
            model=getattr(response, "model", "") or self.model,
            stop_reason="max_tokens" if response.stop_reason == "max_tokens" else "end_turn",
            raw=response,
        )

    def _iter_chunks(self, system: str, messages: list[dict]) -> Iterator[str]:
        with self.client.messages.stream(**self._params(system, messages)) as stream:
            yield from stream.text_stream

    async def stream(self, system: str, messages: list[dict]) -> AsyncIterator[str]:
        async for chunk in iterate_in_thread(lambda: self._iter_chunks(system, messages)):
            yield chunk
