"""LLM provider interface and shared types.

Defines the contract between the gateway pipeline and any model
backend. The gateway only ever sees role/content message lists going
in and assistant text (or text chunks) coming out.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from typing import Any, Protocol

log = logging.getLogger(__name__)

_STREAM_DONE = object()


class CollaboratorError(Exception):
    """The model backend failed. str(e) is safe to show to a client."""


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    text: str
    usage: Usage
    model: str = ""
    stop_reason: str = "end_turn"  # "end_turn" | "max_tokens"
    raw: Any = None


class LLMProvider(Protocol):
    """Protocol for LLM provider implementations."""

    model: str

    async def complete(self, system: str, messages: list[dict]) -> LLMResponse:
        """Send the conversation, return the full reply."""
        ...

    def stream(self, system: str, messages: list[dict]) -> AsyncIterator[str]:
        """Send the conversation, yield reply text as it arrives."""
        ...


async def iterate_in_thread(factory: Callable[[], Iterator[str]]) -> AsyncIterator[str]:
    """Drive a blocking SDK iterator in a worker thread.

    Chunks cross into the event loop through an asyncio.Queue, so other
    connections keep being served while the model is generating.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def _produce() -> None:
        try:
            for chunk in factory():
                loop.call_soon_threadsafe(queue.put_nowait, chunk)
        except Exception as e:  # noqa: BLE001, re-raised on the consumer side
            loop.call_soon_threadsafe(queue.put_nowait, e)
        finally:
            loop.call_soon_threadsafe(queue.put_nowait, _STREAM_DONE)

    producer = asyncio.create_task(asyncio.to_thread(_produce))
    try:
        while True:
            item = await queue.get()
            if item is _STREAM_DONE:
                break
            if isinstance(item, Exception):
                raise item
            yield item
    finally:
        await producer


class ModelClient:
    """Binds a provider to the configured system prompt.

    This is the model-call collaborator the gateway talks to. Any
    provider failure surfaces as CollaboratorError.
    """

    def __init__(self, provider: LLMProvider, system_prompt: str = ""):
        self.provider = provider
        self.system_prompt = system_prompt or "You are a helpful assistant."

    @property
    def model(self) -> str:
        return getattr(self.provider, "model", "")

    async def chat(self, messages: list[dict]) -> str:
        try:
            response = await self.provider.complete(self.system_prompt, messages)
        except CollaboratorError:
            raise
        except Exception as e:
            log.error("Model call failed (%s): %s", self.model, e)
            raise CollaboratorError(str(e) or type(e).__name__) from e
        log.debug("Model reply: %d in / %d out tokens",
                  response.usage.input_tokens, response.usage.output_tokens)
        return response.text

    async def chat_stream(self, messages: list[dict]) -> AsyncIterator[str]:
        try:
            async for chunk in self.provider.stream(self.system_prompt, messages):
                yield chunk
        except CollaboratorError:
            raise
        except Exception as e:
            log.error("Model stream failed (%s): %s", self.model, e)
            raise CollaboratorError(str(e) or type(e).__name__) from e


def create_provider(model_config: dict, api_key: str = "") -> LLMProvider:
    """Factory: create provider from model config section."""
    provider_type = model_config.get("provider", "")

    if provider_type == "anthropic-compat":
        from .anthropic_compat import AnthropicCompatProvider
        return AnthropicCompatProvider(
            api_key=api_key,
            model=model_config["model"],
            max_tokens=model_config.get("max_tokens", 4096),
            base_url=model_config.get("base_url", ""),
        )
    if provider_type == "openai-compat":
        from .openai_compat import OpenAICompatProvider
        return OpenAICompatProvider(
            api_key=api_key,
            model=model_config["model"],
            max_tokens=model_config.get("max_tokens", 4096),
            base_url=model_config.get("base_url", "https://openrouter.ai/api/v1"),
        )
    raise ValueError(f"Unknown provider type: {provider_type!r}")
