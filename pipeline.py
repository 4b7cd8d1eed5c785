"""Message pipeline: one conversational turn, end to end.

load history → append user message → budget/truncate → model call →
persist user + assistant turns → daily log summary.

Nothing is persisted unless the model call succeeds. A message that does
not fit the budget on its own is rejected before the model is called. Every call reloads
the session from disk; no conversation state is kept between calls.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

import memory
from context import ContextBudgeter, ContextConfig, ContextStatus
from protocol import now_ms
from providers import CollaboratorError
from session import SessionStore, Turn
from workspace import Workspace

log = logging.getLogger(__name__)

MessageHandler = Callable[[str, list[dict]], Awaitable[str]]
StreamHandler = Callable[[str, list[dict]], AsyncIterator[str]]
ChunkCallback = Callable[[str], Awaitable[None]]


class ContextOverflowError(Exception):
    """The new message alone does not fit the context budget."""


@dataclass
class PipelineResult:
    response: str
    session_id: str
    status: ContextStatus
    truncated: bool = False


class MessagePipeline:
    def __init__(
        self,
        store: SessionStore,
        workspace: Workspace,
        context_config: ContextConfig,
        system_prompt: Callable[[], str] | str = "",
        budgeter: ContextBudgeter | None = None,
        daily_log: bool = True,
    ):
        self.store = store
        self.workspace = workspace
        self.context_config = context_config
        self._system_prompt = system_prompt
        self.budgeter = budgeter or ContextBudgeter()
        self.daily_log = daily_log

    @property
    def system_prompt(self) -> str:
        if callable(self._system_prompt):
            return self._system_prompt()
        return self._system_prompt

    def _prepare(self, session_id: str, content: str) -> tuple[list[dict], ContextStatus, bool]:
        history = self.store.load(session_id)
        history.append({"role": "user", "content": content})
        kept, status = self.budgeter.fit(history, self.system_prompt, self.context_config)
        if not kept:
            raise ContextOverflowError("Message too large for context window")
        if len(kept) < len(history):
            log.info("Session %s: sending %d of %d messages", session_id, len(kept), len(history))
        return kept, status, len(kept) < len(history)

    def _persist(self, session_id: str, content: str, response: str, user_ts: int) -> None:
        self.store.append(session_id, Turn(role="user", content=content, timestamp=user_ts))
        self.store.append(session_id, Turn(
            role="assistant", content=response, timestamp=max(now_ms(), user_ts),
        ))
        if self.daily_log:
            try:
                memory.append_to_daily_log(self.workspace, f"User: {content}\nAssistant: {response}")
            except OSError as e:
                log.error("Failed to append daily log: %s", e)

    async def process(self, session_id: str, content: str, handler: MessageHandler) -> PipelineResult:
        user_ts = now_ms()
        messages, status, truncated = self._prepare(session_id, content)
        try:
            response = await handler(session_id, messages)
        except CollaboratorError:
            raise
        except Exception as e:
            raise CollaboratorError(str(e) or type(e).__name__) from e
        self._persist(session_id, content, response, user_ts)
        return PipelineResult(response=response, session_id=session_id,
                              status=status, truncated=truncated)

    async def process_stream(
        self,
        session_id: str,
        content: str,
        handler: StreamHandler,
        on_chunk: ChunkCallback,
    ) -> PipelineResult:
        """Like process(), forwarding chunks as they arrive.

        The assembled reply is persisted only once the stream completes.
        """
        user_ts = now_ms()
        messages, status, truncated = self._prepare(session_id, content)
        parts: list[str] = []
        try:
            async for chunk in handler(session_id, messages):
                parts.append(chunk)
                await on_chunk(chunk)
        except CollaboratorError:
            raise
        except Exception as e:
            raise CollaboratorError(str(e) or type(e).__name__) from e
        response = "".join(parts)
        self._persist(session_id, content, response, user_ts)
        return PipelineResult(response=response, session_id=session_id,
                              status=status, truncated=truncated)
