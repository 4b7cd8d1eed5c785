"""Context budgeter: token accounting and history truncation.

Also assembles the system prompt from the workspace (AGENTS.md + the
configured base prompt). Files are read fresh on every build.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

import tokenizer
from workspace import Workspace

log = logging.getLogger(__name__)

MESSAGE_OVERHEAD = 4
CONVERSATION_OVERHEAD = 3

# Headroom for the reply and prompt framing the estimate can't see.
TRUNCATION_SAFETY_FACTOR = 0.8

DEFAULT_AGENTS_MAX_CHARS = 20000
_TRUNCATED_MARKER = "\n\n[Content truncated]"


@dataclass(frozen=True)
class ContextConfig:
    max_tokens: int
    guard_threshold: float


@dataclass(frozen=True)
class ContextStatus:
    current_tokens: int
    max_tokens: int
    usage_percent: float   # fraction of max_tokens, 1.0 == full
    needs_truncation: bool


class ContextBudgeter:
    """Decides whether a conversation fits, and shrinks it when it doesn't."""

    def __init__(self, count_tokens: Callable[[str], int] = tokenizer.count_tokens):
        self.count_tokens = count_tokens

    def message_cost(self, message: dict) -> int:
        role = message.get("role", "")
        prefix = "" if role == "system" else f"{role}: "
        return self.count_tokens(prefix + message.get("content", "")) + MESSAGE_OVERHEAD

    def total_cost(self, messages: list[dict]) -> int:
        return sum(self.message_cost(m) for m in messages) + CONVERSATION_OVERHEAD

    def check_status(
        self, messages: list[dict], system_prompt: str, config: ContextConfig,
    ) -> ContextStatus:
        total = self.count_tokens(system_prompt) + self.total_cost(messages)
        return ContextStatus(
            current_tokens=total,
            max_tokens=config.max_tokens,
            usage_percent=total / config.max_tokens,
            needs_truncation=total > config.max_tokens * config.guard_threshold,
        )

    def truncate(self, messages: list[dict], budget: int) -> list[dict]:
        """Keep the longest most-recent run of messages that fits budget.

        Walks newest to oldest and stops at the first message that would
        overflow, so the result is always a contiguous suffix. May be
        empty when even the newest message is too large.
        """
        used = 0
        start = len(messages)
        for i in range(len(messages) - 1, -1, -1):
            cost = self.message_cost(messages[i])
            if used + cost > budget:
                break
            used += cost
            start = i
        return messages[start:]

    @staticmethod
    def effective_budget(config: ContextConfig) -> int:
        return math.floor(config.max_tokens * config.guard_threshold * TRUNCATION_SAFETY_FACTOR)

    def fit(
        self, messages: list[dict], system_prompt: str, config: ContextConfig,
    ) -> tuple[list[dict], ContextStatus]:
        """Check, then truncate to the effective budget if required."""
        status = self.check_status(messages, system_prompt, config)
        if not status.needs_truncation:
            return messages, status
        kept = self.truncate(messages, self.effective_budget(config))
        log.info("Truncated history from %d to %d messages (%d tokens, %.0f%% of %d)",
                 len(messages), len(kept), status.current_tokens,
                 status.usage_percent * 100, config.max_tokens)
        return kept, status


# ─── System Prompt ───────────────────────────────────────────────

def load_agents_instructions(ws: Workspace, max_chars: int = DEFAULT_AGENTS_MAX_CHARS) -> str:
    """Read AGENTS.md, capped at max_chars. Missing or unreadable → ""."""
    path = ws.agents_file
    if not path.exists():
        return ""
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        log.warning("Failed to read %s: %s", path, e)
        return ""
    if len(content) > max_chars:
        log.info("AGENTS.md truncated (%d -> %d chars)", len(content), max_chars)
        return content[:max_chars] + _TRUNCATED_MARKER
    return content


def build_system_prompt(
    ws: Workspace, base_prompt: str, max_chars: int = DEFAULT_AGENTS_MAX_CHARS,
) -> str:
    instructions = load_agents_instructions(ws, max_chars)
    if instructions:
        return f"{instructions}\n\n---\n\n{base_prompt}"
    return base_prompt
