"""Session store: append-only JSONL log per conversation.

One file per session: sessions/<sanitized-id>.jsonl, one turn per line.
Turns are never edited in place. The conversation view handed to the
model is derived from the log on every load.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from workspace import session_path

log = logging.getLogger(__name__)

ROLES = frozenset({"system", "user", "assistant"})


class PersistenceError(Exception):
    """Raised when a session log cannot be written or read."""


@dataclass
class ToolCall:
    name: str
    arguments: str
    result: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"name": self.name, "arguments": self.arguments}
        if self.result is not None:
            d["result"] = self.result
        return d


@dataclass
class Turn:
    role: str
    content: str
    timestamp: int  # epoch millis
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_calls:
            d["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        return d

    def to_message(self) -> dict:
        """Conversation view entry: role and content only."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Any) -> Turn:
        """Parse one persisted turn. Raises ValueError on bad shape."""
        if not isinstance(data, dict):
            raise ValueError("turn is not an object")
        role = data.get("role")
        content = data.get("content")
        timestamp = data.get("timestamp", 0)
        if role not in ROLES:
            raise ValueError(f"invalid role: {role!r}")
        if not isinstance(content, str):
            raise ValueError("content must be a string")
        if not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise ValueError("timestamp must be an integer")
        calls = []
        for raw in data.get("toolCalls") or []:
            if isinstance(raw, dict) and raw.get("name"):
                calls.append(ToolCall(
                    name=raw["name"],
                    arguments=str(raw.get("arguments", "")),
                    result=raw.get("result"),
                ))
        return cls(role=role, content=content, timestamp=timestamp, tool_calls=calls)


class SessionStore:
    """Durable per-session turn log.

    Writes are serialized by the gateway's single worker, so the store
    itself holds no locks and no cached conversation state.
    """

    def __init__(self, sessions_dir: Path):
        self.dir = sessions_dir
        self.dir.mkdir(parents=True, exist_ok=True)

    def path(self, session_id: str) -> Path:
        return session_path(self.dir, session_id)

    def append(self, session_id: str, turn: Turn) -> None:
        """Append one turn as a single line with fsync."""
        line = json.dumps(turn.to_dict(), ensure_ascii=False) + "\n"
        path = self.path(session_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise PersistenceError(f"Failed to append to session {session_id}: {e}") from e

    def turns(self, session_id: str) -> list[Turn]:
        """All parseable turns in log order. Corrupt lines are skipped."""
        path = self.path(session_id)
        if not path.exists():
            return []
        try:
            with open(path, encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            raise PersistenceError(f"Failed to read session {session_id}: {e}") from e

        result = []
        for lineno, line in enumerate(lines, 1):
            line = line.strip()
            if not line:
                continue
            try:
                result.append(Turn.from_dict(json.loads(line)))
            except (json.JSONDecodeError, ValueError) as e:
                log.warning("Skipping corrupt line %d in session %s: %s",
                            lineno, session_id, e)
        return result

    def load(self, session_id: str) -> list[dict]:
        """Conversation view: [{"role", "content"}, ...]. Missing → []."""
        return [t.to_message() for t in self.turns(session_id)]

    def clear(self, session_id: str) -> None:
        try:
            self.path(session_id).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to clear session {session_id}: {e}") from e

    def count(self) -> int:
        """Number of sessions with an on-disk log."""
        if not self.dir.exists():
            return 0
        return sum(1 for _ in self.dir.glob("*.jsonl"))
