"""Workspace layout: sessions, memory files, agent instructions.

One workspace root per agent. Everything the gateway persists lives
under it, except the daemon marker and process logs (see daemon.py).
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

MEMORY_SEED = "# Memory\n\nLong-term facts and memories.\n"


@dataclass(frozen=True)
class Workspace:
    root: Path
    sessions_dir: Path
    memory_dir: Path
    memory_file: Path     # MEMORY.md
    agents_file: Path     # AGENTS.md, prepended to the system prompt
    config_file: Path


def init_workspace(path: str | Path) -> Workspace:
    """Resolve the workspace root and create its directory skeleton.

    Safe to call repeatedly; existing files are never overwritten.
    """
    root = Path(path).expanduser().resolve()
    ws = Workspace(
        root=root,
        sessions_dir=root / "sessions",
        memory_dir=root / "memory",
        memory_file=root / "MEMORY.md",
        agents_file=root / "AGENTS.md",
        config_file=root / "felix.toml",
    )
    ws.sessions_dir.mkdir(parents=True, exist_ok=True)
    ws.memory_dir.mkdir(parents=True, exist_ok=True)
    if not ws.memory_file.exists():
        ws.memory_file.write_text(MEMORY_SEED, encoding="utf-8")
        log.info("Seeded %s", ws.memory_file)
    return ws


def sanitize_session_id(session_id: str) -> str:
    """Map an arbitrary session id onto the safe filename alphabet."""
    return _UNSAFE_ID_CHARS.sub("_", session_id)


def session_path(sessions_dir: Path, session_id: str) -> Path:
    return sessions_dir / f"{sanitize_session_id(session_id)}.jsonl"


def daily_log_path(ws: Workspace, date: time.struct_time | None = None) -> Path:
    """memory/<YYYY-MM-DD>.md for the given (UTC) date, default today."""
    day = time.strftime("%Y-%m-%d", date or time.gmtime())
    return ws.memory_dir / f"{day}.md"
