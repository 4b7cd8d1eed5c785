"""Memory files: MEMORY.md and the per-day conversation log.

Content is free-form markdown owned by the agent; the gateway only
appends a short summary of each successful turn to today's log.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from workspace import Workspace, daily_log_path

log = logging.getLogger(__name__)


def _read(path: Path) -> str:
    if not path.exists():
        return ""
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        log.error("Failed to read %s: %s", path, e)
        return ""


def read_memory(ws: Workspace) -> str:
    return _read(ws.memory_file)


def write_memory(ws: Workspace, content: str) -> None:
    ws.memory_file.write_text(content, encoding="utf-8")


def append_to_memory(ws: Workspace, content: str) -> None:
    existing = read_memory(ws)
    separator = "\n\n" if existing and not existing.endswith("\n") else ""
    write_memory(ws, existing + separator + content)


def read_daily_log(ws: Workspace, date: time.struct_time | None = None) -> str:
    return _read(daily_log_path(ws, date))


def append_to_daily_log(
    ws: Workspace, content: str, date: time.struct_time | None = None,
) -> None:
    """Append a timestamped entry to memory/<YYYY-MM-DD>.md."""
    path = daily_log_path(ws, date)
    existing = read_daily_log(ws, date)
    stamp = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    separator = "\n" if existing and not existing.endswith("\n") else ""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(f"{separator}## {stamp}\n\n{content}\n")


def memory_files(ws: Workspace) -> list[str]:
    if not ws.memory_dir.exists():
        return []
    return sorted(p.name for p in ws.memory_dir.glob("*.md"))
