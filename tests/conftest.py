"""Shared fixtures for the Felix test suite.

All tests use temporary directories and fake collaborators.
Nothing touches ~/.local/share/felix, the network, or a running gateway.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from context import ContextBudgeter, ContextConfig  # noqa: E402
from pipeline import MessagePipeline  # noqa: E402
from session import SessionStore  # noqa: E402
from workspace import init_workspace  # noqa: E402


def word_count(text: str) -> int:
    """Deterministic stand-in for the tiktoken counter: one token per word."""
    return len(text.split())


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path, monkeypatch):
    """Keep real config, secrets and PID dirs out of every test."""
    for var in ("FELIX_CONFIG", "FELIX_PID_DIR", "FELIX_GATEWAY_HOST",
                "OPENROUTER_API_KEY", "FELIX_OPENROUTER_KEY",
                "FELIX_ANTHROPIC_KEY", "FELIX_OPENAI_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def tmp_sessions(tmp_path):
    """Temp directory acting as sessions_dir."""
    d = tmp_path / "sessions"
    d.mkdir()
    return d


@pytest.fixture
def workspace(tmp_path):
    """Initialized workspace (sessions/, memory/, MEMORY.md)."""
    return init_workspace(tmp_path / "workspace")


@pytest.fixture
def store(workspace):
    return SessionStore(workspace.sessions_dir)


@pytest.fixture
def budgeter():
    return ContextBudgeter(count_tokens=word_count)


@pytest.fixture
def context_config():
    return ContextConfig(max_tokens=1000, guard_threshold=0.8)


@pytest.fixture
def pipeline(store, workspace, context_config, budgeter):
    return MessagePipeline(
        store=store,
        workspace=workspace,
        context_config=context_config,
        system_prompt="You are a test agent.",
        budgeter=budgeter,
    )


@pytest.fixture
def echo_handler():
    """Model handler that echoes the last user message."""
    calls = []

    async def handler(session_id, messages):
        calls.append((session_id, list(messages)))
        return f"echo: {messages[-1]['content']}"

    handler.calls = calls
    return handler


@pytest.fixture
def minimal_toml_data(tmp_path):
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "agent": {
            "workspace": str(tmp_path / "workspace"),
            "context_window": 8000,
            "guard_threshold": 0.5,
        },
        "gateway": {"host": "127.0.0.1", "port": 0},
        "model": {"name": "test-model", "provider": "openai-compat"},
        "telegram": {"enabled": False},
        "paths": {"state_dir": str(tmp_path / "state")},
    }
