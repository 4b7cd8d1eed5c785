"""Configuration loader for the Felix gateway.

Loads felix.toml, applies environment variable overrides for secrets and
the bind host, validates, and provides typed access to all settings.
Falls back to built-in defaults when no config file exists.
Immutable after load; there is no runtime config reloading.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "OPENROUTER_API_KEY": ("api_keys", "openrouter"),
    "FELIX_OPENROUTER_KEY": ("api_keys", "openrouter"),
    "FELIX_OPENAI_KEY": ("api_keys", "openai"),
    "FELIX_ANTHROPIC_KEY": ("api_keys", "anthropic"),
}

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant. Keep responses concise."
DEFAULT_PORT = 18789


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str | Path) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from felix.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None,
                 source: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._source = source
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, key_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                section, key = key_path
                if section not in self._data:
                    self._data[section] = {}
                self._data[section][key] = val
        host = os.environ.get("FELIX_GATEWAY_HOST")
        if host:
            self._data.setdefault("gateway", {})["host"] = host

    def _validate(self):
        errors = []
        port = _deep_get(self._data, "gateway", "port", default=DEFAULT_PORT)
        if not isinstance(port, int) or isinstance(port, bool) or not 0 <= port <= 65535:
            errors.append("[gateway] port must be an integer in 0-65535")
        window = _deep_get(self._data, "agent", "context_window", default=128000)
        if not isinstance(window, int) or window <= 0:
            errors.append("[agent] context_window must be a positive integer")
        guard = _deep_get(self._data, "agent", "guard_threshold", default=0.8)
        if not isinstance(guard, (int, float)) or not 0 < guard <= 1:
            errors.append("[agent] guard_threshold must be in (0, 1]")
        provider = _deep_get(self._data, "model", "provider", default="openai-compat")
        if provider not in ("openai-compat", "anthropic-compat"):
            errors.append(f"[model] unknown provider: {provider!r}")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Agent ---

    @property
    def workspace(self) -> Path:
        ws = _deep_get(self._data, "agent", "workspace", default="./agent-workspace")
        p = Path(ws).expanduser()
        if not p.is_absolute():
            p = self._config_dir / p
        return p.resolve()

    @property
    def context_window(self) -> int:
        return _deep_get(self._data, "agent", "context_window", default=128000)

    @property
    def guard_threshold(self) -> float:
        return float(_deep_get(self._data, "agent", "guard_threshold", default=0.8))

    @property
    def system_prompt(self) -> str:
        return _deep_get(self._data, "agent", "system_prompt", default=DEFAULT_SYSTEM_PROMPT)

    @property
    def agents_max_chars(self) -> int:
        return _deep_get(self._data, "agent", "agents_max_chars", default=20000)

    @property
    def daily_log(self) -> bool:
        return _deep_get(self._data, "agent", "daily_log", default=True)

    # --- Gateway ---

    @property
    def gateway_host(self) -> str:
        return _deep_get(self._data, "gateway", "host", default="127.0.0.1")

    @property
    def gateway_port(self) -> int:
        return _deep_get(self._data, "gateway", "port", default=DEFAULT_PORT)

    @property
    def startup_timeout(self) -> float:
        return float(_deep_get(self._data, "gateway", "startup_timeout", default=5.0))

    @property
    def stop_timeout(self) -> float:
        return float(_deep_get(self._data, "gateway", "stop_timeout", default=5.0))

    # --- Model ---

    @property
    def model(self) -> str:
        return _deep_get(self._data, "model", "name", default="openrouter/auto")

    @property
    def provider(self) -> str:
        return _deep_get(self._data, "model", "provider", default="openai-compat")

    @property
    def base_url(self) -> str:
        default = "" if self.provider == "anthropic-compat" else "https://openrouter.ai/api/v1"
        return _deep_get(self._data, "model", "base_url", default=default)

    @property
    def max_tokens(self) -> int:
        return _deep_get(self._data, "model", "max_tokens", default=4096)

    @property
    def model_config(self) -> dict:
        """Provider factory input (see providers.create_provider)."""
        cfg = {
            "provider": self.provider,
            "model": self.model,
            "max_tokens": self.max_tokens,
        }
        if self.base_url:
            cfg["base_url"] = self.base_url
        return cfg

    @property
    def api_key_name(self) -> str:
        default = "anthropic" if self.provider == "anthropic-compat" else "openrouter"
        return _deep_get(self._data, "model", "api_key", default=default)

    # --- Telegram ---

    @property
    def telegram_enabled(self) -> bool:
        return _deep_get(self._data, "telegram", "enabled", default=True)

    @property
    def telegram_allowed_chats(self) -> list[str]:
        chats = _deep_get(self._data, "telegram", "allowed_chats", default=[])
        return [str(c) for c in chats]

    # --- Paths ---

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def source(self) -> Path | None:
        """The file this config was loaded from, None for defaults."""
        return self._source

    @property
    def state_dir(self) -> Path:
        env = os.environ.get("FELIX_PID_DIR")
        if env:
            return _resolve_path(env)
        return _resolve_path(_deep_get(self._data, "paths", "state_dir",
                                       default="~/.local/share/felix"))

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "gateway.pid"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default=str(self.log_dir / "felix.log")))

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- API Keys ---

    def api_key(self, provider: str | None = None) -> str:
        return _deep_get(self._data, "api_keys", provider or self.api_key_name, default="")


def _load_dotenv(env_file: Path) -> None:
    """Load a .env file without overriding variables already set."""
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def find_config(path: str | Path | None = None) -> Path | None:
    """Explicit path, then $FELIX_CONFIG, ./felix.toml, ~/.config/felix/felix.toml."""
    if path:
        p = _resolve_path(path)
        if not p.exists():
            raise ConfigError(f"Config file not found: {p}")
        return p
    candidates = []
    env = os.environ.get("FELIX_CONFIG")
    if env:
        candidates.append(_resolve_path(env))
    candidates.append(_resolve_path("felix.toml"))
    candidates.append(_resolve_path("~/.config/felix/felix.toml"))
    for p in candidates:
        if p.exists():
            return p
    return None


def _apply_overrides(data: dict, overrides: dict) -> None:
    for key_path, value in overrides.items():
        keys = key_path.split(".")
        d = data
        for k in keys[:-1]:
            d = d.setdefault(k, {})
        d[keys[-1]] = value


def load_config(path: str | Path | None = None, overrides: dict | None = None) -> Config:
    """Load and validate config.

    Args:
        path: Explicit felix.toml path; searched for when omitted.
        overrides: Dotted-key overrides applied before validation
                   (e.g. {"gateway.host": "0.0.0.0"} from CLI args).
    """
    p = find_config(path)
    data: dict = {}
    if p is not None:
        _load_dotenv(p.parent / ".env")
        try:
            with open(p, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {p}: {e}") from e
        log.debug("Loaded config from %s", p)
    else:
        _load_dotenv(Path.cwd() / ".env")
        log.debug("No config file found, using defaults")
    if overrides:
        _apply_overrides(data, overrides)
    return Config(data, config_dir=p.parent if p else Path.cwd(), source=p)
