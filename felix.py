#!/usr/bin/env python3
"""Felix: a personal AI-agent gateway.

Entry point. Wires config → workspace → provider → pipeline → gateway,
handles the PID file, Unix signals, and the operator CLI
(serve / gateway start|stop|status / ask / chat).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import signal
import sys
import time
from pathlib import Path

# Add felix directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from client import GatewayClient, GatewayError, gateway_url, headless_session_id
from config import Config, ConfigError, load_config
from context import ContextConfig, build_system_prompt
from daemon import (
    AlreadyRunning,
    Supervisor,
    SupervisorError,
    gateway_command,
    is_process_running,
    read_pid_file,
    remove_pid_file,
    write_pid_file,
)
from gateway import Gateway
from pipeline import MessagePipeline
from protocol import ServerMessage
from providers import ModelClient, create_provider
from session import SessionStore
from workspace import init_workspace

log = logging.getLogger("felix")


# ─── Gateway Daemon ──────────────────────────────────────────────

class GatewayDaemon:
    def __init__(self, config: Config):
        self.config = config
        self.start_time = time.time()
        self.workspace = None
        self.model_client: ModelClient | None = None
        self.gateway: Gateway | None = None
        self._stop = asyncio.Event()

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr ends up in gateway.err.log when detached
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "anthropic", "openai", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _system_prompt(self) -> str:
        return build_system_prompt(
            self.workspace, self.config.system_prompt, self.config.agents_max_chars,
        )

    def _init_model(self) -> None:
        cfg = self.config
        api_key = cfg.api_key()
        if not api_key:
            log.warning("No API key configured for '%s'; model calls will likely fail",
                        cfg.api_key_name)
        provider = create_provider(cfg.model_config, api_key)
        self.model_client = ModelClient(provider, self._system_prompt())
        log.info("Model: %s (%s)", cfg.model, cfg.provider)

    def _init_gateway(self) -> None:
        cfg = self.config
        pipeline = MessagePipeline(
            store=SessionStore(self.workspace.sessions_dir),
            workspace=self.workspace,
            context_config=ContextConfig(
                max_tokens=cfg.context_window,
                guard_threshold=cfg.guard_threshold,
            ),
            # Budget against the exact prompt the model client sends
            system_prompt=lambda: self.model_client.system_prompt,
            daily_log=cfg.daily_log,
        )

        async def handle(session_id: str, messages: list[dict]) -> str:
            return await self.model_client.chat(messages)

        def handle_stream(session_id: str, messages: list[dict]):
            return self.model_client.chat_stream(messages)

        self.gateway = Gateway(
            host=cfg.gateway_host,
            port=cfg.gateway_port,
            pipeline=pipeline,
            handler=handle,
            stream_handler=handle_stream,
            model=cfg.model,
            context_window=cfg.context_window,
            telegram_enabled=cfg.telegram_enabled,
        )

    def _write_status(self) -> None:
        status = {
            "pid": os.getpid(),
            "uptime_s": time.time() - self.start_time,
            "gateway": self.gateway.status_snapshot() if self.gateway else {},
        }
        status_path = self.config.state_dir / "status.json"
        try:
            status_path.write_text(json.dumps(status, indent=2))
        except OSError as e:
            log.error("Failed to write %s: %s", status_path, e)

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr1():
            log.info("SIGUSR1: reloading workspace instructions")
            if self.model_client:
                self.model_client.system_prompt = self._system_prompt()

        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            self._write_status()
            if self.gateway:
                msg = ServerMessage(type="status", content="ok",
                                    status_data=self.gateway.status())
                loop.create_task(self.gateway.broadcast(msg))

        def handle_sigterm():
            log.info("Shutdown signal received, stopping gracefully")
            self._stop.set()

        try:
            loop.add_signal_handler(signal.SIGUSR1, handle_sigusr1)
            loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Start the gateway and serve until a shutdown signal."""
        cfg = self.config
        pid_path = cfg.pid_file

        self._setup_logging()
        log.info("Starting Felix gateway")

        # A supervised start has already recorded our own pid
        existing = read_pid_file(pid_path)
        if existing not in (None, os.getpid()) and is_process_running(existing):
            raise AlreadyRunning(existing)
        write_pid_file(pid_path, os.getpid())

        try:
            self.workspace = init_workspace(cfg.workspace)
            log.info("Workspace: %s", self.workspace.root)
            self._init_model()
            self._init_gateway()
            if cfg.telegram_enabled:
                log.info("Telegram reported as enabled (%d allowed chats)",
                         len(cfg.telegram_allowed_chats))

            await self.gateway.start()
            self._setup_signals(asyncio.get_running_loop())
            log.info("Felix gateway running (PID %d)", os.getpid())

            await self._stop.wait()
        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            if self.gateway:
                await self.gateway.stop()
            if read_pid_file(pid_path) == os.getpid():
                remove_pid_file(pid_path)
            log.info("Felix gateway stopped")


# ─── Operator Commands ───────────────────────────────────────────

def format_uptime(ms: int) -> str:
    seconds = ms // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def _supervisor(config: Config, host: str | None = None, telegram: bool = True) -> Supervisor:
    env = {"FELIX_GATEWAY_HOST": host} if host else None
    return Supervisor(
        pid_file=config.pid_file,
        log_dir=config.log_dir,
        command=gateway_command(config.source, host=host, telegram=telegram),
        env=env,
        startup_timeout=config.startup_timeout,
        stop_timeout=config.stop_timeout,
    )


def _url(config: Config) -> str:
    return gateway_url(config.gateway_host, config.gateway_port)


async def _start_and_wait(config: Config, supervisor: Supervisor, url: str) -> int:
    pid = supervisor.start()
    await supervisor.wait_until_ready(url)
    return pid


async def cmd_gateway_start(config: Config, args: argparse.Namespace) -> int:
    supervisor = _supervisor(config, host=args.host, telegram=not args.no_telegram)
    if supervisor.is_running():
        if not args.override:
            print(f"Gateway is already running (PID {supervisor.pid()})")
            return 0
        print("Stopping running gateway...")
        await supervisor.stop()
    url = gateway_url(args.host or config.gateway_host, config.gateway_port)
    pid = await _start_and_wait(config, supervisor, url)
    print(f"Gateway started (PID {pid}) on {url}")
    return 0


async def cmd_gateway_stop(config: Config, args: argparse.Namespace) -> int:
    if not await _supervisor(config).stop():
        print("Gateway is not running", file=sys.stderr)
        return 1
    print("Gateway stopped")
    return 0


def print_status(pid: int, status) -> None:
    print("Gateway Status")
    print("─" * 40)
    print("\n  Process")
    print(f"      PID:        {pid}")
    print(f"      Uptime:     {format_uptime(status.uptime_ms)}")
    print("\n  Connections")
    print(f"      Host:       {status.host}")
    print(f"      Port:       {status.port}")
    print(f"      Clients:    {status.client_count}")
    print("\n  Sessions")
    print(f"      Total:      {status.session_count}")
    print("\n  Configuration")
    print(f"      Model:       {status.model}")
    print(f"      Context:     {status.context_window:,} tokens")
    print(f"      Workspace:   {status.workspace}")
    print(f"      Telegram:    {'enabled' if status.telegram_enabled else 'disabled'}")


async def cmd_gateway_status(config: Config, args: argparse.Namespace) -> int:
    supervisor = _supervisor(config)
    pid = supervisor.pid()
    if pid is None:
        print("Gateway is not running")
        return 1
    if not is_process_running(pid):
        print(f"Gateway not running (stale PID: {pid})")
        print("Run 'felix gateway start' to start")
        return 1
    try:
        status = await GatewayClient(_url(config), timeout=3.0).fetch_status()
    except GatewayError as e:
        print(f"Gateway process running (PID: {pid})")
        print(f"Cannot connect to gateway: {e}")
        return 1
    print_status(pid, status)
    return 0


async def _ensure_running(config: Config) -> str:
    url = _url(config)
    supervisor = _supervisor(config)
    if not supervisor.is_running():
        print("Gateway not running, starting...", file=sys.stderr)
        await _start_and_wait(config, supervisor, url)
    return url


async def cmd_ask(config: Config, args: argparse.Namespace) -> int:
    url = await _ensure_running(config)
    client = GatewayClient(url)
    reply = await client.ask(args.prompt, args.session or headless_session_id())
    print(reply)
    return 0


async def cmd_chat(config: Config, args: argparse.Namespace) -> int:
    url = await _ensure_running(config)
    client = GatewayClient(url, timeout=300.0)
    print("Felix chat. /clear resets the session, /quit exits.")
    while True:
        try:
            line = await asyncio.to_thread(input, "You> ")
        except (EOFError, KeyboardInterrupt):
            print()
            return 0
        line = line.strip()
        if not line:
            continue
        if line in ("/quit", "/exit"):
            return 0
        try:
            if line == "/clear":
                await client.clear(args.session)
                print("Session cleared")
                continue
            reply = await client.ask(line, args.session)
        except GatewayError as e:
            print(f"Error: {e}", file=sys.stderr)
            continue
        print(f"Agent> {reply}")


def cmd_serve(config: Config, args: argparse.Namespace) -> int:
    daemon = GatewayDaemon(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass
    except AlreadyRunning as e:
        print(str(e), file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Gateway failed: {e}", file=sys.stderr)
        return 1
    return 0


_ASYNC_COMMANDS = {
    ("gateway", "start"): cmd_gateway_start,
    ("gateway", "stop"): cmd_gateway_stop,
    ("gateway", "status"): cmd_gateway_status,
    ("ask", None): cmd_ask,
    ("chat", None): cmd_chat,
}


# ─── CLI Entry Point ─────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="felix",
        description="Felix: a personal AI-agent gateway",
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to config file (default: $FELIX_CONFIG, ./felix.toml, "
             "~/.config/felix/felix.toml)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the gateway in the foreground")
    serve.add_argument("--host", help="Override bind host")
    serve.add_argument("--port", type=int, help="Override bind port")
    serve.add_argument("--no-telegram", action="store_true", help="Disable Telegram")

    gw = sub.add_parser("gateway", help="Manage the background gateway")
    gw_sub = gw.add_subparsers(dest="action", required=True)
    start = gw_sub.add_parser("start", help="Start the gateway in the background")
    start.add_argument("--host", help="Override bind host")
    start.add_argument("--no-telegram", action="store_true", help="Disable Telegram")
    start.add_argument("--override", action="store_true",
                       help="Stop a running gateway first")
    gw_sub.add_parser("stop", help="Stop the background gateway")
    gw_sub.add_parser("status", help="Show gateway status")

    ask = sub.add_parser("ask", help="Send one prompt and print the reply")
    ask.add_argument("prompt")
    ask.add_argument("-s", "--session", help="Session id (default: new headless session)")

    chat = sub.add_parser("chat", help="Interactive terminal chat")
    chat.add_argument("-s", "--session", help="Session id (default: 'default')")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.command == "serve":
        if args.host:
            overrides["gateway.host"] = args.host
        if args.port is not None:
            overrides["gateway.port"] = args.port
        if args.no_telegram:
            overrides["telegram.enabled"] = False

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 1

    if args.command == "serve":
        return cmd_serve(config, args)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    command = _ASYNC_COMMANDS[(args.command, getattr(args, "action", None))]
    try:
        return asyncio.run(command(config, args))
    except (SupervisorError, GatewayError) as e:
        print(str(e), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
