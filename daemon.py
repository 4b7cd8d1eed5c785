"""Process supervisor: PID marker, detached start, graceful stop.

At most one live gateway per marker file. The marker records a pid; it
does not prove the process is alive, so every decision re-checks
liveness with signal 0 first.

Two racing start() calls are not locked against each other: both may see
no live marker, and the last writer's pid wins the marker. The loser's
gateway then fails to bind the port and exits.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

from client import probe

log = logging.getLogger(__name__)

OUT_LOG = "gateway.out.log"
ERR_LOG = "gateway.err.log"


class SupervisorError(Exception):
    """Operator-facing supervisor failure."""


class AlreadyRunning(SupervisorError):
    def __init__(self, pid: int):
        super().__init__(f"Gateway already running with PID {pid}")
        self.pid = pid


class StartupTimeout(SupervisorError):
    """The gateway process never started accepting connections."""


# ─── PID File ────────────────────────────────────────────────────

def read_pid_file(path: Path) -> int | None:
    try:
        content = path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        log.warning("Cannot read PID file %s: %s", path, e)
        return None
    try:
        return int(content)
    except ValueError:
        log.warning("PID file %s is not a number: %r", path, content[:20])
        return None


def write_pid_file(path: Path, pid: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid))


def remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning("Cannot remove PID file %s: %s", path, e)


def is_process_running(pid: int) -> bool:
    """Probe with signal 0. No permission counts as not ours, not alive.

    pid 0 and 1 are never this service: kill(0) addresses our own
    process group and pid 1 is init.
    """
    if pid <= 1:
        return False
    # Reap it first if it is an exited child of ours, else kill(0) succeeds on the zombie.
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except ChildProcessError:
        pass
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, PermissionError):
        return False
    return True


def gateway_command(config_path: str | None = None, host: str | None = None,
                    telegram: bool = True) -> list[str]:
    """argv for the detached gateway process."""
    cmd = [sys.executable, str(Path(__file__).with_name("felix.py"))]
    if config_path:
        cmd += ["--config", str(config_path)]
    cmd.append("serve")
    if host:
        cmd += ["--host", host]
    if not telegram:
        cmd.append("--no-telegram")
    return cmd


# ─── Supervisor ──────────────────────────────────────────────────

class Supervisor:
    def __init__(
        self,
        pid_file: Path,
        log_dir: Path,
        command: list[str],
        env: dict[str, str] | None = None,
        startup_timeout: float = 5.0,
        stop_timeout: float = 5.0,
        poll_interval: float = 0.1,
    ):
        self.pid_file = pid_file
        self.log_dir = log_dir
        self.command = command
        self.env = env
        self.startup_timeout = startup_timeout
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval

    @property
    def out_log(self) -> Path:
        return self.log_dir / OUT_LOG

    @property
    def err_log(self) -> Path:
        return self.log_dir / ERR_LOG

    def pid(self) -> int | None:
        return read_pid_file(self.pid_file)

    def is_running(self) -> bool:
        pid = self.pid()
        return pid is not None and is_process_running(pid)

    def start(self) -> int:
        """Spawn the gateway detached and record its pid.

        Does not wait for readiness; see wait_until_ready().
        """
        existing = self.pid()
        if existing is not None and is_process_running(existing):
            raise AlreadyRunning(existing)
        if existing is not None or self.pid_file.exists():
            log.info("Removing stale PID file (%s)", existing)
            remove_pid_file(self.pid_file)

        self.log_dir.mkdir(parents=True, exist_ok=True)
        env = dict(os.environ)
        if self.env:
            env.update(self.env)
        with open(self.out_log, "ab") as out, open(self.err_log, "ab") as err:
            try:
                child = subprocess.Popen(  # noqa: S603
                    self.command,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    env=env,
                    start_new_session=True,
                    close_fds=True,
                )
            except OSError as e:
                raise SupervisorError(f"Failed to spawn gateway: {e}") from e

        write_pid_file(self.pid_file, child.pid)
        log.info("Gateway started with PID %d", child.pid)
        return child.pid

    async def wait_until_ready(self, url: str) -> None:
        """Poll the listening socket until it accepts a handshake."""
        deadline = time.monotonic() + self.startup_timeout
        while time.monotonic() < deadline:
            if await probe(url):
                return
            pid = self.pid()
            if pid is not None and not is_process_running(pid):
                remove_pid_file(self.pid_file)
                raise SupervisorError(
                    f"Gateway process {pid} exited during startup (see {self.err_log})"
                )
            await asyncio.sleep(self.poll_interval * 2)
        raise StartupTimeout(
            f"Gateway failed to start within {self.startup_timeout:.0f}s (see {self.err_log})"
        )

    async def stop(self) -> bool:
        """SIGTERM, wait up to stop_timeout, then SIGKILL.

        Returns False only when there is nothing to stop.
        """
        pid = self.pid()
        if pid is None:
            if self.pid_file.exists():
                remove_pid_file(self.pid_file)
            log.warning("No gateway running (no PID file)")
            return False

        if not is_process_running(pid):
            log.info("Stale PID file, cleaning up")
            remove_pid_file(self.pid_file)
            return True

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            remove_pid_file(self.pid_file)
            return True

        deadline = time.monotonic() + self.stop_timeout
        while time.monotonic() < deadline:
            await asyncio.sleep(self.poll_interval)
            if not is_process_running(pid):
                remove_pid_file(self.pid_file)
                log.info("Gateway stopped")
                return True

        log.warning("Gateway did not exit within %.0fs, sending SIGKILL", self.stop_timeout)
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        for _ in range(10):
            if not is_process_running(pid):
                break
            await asyncio.sleep(self.poll_interval)
        remove_pid_file(self.pid_file)
        log.info("Gateway force killed")
        return True
