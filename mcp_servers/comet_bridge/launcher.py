from __future__ import annotations

import asyncio
import contextlib
import logging
import subprocess
import sys
import time
from dataclasses import dataclass, field
from enum import Enum

from .config import BridgeConfig, expand_path
from .errors import DebuggingRequired, StartupError, StartupTimeout
from .http_client import HttpClientError, http_json

logger = logging.getLogger("mcp.comet.launcher")


class StartupStatus(str, Enum):
    ALREADY_RUNNING = "already_running"
    LAUNCHED = "launched"
    RESTARTED = "restarted"


@dataclass
class StartupOutcome:
    status: StartupStatus
    port: int
    message: str
    command: list[str] = field(default_factory=list)
    attempts: int = 0


class BrowserLauncher:
    def __init__(self, config: BridgeConfig | None = None) -> None:
        self.config = config or BridgeConfig.from_env()
        self.process: subprocess.Popen | None = None

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        """Return True if the CDP HTTP endpoint responds."""
        try:
            http_json(self.config.endpoint("/json/version"), timeout=timeout)
        except HttpClientError:
            return False
        return True

    def process_running(self) -> bool:
        """Return True if a browser process with our executable name exists."""
        name = self.config.process_name
        if sys.platform.startswith("win"):
            cmd = ["tasklist", "/FI", f"IMAGENAME eq {name}.exe", "/NH"]
        else:
            cmd = ["pgrep", "-x", name]
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=5.0)
        except (OSError, subprocess.TimeoutExpired):
            return False
        if sys.platform.startswith("win"):
            return name.lower() in proc.stdout.decode(errors="replace").lower()
        return proc.returncode == 0

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.config.cdp_port}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
        ]
        if self.config.profile_path:
            flags.append(f"--user-data-dir={expand_path(self.config.profile_path)}")
        flags.extend(self.config.extra_flags)
        if extra:
            flags.extend(extra)
        return [self.config.binary_path, *flags]

    def _spawn(self, cmd: list[str]) -> None:
        try:
            self.process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise StartupError(f"Cannot start {cmd[0]}: {exc}") from exc

    def _terminate_running(self) -> None:
        """Ask every running browser process with our executable name to quit."""
        name = self.config.process_name
        if sys.platform.startswith("win"):
            cmd = ["taskkill", "/IM", f"{name}.exe", "/F"]
        else:
            cmd = ["pkill", "-x", name]
        try:
            subprocess.run(cmd, capture_output=True, timeout=5.0)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise StartupError(f"Cannot stop running {name}: {exc}") from exc

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Best-effort stop of the launcher-owned browser process."""
        proc = self.process
        if proc is None:
            return False
        if proc.poll() is not None:
            return True
        with contextlib.suppress(OSError):
            proc.terminate()
        deadline = time.monotonic() + max(0.1, float(timeout))
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                return True
            time.sleep(0.05)
        # Escalate to kill.
        with contextlib.suppress(OSError):
            proc.kill()
        return True

    async def _wait_ready(self) -> int:
        """Poll the endpoint with growing backoff; return attempts used."""
        delay = max(0.0, self.config.startup_backoff)
        for attempt in range(1, max(1, self.config.startup_retries) + 1):
            if await asyncio.to_thread(self.cdp_ready):
                return attempt
            await asyncio.sleep(delay)
            delay = min(delay * self.config.backoff_factor, self.config.max_backoff)
        raise StartupTimeout(
            f"Browser did not open debug port {self.config.cdp_port} "
            f"after {self.config.startup_retries} attempts"
        )

    async def _wait_exited(self, timeout: float = 5.0) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not await asyncio.to_thread(self.process_running):
                return
            await asyncio.sleep(0.2)
        raise StartupError(f"{self.config.process_name} did not exit for restart")

    async def ensure_running(self, debug_port: int | None = None) -> StartupOutcome:
        """Make sure a browser with remote debugging answers on `debug_port`.

        A browser already running without debugging cannot be attached to; it
        is restarted only when `restart_without_debugging` is configured,
        otherwise `DebuggingRequired` is raised.
        """
        if debug_port is not None:
            self.config.cdp_port = int(debug_port)
        port = self.config.cdp_port

        if await asyncio.to_thread(self.cdp_ready):
            return StartupOutcome(StartupStatus.ALREADY_RUNNING, port, f"Browser already listening on CDP port {port}")

        status = StartupStatus.LAUNCHED
        if await asyncio.to_thread(self.process_running):
            if not self.config.restart_without_debugging:
                raise DebuggingRequired(
                    f"{self.config.process_name} is running without remote debugging; "
                    f"quit it (or set MCP_COMET_RESTART=1) so it can be restarted with port {port}"
                )
            logger.info("restarting %s with remote debugging on port %d", self.config.process_name, port)
            await asyncio.to_thread(self._terminate_running)
            await self._wait_exited()
            status = StartupStatus.RESTARTED

        cmd = self.build_launch_command()
        logger.info("launching %s", cmd[0])
        self._spawn(cmd)
        attempts = await self._wait_ready()
        verb = "Restarted" if status is StartupStatus.RESTARTED else "Launched"
        return StartupOutcome(status, port, f"{verb} browser with CDP port {port}", command=cmd, attempts=attempts)


__all__ = ["BrowserLauncher", "StartupOutcome", "StartupStatus"]
