from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_HOME_URL = "https://www.perplexity.ai/"

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/Applications/Comet.app/Contents/MacOS/Comet",
    str(Path.home() / "Applications" / "Comet.app" / "Contents" / "MacOS" / "Comet"),
    os.path.expandvars("%LOCALAPPDATA%\\Perplexity\\Comet\\Application\\comet.exe"),
    "C:\\Program Files\\Perplexity\\Comet\\Application\\comet.exe",
    "/usr/bin/comet",
    "/usr/local/bin/comet",
    "/opt/comet/comet",
]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class BridgeConfig:
    binary_path: str
    cdp_port: int = 9222
    profile_path: str | None = None
    extra_flags: list[str] = field(default_factory=list)
    home_url: str = DEFAULT_HOME_URL
    # Polling
    poll_interval: float = 2.0
    quick_response_grace: float = 10.0
    default_timeout_ms: int = 300_000
    # Transport / endpoint
    command_timeout: float = 10.0
    http_timeout: float = 2.0
    # Startup
    startup_retries: int = 12
    startup_backoff: float = 0.25
    backoff_factor: float = 1.5
    max_backoff: float = 3.0
    restart_without_debugging: bool = False
    # UI settle delays (seconds)
    page_settle: float = 2.0
    submit_settle: float = 0.3

    @property
    def process_name(self) -> str:
        return Path(self.binary_path).stem or "comet"

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("MCP_COMET_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "comet.exe" if sys.platform.startswith("win") else "comet"

    @classmethod
    def from_env(cls) -> BridgeConfig:
        profile_raw = os.environ.get("MCP_COMET_PROFILE", "").strip()
        flags_raw = os.environ.get("MCP_COMET_FLAGS", "")
        extra_flags = [flag.strip() for flag in flags_raw.split(",") if flag.strip()]
        return cls(
            binary_path=cls.detect_binary(),
            cdp_port=_env_int("MCP_COMET_PORT", 9222),
            profile_path=expand_path(profile_raw) if profile_raw else None,
            extra_flags=extra_flags,
            home_url=os.environ.get("MCP_COMET_HOME_URL", "").strip() or DEFAULT_HOME_URL,
            poll_interval=_env_float("MCP_COMET_POLL_INTERVAL", 2.0),
            quick_response_grace=_env_float("MCP_COMET_GRACE_SECONDS", 10.0),
            default_timeout_ms=_env_int("MCP_COMET_TIMEOUT_MS", 300_000),
            command_timeout=_env_float("MCP_COMET_COMMAND_TIMEOUT", 10.0),
            http_timeout=_env_float("MCP_COMET_HTTP_TIMEOUT", 2.0),
            startup_retries=_env_int("MCP_COMET_STARTUP_RETRIES", 12),
            startup_backoff=_env_float("MCP_COMET_STARTUP_BACKOFF", 0.25),
            restart_without_debugging=os.environ.get("MCP_COMET_RESTART", "0") == "1",
        )

    def endpoint(self, path: str = "") -> str:
        return f"http://127.0.0.1:{self.cdp_port}{path}"

    def is_home(self, url: str | None) -> bool:
        """True when `url` is on the assistant's own site."""
        home_host = (urlparse(self.home_url).hostname or "").removeprefix("www.")
        host = (urlparse(url or "").hostname or "").removeprefix("www.")
        return bool(home_host) and (host == home_host or host.endswith("." + home_host))
