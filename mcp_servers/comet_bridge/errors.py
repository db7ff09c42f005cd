"""Error taxonomy for the Comet bridge.

Transport and manager code raise the specific classes below. The bridge wraps
anything that escapes an operation into a `StageError` naming the stage that
failed, so callers always get a structured failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class BridgeError(Exception):
    """Base class for all bridge failures."""


class CdpConnectionError(BridgeError, ConnectionError):
    """Debugging endpoint unreachable, or the handshake for a target was rejected."""


class ConnectionClosed(BridgeError):
    """The CDP channel dropped (or was closed) while a command was in flight."""


class CommandTimeout(BridgeError):
    """No response frame arrived for a command within its timeout."""


class CdpProtocolError(BridgeError):
    """The endpoint answered a command with an error frame."""

    def __init__(self, method: str, error: Any) -> None:
        self.method = method
        self.error = error
        message = error.get("message") if isinstance(error, dict) else None
        super().__init__(f"{method}: {message or error}")


class StartupError(BridgeError):
    """The browser process could not be made debuggable."""


class StartupTimeout(StartupError):
    """The browser never answered on the debug port within the retry budget."""


class DebuggingRequired(StartupError):
    """The browser is running without remote debugging and must be restarted."""


class TargetNotFound(BridgeError):
    """Attach/close/screenshot against a target id the endpoint does not list."""


class ExtractionEmpty(BridgeError):
    """No input or response surface was found: the page is not the assistant UI."""


class PollTimeout(BridgeError):
    """A poll run reached its deadline without a terminal status."""

    def __init__(self, elapsed: float, steps: list[str], log: list[str] | None = None) -> None:
        self.elapsed = elapsed
        self.steps = list(steps)
        self.log = list(log or ())
        super().__init__(f"Timeout after {elapsed:.0f}s")


@dataclass
class StageError(Exception):
    """Structured failure with the stage that failed and any partial progress."""

    stage: str
    reason: str
    suggestion: str = ""
    steps: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        text = f"[{self.stage}] failed: {self.reason}"
        if self.suggestion:
            text += f". Suggestion: {self.suggestion}"
        return text


__all__ = [
    "BridgeError",
    "CdpConnectionError",
    "CdpProtocolError",
    "CommandTimeout",
    "ConnectionClosed",
    "DebuggingRequired",
    "ExtractionEmpty",
    "PollTimeout",
    "StageError",
    "StartupError",
    "StartupTimeout",
    "TargetNotFound",
]
