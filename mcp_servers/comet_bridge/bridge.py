"""CometBridge: the inbound surface (connect / ask / poll / stop / screenshot / mode).

The bridge owns the one `Attachment` and the page wrapper built on it. Every
operation is a coroutine on a single event loop; the screenshot borrow of the
agent tab runs start to finish inside one `try/finally`, so nothing else can
observe the temporary attachment.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from PIL import Image, UnidentifiedImageError

from .config import BridgeConfig
from .errors import (
    BridgeError,
    CdpConnectionError,
    CommandTimeout,
    ConnectionClosed,
    DebuggingRequired,
    ExtractionEmpty,
    PollTimeout,
    StageError,
    StartupError,
    StartupTimeout,
    TargetNotFound,
)
from .launcher import BrowserLauncher
from .markers import AGENTIC_PREFIX, DEFAULT_MARKERS, DEFAULT_SELECTORS, MODE_DESCRIPTIONS, MarkerTable, PageSelectors
from .orchestrator import PollOrchestrator
from .page import CometPage
from .results import ToolResult
from .status import TaskStatus, classify, format_status
from .targets import Attachment, TargetManager, classify_targets
from .transport import CdpConnection

logger = logging.getLogger("mcp.comet.bridge")

PageFactory = Callable[[CdpConnection], CometPage]

_OPERATION_STAGES = {
    "connect": "connect",
    "ask": "send-prompt",
    "poll": "poll",
    "stop": "stop",
    "screenshot": "screenshot",
    "mode": "mode",
}


@dataclass
class Screenshot:
    png: bytes
    width: int
    height: int
    url: str = ""


@dataclass
class AskResult:
    completed: bool
    response: str = ""
    steps: list[str] = field(default_factory=list)
    elapsed: float = 0.0
    log: list[str] = field(default_factory=list)

    def render(self) -> str:
        if self.completed:
            return self.response
        progress = "\n".join(self.log) if self.log else "\n".join(f"  • {s}" for s in self.steps)
        return (
            f"Timeout after {self.elapsed:.0f}s.\n\n"
            f"Progress:\n{progress or '(no steps observed)'}\n\n"
            "Use poll() to check if still working."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "response": self.response,
            "steps": list(self.steps),
            "elapsed": round(self.elapsed, 1),
        }


@dataclass
class ModeInfo:
    current: str
    available: dict[str, str] = field(default_factory=lambda: dict(MODE_DESCRIPTIONS))

    def render(self) -> str:
        lines = [f"Current mode: {self.current}", "", "Available modes:"]
        for mode, description in self.available.items():
            marker = "→" if mode == self.current else " "
            lines.append(f"{marker} {mode}: {description}")
        return "\n".join(lines)


def image_size(png: bytes) -> tuple[int, int]:
    """Decode just enough of the image to read its dimensions."""
    try:
        with Image.open(io.BytesIO(png)) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("cannot read screenshot dimensions: %s", exc)
        return 0, 0


def _suggestion_for(exc: BaseException, config: BridgeConfig) -> str:
    if isinstance(exc, DebuggingRequired):
        return "Quit the browser (or set MCP_COMET_RESTART=1) and call connect() again"
    if isinstance(exc, StartupTimeout):
        return f"Check MCP_COMET_BINARY and that port {config.cdp_port} is free"
    if isinstance(exc, ExtractionEmpty):
        return "Call connect() to reload the assistant page"
    if isinstance(exc, TargetNotFound):
        return "The tab is gone; call connect() to refresh tabs"
    if isinstance(exc, (CdpConnectionError, ConnectionClosed, CommandTimeout)):
        return "Call connect() to re-attach to the browser"
    return ""


class CometBridge:
    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        launcher: BrowserLauncher | None = None,
        targets: TargetManager | None = None,
        page_factory: PageFactory | None = None,
        markers: MarkerTable = DEFAULT_MARKERS,
        selectors: PageSelectors = DEFAULT_SELECTORS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or BridgeConfig.from_env()
        self.launcher = launcher or BrowserLauncher(self.config)
        self.targets = targets or TargetManager(self.config)
        self.markers = markers
        self.selectors = selectors
        self._page_factory = page_factory or self._default_page
        self._clock = clock
        self._sleep = sleep
        self.attachment: Attachment | None = None
        self.page: CometPage | None = None

    def _default_page(self, conn: CdpConnection) -> CometPage:
        return CometPage(conn, self.selectors, submit_settle=self.config.submit_settle)

    def _set_attachment(self, attachment: Attachment) -> None:
        self.attachment = attachment
        self.page = self._page_factory(attachment.connection)

    def _require_page(self) -> CometPage:
        if self.page is None or self.attachment is None or self.attachment.connection.closed:
            raise ConnectionClosed("Not connected to the browser")
        return self.page

    async def close(self) -> None:
        """Detach, and stop the browser if this bridge launched it."""
        await self.targets.detach(self.attachment)
        self.attachment = None
        self.page = None
        if await asyncio.to_thread(self.launcher.stop):
            logger.info("stopped the browser started by this bridge")

    # ─────────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> str:
        """Start (or find) the browser, keep one tab, attach and open the home page."""
        outcome = await self.launcher.ensure_running()
        keep_id = self.attachment.target_id if self.attachment else None
        pages = await self.targets.page_targets()
        roles = classify_targets(pages, keep_id)

        if roles.main is None:
            tab = await self.targets.open_target(self.config.home_url)
            await self._sleep(self.config.page_settle)
            self._set_attachment(await self.targets.attach(tab.id, self.attachment))
            return f"{outcome.message}\nCreated new tab and navigated to {self.config.home_url}"

        closed = 0
        for tab in pages:
            if tab.id == roles.main.id:
                continue
            try:
                if await self.targets.close_target(tab.id):
                    closed += 1
            except BridgeError as exc:
                logger.debug("closing extra tab %s failed: %s", tab.id, exc)

        self._set_attachment(await self.targets.attach(roles.main.id, self.attachment))
        page = self._require_page()
        await page.navigate(self.config.home_url, wait_load=True, timeout=self.config.command_timeout)
        await self._sleep(self.config.page_settle)
        return f"{outcome.message}\nConnected to {self.config.home_url} (cleaned {closed} old tabs)"

    async def _agent_url(self) -> str:
        try:
            roles = await self.targets.roles(self.attachment.target_id if self.attachment else None)
        except BridgeError as exc:
            logger.debug("agent tab lookup failed: %s", exc)
            return ""
        return roles.agent_browsing.url if roles.agent_browsing else ""

    async def _sample(self) -> TaskStatus:
        page = self._require_page()
        agent_url = await self._agent_url()
        snapshot = await page.take_snapshot()
        return classify(snapshot, self.markers, agent_browsing_url=agent_url)

    async def ask(
        self,
        prompt: str,
        timeout_ms: int | None = None,
        new_conversation: bool = False,
        agentic: bool = False,
    ) -> AskResult:
        """Send a prompt and wait for the answer, or return a timeout bundle."""
        if not prompt or not prompt.strip():
            raise StageError(stage="send-prompt", reason="prompt cannot be empty")
        if agentic:
            prompt = AGENTIC_PREFIX + prompt
        page = self._require_page()

        try:
            if new_conversation or not self.config.is_home(await page.get_url()):
                await page.navigate(self.config.home_url, wait_load=True, timeout=self.config.command_timeout)
                await self._sleep(self.config.page_settle)
            await page.send_prompt(prompt)
        except ExtractionEmpty as exc:
            details: dict[str, Any] = {}
            try:
                details = await page.inspect()
            except BridgeError as inspect_exc:
                logger.debug("page inspect failed: %s", inspect_exc)
            raise StageError(
                stage="send-prompt",
                reason=str(exc),
                suggestion=_suggestion_for(exc, self.config),
                details=details,
            ) from exc

        # A missing or non-positive timeout means the configured default.
        limit_ms = timeout_ms if timeout_ms and timeout_ms > 0 else self.config.default_timeout_ms
        orchestrator = PollOrchestrator(self._sample, self.config, clock=self._clock, sleep=self._sleep)
        try:
            outcome = await orchestrator.run(limit_ms / 1000.0)
        except PollTimeout as exc:
            logger.info("ask timed out after %.0fs with %d steps", exc.elapsed, len(exc.steps))
            return AskResult(completed=False, steps=exc.steps, elapsed=exc.elapsed, log=exc.log)
        return AskResult(
            completed=True,
            response=outcome.response,
            steps=outcome.steps,
            elapsed=outcome.elapsed,
            log=outcome.log,
        )

    async def poll(self) -> TaskStatus:
        return await self._sample()

    async def stop(self) -> bool:
        return await self._require_page().stop_agent()

    async def screenshot(self, agent_tab: bool = False) -> Screenshot:
        """Capture the attached tab, or borrow the agent's browsing tab and restore."""
        page = self._require_page()
        if not agent_tab:
            png = await page.screenshot()
            width, height = image_size(png)
            return Screenshot(png=png, width=width, height=height, url=await page.get_url())

        main_id = self.attachment.target_id if self.attachment else ""
        roles = await self.targets.roles(main_id)
        if roles.agent_browsing is None:
            raise TargetNotFound("No agent browsing tab found")

        agent = roles.agent_browsing
        borrowed: Attachment | None = None
        try:
            borrowed = await self.targets.attach(agent.id, self.attachment)
            self.attachment = borrowed
            png = await self._page_factory(borrowed.connection).screenshot()
        finally:
            # Always re-attach the main tab, even when the capture failed.
            self._set_attachment(await self.targets.attach(main_id, borrowed or self.attachment))
        width, height = image_size(png)
        return Screenshot(png=png, width=width, height=height, url=agent.url)

    async def set_mode(self, mode: str | None = None) -> ModeInfo | str:
        """Read the current search mode, or switch to `mode`."""
        page = self._require_page()
        if not mode:
            return ModeInfo(current=await page.current_mode())
        if mode not in self.selectors.modes:
            raise StageError(
                stage="mode",
                reason=f"Invalid mode: {mode}. Use: {', '.join(self.selectors.modes)}",
            )
        ok, message = await page.switch_mode(mode)
        if not ok:
            raise StageError(stage="mode", reason=message, suggestion="Widen the window so the mode buttons show")
        return message

    # ─────────────────────────────────────────────────────────────────────────
    # Structured dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def _run(self, operation: str, kwargs: dict[str, Any]) -> ToolResult:
        if operation == "connect":
            return ToolResult.text(await self.connect())
        if operation == "ask":
            result = await self.ask(**kwargs)
            return ToolResult.text(result.render(), data=result.to_dict())
        if operation == "poll":
            status = await self.poll()
            return ToolResult.text(format_status(status), data=status.to_dict())
        if operation == "stop":
            stopped = await self.stop()
            return ToolResult.text("Agent stopped" if stopped else "No active agent to stop", data={"stopped": stopped})
        if operation == "screenshot":
            shot = await self.screenshot(**kwargs)
            label = f"Agent browsing: {shot.url}" if kwargs.get("agent_tab") else f"Screenshot of {shot.url}"
            return ToolResult.with_image(
                label, shot.png, data={"url": shot.url, "width": shot.width, "height": shot.height}
            )
        if operation == "mode":
            info = await self.set_mode(**kwargs)
            if isinstance(info, ModeInfo):
                return ToolResult.text(info.render(), data={"current": info.current})
            return ToolResult.text(info)
        return ToolResult.error(f"Unknown operation: {operation}", suggestion=f"Use one of: {', '.join(_OPERATION_STAGES)}")

    async def invoke(self, operation: str, **kwargs: Any) -> ToolResult:
        """Run one operation; every failure becomes an error result naming its stage."""
        stage = _OPERATION_STAGES.get(operation, operation)
        try:
            return await self._run(operation, kwargs)
        except StageError as exc:
            logger.info("stage_error stage=%s reason=%s", exc.stage, exc.reason)
            return ToolResult.error(
                exc.reason, stage=exc.stage, suggestion=exc.suggestion, steps=exc.steps, details=exc.details
            )
        except BridgeError as exc:
            if isinstance(exc, StartupError):
                stage = "startup"
            logger.info("bridge_error stage=%s %s", stage, exc)
            return ToolResult.error(str(exc), stage=stage, suggestion=_suggestion_for(exc, self.config))
        except Exception as exc:  # noqa: BLE001
            logger.exception("operation_failed operation=%s", operation)
            return ToolResult.error(f"{type(exc).__name__}: {exc}", stage=stage)


__all__ = ["AskResult", "CometBridge", "ModeInfo", "PageFactory", "Screenshot", "image_size"]
