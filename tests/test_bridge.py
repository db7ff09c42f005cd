from __future__ import annotations

import asyncio
import io
from typing import Any

from PIL import Image

from mcp_servers.comet_bridge.bridge import AskResult, CometBridge, ModeInfo
from mcp_servers.comet_bridge.config import BridgeConfig
from mcp_servers.comet_bridge.errors import CommandTimeout, DebuggingRequired, ExtractionEmpty, TargetNotFound
from mcp_servers.comet_bridge.launcher import StartupOutcome, StartupStatus
from mcp_servers.comet_bridge.status import TaskSnapshot
from mcp_servers.comet_bridge.targets import Attachment, Target, classify_targets

HOME = "https://www.perplexity.ai/"


def _png(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(buf, format="PNG")
    return buf.getvalue()


class FakeConn:
    def __init__(self, target_id: str) -> None:
        self.target_id = target_id
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeTargets:
    def __init__(self, tabs: list[Target]) -> None:
        self.tabs = tabs
        self.attached: list[str] = []
        self.closed: list[str] = []

    async def page_targets(self) -> list[Target]:
        return [t for t in self.tabs if t.is_page]

    async def roles(self, attached_id: str | None = None):  # noqa: ANN201
        return classify_targets(self.tabs, attached_id)

    async def close_target(self, target_id: str) -> bool:
        self.closed.append(target_id)
        self.tabs = [t for t in self.tabs if t.id != target_id]
        return True

    async def open_target(self, url: str = "about:blank") -> Target:
        tab = Target(id="NEW", url=url, order=99)
        self.tabs.append(tab)
        return tab

    async def attach(self, target_id: str, current: Attachment | None = None) -> Attachment:
        if current is not None and current.target_id == target_id and not current.connection.closed:
            return current
        if target_id not in {t.id for t in self.tabs}:
            raise TargetNotFound(target_id)
        if current is not None:
            await current.connection.close()
        self.attached.append(target_id)
        return Attachment(target_id=target_id, connection=FakeConn(target_id))  # type: ignore[arg-type]

    async def detach(self, current: Attachment | None) -> None:
        if current is not None:
            await current.connection.close()


class FakeLauncher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.stopped = 0

    async def ensure_running(self, debug_port: int | None = None) -> StartupOutcome:  # noqa: ARG002
        if self.error is not None:
            raise self.error
        return StartupOutcome(StartupStatus.ALREADY_RUNNING, 9222, "Browser already listening on CDP port 9222")

    def stop(self, *, timeout: float = 2.0) -> bool:  # noqa: ARG002
        self.stopped += 1
        return False


class PageState:
    """Per-tab behaviour shared by every FakePage built for that tab."""

    def __init__(self, url: str = HOME, png: bytes = b"") -> None:
        self.url = url
        self.png = png
        self.snapshots: list[TaskSnapshot] = []
        self.prompts: list[str] = []
        self.navigations: list[str] = []
        self.input_missing = False
        self.screenshot_error: Exception | None = None
        self.mode = "search"


class FakePage:
    def __init__(self, state: PageState) -> None:
        self.state = state

    async def get_url(self) -> str:
        return self.state.url

    async def navigate(self, url: str, *, wait_load: bool = True, timeout: float = 10.0) -> str:  # noqa: ARG002
        self.state.navigations.append(url)
        self.state.url = url
        return url

    async def send_prompt(self, prompt: str) -> str:
        if self.state.input_missing:
            raise ExtractionEmpty("Could not find the prompt input")
        self.state.prompts.append(prompt)
        return "Prompt sent"

    async def inspect(self) -> dict[str, Any]:
        return {"hasInput": False, "page": {"url": self.state.url}}

    async def take_snapshot(self) -> TaskSnapshot:
        if len(self.state.snapshots) > 1:
            return self.state.snapshots.pop(0)
        return self.state.snapshots[0]

    async def stop_agent(self) -> bool:
        return True

    async def screenshot(self) -> bytes:
        if self.state.screenshot_error is not None:
            raise self.state.screenshot_error
        return self.state.png

    async def current_mode(self) -> str:
        return self.state.mode

    async def switch_mode(self, mode: str) -> tuple[bool, str]:
        self.state.mode = mode
        return True, f"Switched to {mode} mode"


class FakeTime:
    def __init__(self) -> None:
        self.now = 0.0

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds


def _bridge(
    tabs: list[Target],
    states: dict[str, PageState],
    *,
    launcher: FakeLauncher | None = None,
) -> tuple[CometBridge, FakeTargets, FakeTime]:
    cfg = BridgeConfig(binary_path="/usr/bin/comet", poll_interval=2.0, quick_response_grace=10.0)
    targets = FakeTargets(tabs)
    fake = FakeTime()
    bridge = CometBridge(
        cfg,
        launcher=launcher or FakeLauncher(),  # type: ignore[arg-type]
        targets=targets,  # type: ignore[arg-type]
        page_factory=lambda conn: FakePage(states.setdefault(conn.target_id, PageState())),  # type: ignore[arg-type,attr-defined]
        clock=fake.clock,
        sleep=fake.sleep,
    )
    return bridge, targets, fake


async def _attach_main(bridge: CometBridge, targets: FakeTargets) -> None:
    """Attach to A without `connect`, which would close the agent tab."""
    bridge._set_attachment(await targets.attach("A"))


def _tabs() -> list[Target]:
    return [
        Target(id="A", url=HOME, order=0),
        Target(id="B", url="https://flights.example/", order=1),
    ]


def test_connect_keeps_one_tab_and_goes_home() -> None:
    tabs = [*_tabs(), Target(id="C", url="https://c.example/", order=2)]
    states: dict[str, PageState] = {"A": PageState(url="https://elsewhere.example/")}
    bridge, targets, _ = _bridge(tabs, states)

    message = asyncio.run(bridge.connect())
    assert "cleaned 2 old tabs" in message
    assert sorted(targets.closed) == ["B", "C"]
    assert bridge.attachment is not None and bridge.attachment.target_id == "A"
    assert states["A"].navigations == [HOME]


def test_connect_opens_a_tab_when_none_exist() -> None:
    bridge, targets, _ = _bridge([], {})
    message = asyncio.run(bridge.connect())
    assert "Created new tab" in message
    assert targets.attached == ["NEW"]


def test_ask_agentic_prefix_and_completion() -> None:
    states = {"A": PageState()}
    states["A"].snapshots = [
        TaskSnapshot(body="Searching flights", stop_active=True),
        TaskSnapshot(body="Reviewed 3 sources\nThe cheapest flight is on Tuesday.\nRelated"),
    ]
    bridge, _, _ = _bridge(_tabs(), states)

    async def main() -> AskResult:
        await bridge.connect()
        return await bridge.ask("find flights", agentic=True)

    result = asyncio.run(main())
    assert states["A"].prompts == ["Take control of my browser and find flights"]
    assert result.completed
    assert result.response == "The cheapest flight is on Tuesday."
    assert result.render() == result.response


def test_ask_goes_home_when_off_site_or_new_conversation() -> None:
    states = {"A": PageState()}
    states["A"].snapshots = [TaskSnapshot(body="Working…"), TaskSnapshot(body="Finished")]
    bridge, _, _ = _bridge(_tabs(), states)

    async def main() -> None:
        await bridge.connect()
        states["A"].navigations.clear()
        await bridge.ask("hello")
        assert states["A"].navigations == []

        states["A"].snapshots = [TaskSnapshot(body="Working…"), TaskSnapshot(body="Finished")]
        await bridge.ask("hello again", new_conversation=True)
        assert states["A"].navigations == [HOME]

        states["A"].url = "https://news.example/"
        states["A"].snapshots = [TaskSnapshot(body="Working…"), TaskSnapshot(body="Finished")]
        await bridge.ask("third")
        assert states["A"].navigations == [HOME, HOME]

    asyncio.run(main())


def test_ask_timeout_returns_bundle() -> None:
    states = {"A": PageState()}
    states["A"].snapshots = [TaskSnapshot(body="Reading https://slow.example", stop_active=True)]
    bridge, targets, _ = _bridge(_tabs(), states)

    async def main() -> AskResult:
        await _attach_main(bridge, targets)
        return await bridge.ask("slow task", timeout_ms=6000)

    result = asyncio.run(main())
    assert not result.completed
    assert result.steps == ["Reading https://slow.example"]
    text = result.render()
    assert text.startswith("Timeout after")
    assert "poll()" in text
    # The progress log survives the timeout, agent tab transitions included.
    assert any(line.endswith("Browsing: https://flights.example/") for line in result.log)
    assert "Browsing: https://flights.example/" in text
    assert result.log[-1].endswith("Timeout")


def test_non_positive_timeout_uses_the_default() -> None:
    states = {"A": PageState()}
    states["A"].snapshots = [TaskSnapshot(body="Working…"), TaskSnapshot(body="Reviewed 1 source\nShort answer here\nRelated")]
    bridge, targets, fake = _bridge(_tabs(), states)

    async def main() -> AskResult:
        await _attach_main(bridge, targets)
        return await bridge.ask("quick", timeout_ms=0)

    result = asyncio.run(main())
    assert result.completed
    assert result.response == "Short answer here"
    assert fake.now == 4.0


def test_missing_input_is_a_send_prompt_error() -> None:
    states = {"A": PageState()}
    states["A"].input_missing = True
    bridge, _, _ = _bridge(_tabs(), states)

    async def main():  # noqa: ANN202
        await bridge.connect()
        return await bridge.invoke("ask", prompt="hello")

    res = asyncio.run(main())
    assert res.is_error
    assert res.data["stage"] == "send-prompt"
    assert res.data["details"]["hasInput"] is False
    assert "connect()" in res.data["suggestion"]


def test_empty_prompt_is_rejected() -> None:
    bridge, _, _ = _bridge(_tabs(), {})

    async def main():  # noqa: ANN202
        await bridge.connect()
        return await bridge.invoke("ask", prompt="   ")

    res = asyncio.run(main())
    assert res.is_error
    assert res.data["stage"] == "send-prompt"
    assert "empty" in res.data["error"]


def test_agent_screenshot_borrows_and_restores_main() -> None:
    states = {"A": PageState(), "B": PageState(url="https://flights.example/", png=_png(8, 5))}
    bridge, targets, _ = _bridge(_tabs(), states)

    async def main():  # noqa: ANN202
        await _attach_main(bridge, targets)
        return await bridge.screenshot(agent_tab=True)

    shot = asyncio.run(main())
    assert (shot.width, shot.height) == (8, 5)
    assert shot.url == "https://flights.example/"
    assert targets.attached == ["A", "B", "A"]
    assert bridge.attachment is not None and bridge.attachment.target_id == "A"


def test_agent_screenshot_restores_main_on_failure() -> None:
    states = {"A": PageState(), "B": PageState()}
    states["B"].screenshot_error = CommandTimeout("Page.captureScreenshot: no response within 10.0s")
    bridge, targets, _ = _bridge(_tabs(), states)

    async def main():  # noqa: ANN202
        await _attach_main(bridge, targets)
        return await bridge.invoke("screenshot", agent_tab=True)

    res = asyncio.run(main())
    assert res.is_error
    assert res.data["stage"] == "screenshot"
    assert targets.attached[-1] == "A"
    assert bridge.attachment is not None and bridge.attachment.target_id == "A"
    assert not bridge.attachment.connection.closed


def test_agent_screenshot_without_agent_tab() -> None:
    bridge, targets, _ = _bridge([Target(id="A", url=HOME, order=0)], {})

    async def main():  # noqa: ANN202
        await bridge.connect()
        try:
            await bridge.screenshot(agent_tab=True)
        except TargetNotFound:
            return "raised"
        return "no error"

    assert asyncio.run(main()) == "raised"
    assert targets.attached == ["A"]


def test_main_screenshot_has_image_content() -> None:
    states = {"A": PageState(png=_png(3, 2))}
    bridge, _, _ = _bridge(_tabs(), states)

    async def main():  # noqa: ANN202
        await bridge.connect()
        return await bridge.invoke("screenshot")

    res = asyncio.run(main())
    assert not res.is_error
    assert [c["type"] for c in res.to_content_list()] == ["text", "image"]
    assert res.data == {"url": HOME, "width": 3, "height": 2}


def test_poll_before_connect_names_the_stage() -> None:
    bridge, _, _ = _bridge(_tabs(), {})
    res = asyncio.run(bridge.invoke("poll"))
    assert res.is_error
    assert res.data["stage"] == "poll"
    assert "connect()" in res.data["suggestion"]


def test_poll_reports_agent_browsing_url() -> None:
    states = {"A": PageState()}
    states["A"].snapshots = [TaskSnapshot(body="Clicking Book", stop_active=True)]
    bridge, targets, _ = _bridge(_tabs(), states)

    async def main():  # noqa: ANN202
        await _attach_main(bridge, targets)
        return await bridge.invoke("poll")

    res = asyncio.run(main())
    assert res.data["status"] == "working"
    assert res.data["agentBrowsingUrl"] == "https://flights.example/"
    assert "Browsing: https://flights.example/" in res.content[0].text


def test_startup_failure_is_a_startup_stage_error() -> None:
    launcher = FakeLauncher(DebuggingRequired("comet is running without remote debugging"))
    bridge, _, _ = _bridge(_tabs(), {}, launcher=launcher)

    res = asyncio.run(bridge.invoke("connect"))
    assert res.is_error
    assert res.data["stage"] == "startup"
    assert "MCP_COMET_RESTART" in res.data["suggestion"]


def test_mode_read_and_switch() -> None:
    states = {"A": PageState()}
    bridge, _, _ = _bridge(_tabs(), states)

    async def main() -> None:
        await bridge.connect()
        info = await bridge.set_mode()
        assert isinstance(info, ModeInfo)
        assert "→ search: Basic web search" in info.render()

        assert await bridge.set_mode("research") == "Switched to research mode"
        assert states["A"].mode == "research"

        res = await bridge.invoke("mode", mode="turbo")
        assert res.is_error
        assert res.data["stage"] == "mode"
        assert "Invalid mode" in res.data["error"]

    asyncio.run(main())


def test_stop_and_unknown_operation() -> None:
    bridge, _, _ = _bridge(_tabs(), {})

    async def main() -> None:
        await bridge.connect()
        res = await bridge.invoke("stop")
        assert res.content[0].text == "Agent stopped"
        unknown = await bridge.invoke("reload")
        assert unknown.is_error

    asyncio.run(main())


def test_close_detaches_and_stops_owned_browser() -> None:
    launcher = FakeLauncher()
    bridge, _, _ = _bridge(_tabs(), {}, launcher=launcher)

    async def main() -> FakeConn:
        await bridge.connect()
        assert bridge.attachment is not None
        conn = bridge.attachment.connection
        await bridge.close()
        return conn  # type: ignore[return-value]

    conn = asyncio.run(main())
    assert conn.closed
    assert bridge.attachment is None
    assert launcher.stopped == 1
