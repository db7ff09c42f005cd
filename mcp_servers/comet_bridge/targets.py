"""Browser targets (tabs): discovery, role classification, open/close, attach.

Roles are derived on every read and never stored. The one attached target is
an explicit `Attachment` value handed back by `attach` and passed into the
next call; the manager itself does not remember which tab is current.
"""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from .config import BridgeConfig
from .errors import BridgeError, TargetNotFound
from .http_client import HttpClientError, http_json
from .transport import CdpConnection, connect_target

logger = logging.getLogger("mcp.comet.targets")

Connector = Callable[..., Awaitable[CdpConnection]]


@dataclass(frozen=True)
class Target:
    id: str
    type: str = "page"
    url: str = ""
    title: str = ""
    ws_url: str = ""
    # Creation/discovery order: smaller means older.
    order: int = 0

    @property
    def is_page(self) -> bool:
        return self.type == "page"


@dataclass(frozen=True)
class TargetRoles:
    main: Target | None = None
    agent_browsing: Target | None = None


@dataclass(frozen=True)
class Attachment:
    """The single target commands are currently issued against."""

    target_id: str
    connection: CdpConnection


def classify_targets(targets: Iterable[Target], attached_id: str | None = None) -> TargetRoles:
    """Split targets into the main assistant tab and the agent's browsing tab.

    main is the attached target, or the oldest page when nothing is attached;
    agent_browsing is the newest page that is not main. The input order does
    not matter.
    """
    pages = sorted((t for t in targets if t.is_page), key=lambda t: t.order)
    if not pages:
        return TargetRoles()
    main = next((t for t in pages if attached_id and t.id == attached_id), None) or pages[0]
    others = [t for t in pages if t.id != main.id]
    return TargetRoles(main=main, agent_browsing=others[-1] if others else None)


class TargetManager:
    def __init__(self, config: BridgeConfig, *, connect: Connector = connect_target) -> None:
        self.config = config
        self._connect = connect
        self._order: dict[str, int] = {}
        self._next_order = 0

    def _remember(self, target_id: str) -> int:
        if target_id not in self._order:
            self._order[target_id] = self._next_order
            self._next_order += 1
        return self._order[target_id]

    def _to_target(self, raw: dict[str, Any]) -> Target:
        tid = str(raw.get("id") or "")
        return Target(
            id=tid,
            type=str(raw.get("type") or ""),
            url=str(raw.get("url") or ""),
            title=str(raw.get("title") or ""),
            ws_url=str(raw.get("webSocketDebuggerUrl") or ""),
            order=self._order.get(tid, 0),
        )

    def _call(self, path: str, *, method: str = "GET") -> Any:
        return http_json(self.config.endpoint(path), method=method, timeout=self.config.http_timeout)

    def _list_sync(self) -> list[Target]:
        raw = self._call("/json/list")
        items = [t for t in raw if isinstance(t, dict) and t.get("id")] if isinstance(raw, list) else []
        # Forget targets that are gone, however they were closed.
        listed = {str(item["id"]) for item in items}
        for stale in [tid for tid in self._order if tid not in listed]:
            del self._order[stale]
        # The endpoint lists newest first; number unseen ids oldest first.
        for item in reversed(items):
            self._remember(str(item["id"]))
        return [self._to_target(item) for item in items]

    def _open_sync(self, url: str) -> Target:
        quoted = urllib.parse.quote(url, safe=":/?&=#%+@,;~")
        raw = self._call(f"/json/new?{quoted}", method="PUT")
        if not isinstance(raw, dict) or not raw.get("id"):
            raise BridgeError(f"Failed to open a tab for {url}")
        self._remember(str(raw["id"]))
        return self._to_target(raw)

    def _close_sync(self, target_id: str) -> bool:
        try:
            self._call(f"/json/close/{urllib.parse.quote(target_id)}")
        except HttpClientError as exc:
            if exc.status is not None and 400 <= exc.status < 500:
                # Unknown or already closed target.
                return False
            raise
        self._order.pop(target_id, None)
        return True

    def _activate_sync(self, target_id: str) -> bool:
        try:
            self._call(f"/json/activate/{urllib.parse.quote(target_id)}")
        except HttpClientError as exc:
            if exc.status is not None and 400 <= exc.status < 500:
                return False
            raise
        return True

    async def list_targets(self) -> list[Target]:
        """Fresh list of targets from the endpoint (no caching, no side effects)."""
        return await asyncio.to_thread(self._list_sync)

    async def page_targets(self) -> list[Target]:
        return [t for t in await self.list_targets() if t.is_page]

    async def open_target(self, url: str = "about:blank") -> Target:
        return await asyncio.to_thread(self._open_sync, url)

    async def close_target(self, target_id: str) -> bool:
        """Close a target; closing an unknown id is a no-op returning False."""
        return await asyncio.to_thread(self._close_sync, target_id)

    async def activate_target(self, target_id: str) -> bool:
        """Bring a target to the foreground in the browser UI."""
        return await asyncio.to_thread(self._activate_sync, target_id)

    async def roles(self, attached_id: str | None = None) -> TargetRoles:
        return classify_targets(await self.list_targets(), attached_id)

    async def attach(self, target_id: str, current: Attachment | None = None) -> Attachment:
        """Attach to `target_id`, detaching `current`.

        Callers that borrow a tab must restore the previous attachment
        themselves.
        """
        if current is not None and current.target_id == target_id and not current.connection.closed:
            return current

        known = {t.id for t in await self.list_targets()}
        if target_id not in known:
            raise TargetNotFound(f"No target with id {target_id}")

        conn = await self._connect(self.config.cdp_port, target_id, timeout=self.config.command_timeout)
        if current is not None:
            await current.connection.close()

        # Activation only affects what the user sees; fall back to the HTTP route.
        try:
            await conn.send("Target.activateTarget", {"targetId": target_id})
        except BridgeError as exc:
            logger.debug("activate %s over CDP failed: %s", target_id, exc)
            try:
                await self.activate_target(target_id)
            except BridgeError as http_exc:
                logger.debug("activate %s over HTTP failed: %s", target_id, http_exc)
        logger.debug("attached to %s", target_id)
        return Attachment(target_id=target_id, connection=conn)

    async def detach(self, current: Attachment | None) -> None:
        if current is not None:
            with suppress(BridgeError):
                await current.connection.close()


__all__ = [
    "Attachment",
    "Target",
    "TargetManager",
    "TargetRoles",
    "classify_targets",
]
