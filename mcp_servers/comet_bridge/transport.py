"""CDP transport: one websocket, many in-flight commands, a stream of events.

Commands are correlated to responses by id, so callers may pipeline sends and
responses may arrive in any order. Events (frames with a `method` but no `id`)
are fanned out to listeners in arrival order from the single read loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed as WebSocketClosed
from websockets.exceptions import InvalidHandshake, InvalidURI

from .errors import CdpConnectionError, CdpProtocolError, CommandTimeout, ConnectionClosed

logger = logging.getLogger("mcp.comet.transport")

EventListener = Callable[[dict[str, Any]], None]


class CdpConnection:
    """Low-level CDP WebSocket connection."""

    def __init__(self, ws: Any, ws_url: str, *, timeout: float = 10.0) -> None:
        self.ws = ws
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._pending_methods: dict[int, str] = {}
        self._listeners: dict[str, list[EventListener]] = {}
        self._reader: asyncio.Task[None] | None = None
        self._closed = False
        self._close_reason = "connection closed"

    @classmethod
    async def open(cls, ws_url: str, *, timeout: float = 10.0) -> CdpConnection:
        """Connect to a CDP websocket URL and start the read loop."""
        try:
            ws = await websockets.connect(ws_url, max_size=None, ping_interval=None, open_timeout=timeout)
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise CdpConnectionError(f"Cannot connect to {ws_url}: {exc}") from exc
        conn = cls(ws, ws_url, timeout=timeout)
        conn.start()
        logger.debug("connected %s", ws_url)
        return conn

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the read loop (must be called from inside the event loop)."""
        if self._reader is None:
            self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a CDP command and wait for its response."""
        if self._closed:
            raise ConnectionClosed(f"{method}: {self._close_reason}")

        msg_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params

        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        self._pending_methods[msg_id] = method
        try:
            try:
                await self.ws.send(json.dumps(msg))
            except WebSocketClosed as exc:
                raise ConnectionClosed(f"{method}: {exc}") from exc
            except OSError as exc:
                raise CdpConnectionError(f"{method}: send failed: {exc}") from exc

            limit = self.timeout if timeout is None else timeout
            try:
                return await asyncio.wait_for(fut, timeout=limit)
            except asyncio.TimeoutError as exc:
                raise CommandTimeout(f"{method}: no response within {limit:.1f}s") from exc
        finally:
            self._pending.pop(msg_id, None)
            self._pending_methods.pop(msg_id, None)
            # The read loop may have failed the future while the send was in flight.
            if not fut.done():
                fut.cancel()
            elif not fut.cancelled():
                fut.exception()

    # ─────────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────────

    def on(self, event: str, listener: EventListener) -> None:
        """Register a listener for an event; it receives the event params."""
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: EventListener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        with suppress(ValueError):
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(event, None)

    def expect_event(self, event: str) -> asyncio.Future[dict[str, Any]]:
        """Return a future for the next occurrence of `event`.

        The listener is registered immediately, so an event triggered by a
        command sent right after this call cannot be missed.
        """
        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()

        def _once(params: dict[str, Any]) -> None:
            if not fut.done():
                fut.set_result(params)

        self.on(event, _once)
        fut.add_done_callback(lambda _f: self.off(event, _once))
        return fut

    async def wait_for_event(self, event: str, timeout: float = 10.0) -> dict[str, Any] | None:
        """Wait for the next occurrence of an event; None on timeout."""
        try:
            return await asyncio.wait_for(self.expect_event(event), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def _dispatch_event(self, event: str, params: dict[str, Any]) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(params)
            except Exception:  # noqa: BLE001
                logger.exception("listener for %s failed", event)

    # ─────────────────────────────────────────────────────────────────────────
    # Read loop
    # ─────────────────────────────────────────────────────────────────────────

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("dropping undecodable CDP frame (%d bytes)", len(raw))
            return
        if not isinstance(data, dict):
            logger.warning("dropping non-object CDP frame")
            return

        if "id" in data:
            fut = self._pending.get(data["id"]) if isinstance(data["id"], int) else None
            if fut is None:
                logger.debug("response for unknown id %r ignored", data.get("id"))
                return
            if fut.done():
                return
            if "error" in data:
                fut.set_exception(CdpProtocolError(self._pending_methods.get(data["id"], "command"), data["error"]))
            else:
                result = data.get("result")
                fut.set_result(result if isinstance(result, dict) else {})
            return

        method = data.get("method")
        if isinstance(method, str):
            params = data.get("params")
            self._dispatch_event(method, params if isinstance(params, dict) else {})
            return
        logger.warning("dropping CDP frame without id or method")

    async def _read_loop(self) -> None:
        reason = "connection closed by endpoint"
        try:
            async for raw in self.ws:
                self._handle_frame(raw)
        except WebSocketClosed as exc:
            reason = f"connection dropped: {exc}"
        except asyncio.CancelledError:
            reason = "connection closed"
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("CDP read loop failed")
            reason = f"read loop failed: {exc}"
        finally:
            self._shutdown(reason)

    def _shutdown(self, reason: str) -> None:
        if not self._closed:
            self._closed = True
            self._close_reason = reason
            logger.debug("%s (%s)", reason, self.ws_url)
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(ConnectionClosed(self._close_reason))
        self._listeners.clear()

    async def close(self) -> None:
        """Close the connection, failing every in-flight command."""
        self._shutdown("connection closed")
        with suppress(Exception):
            await self.ws.close()
        reader = self._reader
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await reader


async def connect_target(port: int, target_id: str, *, timeout: float = 10.0) -> CdpConnection:
    """Open a connection scoped to one page target on the local debug port."""
    if not target_id or not str(target_id).strip():
        raise CdpConnectionError("target id is required")
    return await CdpConnection.open(f"ws://127.0.0.1:{port}/devtools/page/{target_id}", timeout=timeout)


__all__ = ["CdpConnection", "EventListener", "connect_target"]
