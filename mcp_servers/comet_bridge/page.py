"""Page-level operations on the attached assistant tab.

Wraps a `CdpConnection` with the handful of primitives the bridge needs:
evaluate, key press, navigate, screenshot, prompt submission, stop, mode
switching and status snapshots.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any

from .errors import CdpProtocolError, ExtractionEmpty
from .markers import DEFAULT_SELECTORS, PageSelectors
from .status import TaskSnapshot
from .transport import CdpConnection

logger = logging.getLogger("mcp.comet.page")

_KEY_CODES = {
    "Enter": 13,
    "Tab": 9,
    "Escape": 27,
    "Backspace": 8,
    "Delete": 46,
    "ArrowUp": 38,
    "ArrowDown": 40,
    "ArrowLeft": 37,
    "ArrowRight": 39,
}


class CometPage:
    """High-level operations for the tab behind one connection."""

    def __init__(
        self,
        connection: CdpConnection,
        selectors: PageSelectors = DEFAULT_SELECTORS,
        *,
        submit_settle: float = 0.3,
    ) -> None:
        self.conn = connection
        self.selectors = selectors
        self.submit_settle = submit_settle
        self._page_enabled = False
        self._runtime_enabled = False

    async def enable_domains(self, *, page: bool = False, runtime: bool = False) -> None:
        """Enable CDP domains once per connection."""
        if page and not self._page_enabled:
            await self.conn.send("Page.enable")
            self._page_enabled = True
        if runtime and not self._runtime_enabled:
            await self.conn.send("Runtime.enable")
            self._runtime_enabled = True

    # ─────────────────────────────────────────────────────────────────────────
    # Primitives
    # ─────────────────────────────────────────────────────────────────────────

    async def eval_js(self, expression: str) -> Any:
        """Evaluate JavaScript and return its value (undefined/null -> None)."""
        await self.enable_domains(runtime=True)
        result = await self.conn.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
        )
        if "exceptionDetails" in result:
            details = result["exceptionDetails"]
            text = details.get("text") if isinstance(details, dict) else None
            raise CdpProtocolError("Runtime.evaluate", {"message": text or "script threw"})
        value = result.get("result")
        if not isinstance(value, dict):
            return None
        if value.get("type") == "undefined":
            return None
        if value.get("type") == "object" and value.get("subtype") == "null":
            return None
        return value.get("value")

    async def get_url(self) -> str:
        return await self.eval_js("window.location.href") or ""

    async def navigate(self, url: str, *, wait_load: bool = True, timeout: float = 10.0) -> str:
        """Navigate to URL, optionally waiting for the load event."""
        await self.enable_domains(page=True)
        loaded = self.conn.expect_event("Page.loadEventFired")
        try:
            await self.conn.send("Page.navigate", {"url": url})
            if wait_load:
                try:
                    await asyncio.wait_for(asyncio.shield(loaded), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.info("no load event for %s within %.1fs", url, timeout)
        finally:
            loaded.cancel()
        return url

    async def press_key(self, key: str, modifiers: int = 0) -> None:
        """Press and release one key."""
        key_code = _KEY_CODES.get(key, ord(key[0].upper()) if len(key) == 1 else 0)
        code = f"Key{key.upper()}" if len(key) == 1 else key
        down: dict[str, Any] = {
            "type": "keyDown",
            "key": key,
            "code": code,
            "windowsVirtualKeyCode": key_code,
            "modifiers": modifiers,
        }
        if key == "Enter":
            down["text"] = "\r"
        elif len(key) == 1:
            down["text"] = key
        await self.conn.send("Input.dispatchKeyEvent", down)
        await self.conn.send(
            "Input.dispatchKeyEvent",
            {"type": "keyUp", "key": key, "code": code, "windowsVirtualKeyCode": key_code, "modifiers": modifiers},
        )

    async def screenshot(self, format: str = "png") -> bytes:
        """Capture the viewport and return the decoded image bytes."""
        result = await self.conn.send("Page.captureScreenshot", {"format": format, "fromSurface": True})
        data = result.get("data")
        if not isinstance(data, str) or not data:
            raise CdpProtocolError("Page.captureScreenshot", {"message": "empty screenshot data"})
        return base64.b64decode(data)

    # ─────────────────────────────────────────────────────────────────────────
    # Assistant UI
    # ─────────────────────────────────────────────────────────────────────────

    async def find_element(self, selectors: tuple[str, ...]) -> str | None:
        """Return the first selector that matches an element, if any."""
        for selector in selectors:
            try:
                found = await self.eval_js(f"document.querySelector({json.dumps(selector)}) !== null")
            except CdpProtocolError:
                # Invalid selector for this engine (e.g. :has); try the next one.
                continue
            if found is True:
                return selector
        return None

    async def inspect(self) -> dict[str, Any]:
        """Summarize what the page exposes, for diagnosing a wrong page."""
        info = await self.eval_js(
            """
            JSON.stringify({
              url: window.location.href,
              title: document.title,
              textareas: document.querySelectorAll('textarea').length,
              inputs: document.querySelectorAll('input').length,
              contentEditables: document.querySelectorAll('[contenteditable="true"]').length,
              buttons: document.querySelectorAll('button').length,
            })
            """
        )
        try:
            page = json.loads(info) if isinstance(info, str) else {}
        except json.JSONDecodeError:
            page = {}
        input_selector = await self.find_element(self.selectors.input)
        return {
            "inputSelector": input_selector,
            "answerSelector": await self.find_element((self.selectors.answer,)),
            "hasInput": input_selector is not None,
            "page": page,
        }

    async def type_prompt(self, prompt: str) -> bool:
        """Insert the prompt into the input (works with framework-managed editors)."""
        script = f"""
        (() => {{
          const text = {json.dumps(prompt)};
          const el = document.querySelector('[contenteditable="true"]');
          if (el) {{
            el.focus();
            document.execCommand('selectAll', false, null);
            document.execCommand('insertText', false, text);
            return {{ success: true }};
          }}
          const textarea = document.querySelector('textarea');
          if (textarea) {{
            textarea.focus();
            textarea.value = text;
            textarea.dispatchEvent(new Event('input', {{ bubbles: true }}));
            return {{ success: true }};
          }}
          return {{ success: false }};
        }})()
        """
        result = await self.eval_js(script)
        return bool(isinstance(result, dict) and result.get("success"))

    async def _submitted(self) -> bool:
        script = f"""
        (() => {{
          const el = document.querySelector('[contenteditable="true"]');
          if (el && el.innerText.trim().length < 5) return true;
          return document.querySelector({json.dumps(self.selectors.busy_indicator)}) !== null;
        }})()
        """
        return await self.eval_js(script) is True

    async def _click_submit(self) -> dict[str, Any]:
        script = f"""
        (() => {{
          const selectors = {json.dumps(list(self.selectors.submit))};
          for (const sel of selectors) {{
            try {{
              const btn = document.querySelector(sel);
              if (btn && !btn.disabled && btn.offsetParent !== null) {{
                btn.click();
                return {{ clicked: true, method: 'selector', selector: sel }};
              }}
            }} catch (e) {{}}
          }}
          const excluded = {json.dumps(list(self.selectors.submit_excluded_labels))};
          const input = document.querySelector('[contenteditable="true"]') || document.querySelector('textarea');
          if (!input) return {{ clicked: false }};
          const inputRect = input.getBoundingClientRect();
          const candidates = [];
          let parent = input.parentElement;
          for (let i = 0; i < 4 && parent; i++) {{
            for (const btn of parent.querySelectorAll('button:not([disabled])')) {{
              const label = (btn.getAttribute('aria-label') || '').toLowerCase();
              const text = (btn.textContent || '').trim();
              if (excluded.some(word => label.includes(word)) || text === '+') continue;
              const rect = btn.getBoundingClientRect();
              if (btn.querySelector('svg') && btn.offsetParent !== null &&
                  rect.left > inputRect.left && rect.width > 0) {{
                candidates.push({{ btn, right: rect.right }});
              }}
            }}
            parent = parent.parentElement;
          }}
          if (!candidates.length) return {{ clicked: false }};
          candidates.sort((a, b) => b.right - a.right);
          candidates[0].btn.click();
          return {{ clicked: true, method: 'rightmost-button' }};
        }})()
        """
        result = await self.eval_js(script)
        return result if isinstance(result, dict) else {"clicked": False}

    async def submit(self) -> bool:
        """Submit the typed prompt: Enter first, then the send button."""
        await asyncio.sleep(self.submit_settle)
        await self.eval_js(
            """
            (() => {
              const el = document.querySelector('[contenteditable="true"]') || document.querySelector('textarea');
              if (el) el.focus();
            })()
            """
        )
        await self.press_key("Enter")
        await asyncio.sleep(self.submit_settle)
        if await self._submitted():
            return True
        clicked = await self._click_submit()
        logger.info("enter did not submit; button fallback %s", clicked.get("method") or "found nothing")
        return bool(clicked.get("clicked"))

    async def send_prompt(self, prompt: str) -> str:
        if await self.find_element(self.selectors.input) is None:
            raise ExtractionEmpty("Could not find the prompt input; the assistant page is not loaded")
        if not await self.type_prompt(prompt):
            raise ExtractionEmpty("Failed to type into the prompt input")
        await self.submit()
        preview = prompt[:50] + ("..." if len(prompt) > 50 else "")
        return f'Prompt sent: "{preview}"'

    async def take_snapshot(self) -> TaskSnapshot:
        """Read the page text and the DOM facts the classifier needs."""
        sel = self.selectors
        script = f"""
        (() => {{
          const stopLabels = {json.dumps(list(sel.stop_labels))};
          let stopActive = false;
          for (const btn of document.querySelectorAll('button')) {{
            const label = (btn.getAttribute('aria-label') || '').toLowerCase();
            const stopLike = btn.querySelector('rect') !== null || stopLabels.some(w => label.includes(w));
            if (stopLike && btn.offsetParent !== null && !btn.disabled) {{
              stopActive = true;
              break;
            }}
          }}
          const loading = document.querySelector({json.dumps(", ".join(sel.loading))}) !== null;
          const answerBlocks = Array.from(document.querySelectorAll({json.dumps(sel.answer)}))
            .map(el => el.innerText || '');
          return {{ body: document.body ? document.body.innerText : '', stopActive, loading, answerBlocks }};
        }})()
        """
        return TaskSnapshot.from_page(await self.eval_js(script))

    async def stop_agent(self) -> bool:
        script = f"""
        (() => {{
          for (const sel of {json.dumps(list(self.selectors.stop_buttons))}) {{
            const btn = document.querySelector(sel);
            if (btn) {{ btn.click(); return true; }}
          }}
          for (const btn of document.querySelectorAll('button')) {{
            if (btn.querySelector('svg rect, svg[class*="stop"]')) {{ btn.click(); return true; }}
          }}
          return false;
        }})()
        """
        return await self.eval_js(script) is True

    async def current_mode(self) -> str:
        script = f"""
        (() => {{
          const modes = {json.dumps(self.selectors.modes)};
          for (const [key, label] of Object.entries(modes)) {{
            const btn = document.querySelector('button[aria-label="' + label + '"]');
            if (btn && btn.getAttribute('data-state') === 'checked') return key;
          }}
          const dropdown = document.querySelector('button[class*="gap"]');
          if (dropdown) {{
            const text = dropdown.innerText.toLowerCase();
            for (const key of Object.keys(modes)) {{
              if (text.includes(key)) return key;
            }}
          }}
          return 'search';
        }})()
        """
        mode = await self.eval_js(script)
        return mode if isinstance(mode, str) and mode in self.selectors.modes else "search"

    async def switch_mode(self, mode: str) -> tuple[bool, str]:
        """Click the mode control; returns (success, message)."""
        label = self.selectors.modes[mode]
        script = f"""
        (() => {{
          const btn = document.querySelector({json.dumps(f'button[aria-label="{label}"]')});
          if (btn) {{ btn.click(); return {{ success: true, method: 'button' }}; }}
          const keys = {json.dumps(list(self.selectors.modes))};
          for (const b of document.querySelectorAll('button')) {{
            const text = b.innerText.toLowerCase();
            if (keys.some(k => text.includes(k)) && b.querySelector('svg')) {{
              b.click();
              return {{ success: true, method: 'dropdown-open', needsSelect: true }};
            }}
          }}
          return {{ success: false, error: 'Mode selector not found' }};
        }})()
        """
        opened = await self.eval_js(script)
        if not isinstance(opened, dict) or not opened.get("success"):
            error = opened.get("error") if isinstance(opened, dict) else None
            return False, f"Failed to switch mode: {error or 'no response from page'}"
        if not opened.get("needsSelect"):
            return True, f"Switched to {mode} mode"

        await asyncio.sleep(self.submit_settle)
        select = f"""
        (() => {{
          for (const item of document.querySelectorAll('[role="menuitem"], [role="option"], button')) {{
            if (item.innerText.toLowerCase().includes({json.dumps(mode)})) {{
              item.click();
              return {{ success: true }};
            }}
          }}
          return {{ success: false, error: 'Mode option not found in dropdown' }};
        }})()
        """
        picked = await self.eval_js(select)
        if isinstance(picked, dict) and picked.get("success"):
            return True, f"Switched to {mode} mode"
        error = picked.get("error") if isinstance(picked, dict) else None
        return False, f"Failed: {error or 'no response from page'}"


__all__ = ["CometPage"]
