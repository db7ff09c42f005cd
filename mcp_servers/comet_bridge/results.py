"""Result values returned by `CometBridge.invoke`."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ToolContent:
    """Single content item in a result."""

    type: str  # "text" or "image"
    text: str | None = None
    data: str | None = None  # base64 for images
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.type == "image":
            return {"type": "image", "data": self.data, "mimeType": self.mime_type}
        return {"type": "text", "text": self.text}


@dataclass(slots=True)
class ToolResult:
    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False
    # Raw payload for callers that want structure instead of text.
    data: Any | None = None

    @classmethod
    def text(cls, text: str, data: Any | None = None) -> ToolResult:
        return cls(content=[ToolContent(type="text", text=text or "")], data=data)

    @classmethod
    def error(
        cls,
        message: str,
        *,
        stage: str | None = None,
        suggestion: str | None = None,
        steps: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> ToolResult:
        """Create an error result naming the failed stage and any partial steps."""
        payload: dict[str, Any] = {"ok": False, "error": message}
        lines = [f"Error: {message}"]
        if stage:
            payload["stage"] = stage
            lines.insert(0, f"Stage: {stage}")
        if suggestion:
            payload["suggestion"] = suggestion
            lines.append(f"Suggestion: {suggestion}")
        if steps:
            payload["steps"] = list(steps)
            lines.append("Steps so far:")
            lines.extend(f"  • {step}" for step in steps)
        if details:
            payload["details"] = details
        return cls(content=[ToolContent(type="text", text="\n".join(lines))], is_error=True, data=payload)

    @classmethod
    def with_image(cls, text: str, png: bytes, mime_type: str = "image/png", data: Any | None = None) -> ToolResult:
        """Create a result with text and image content. Omits the image if empty."""
        content = [ToolContent(type="text", text=text or "")]
        if png:
            content.append(ToolContent(type="image", data=base64.b64encode(png).decode("ascii"), mime_type=mime_type))
        return cls(content=content, data=data)

    def to_content_list(self) -> list[dict[str, Any]]:
        return [c.to_dict() for c in self.content]


__all__ = ["ToolContent", "ToolResult"]
