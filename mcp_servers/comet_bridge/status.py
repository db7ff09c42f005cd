"""Task status classifier for the assistant page.

Every poll builds a fresh `TaskSnapshot` and re-derives the status from it;
nothing here keeps state between calls. Heuristic misses degrade to IDLE and
empty strings instead of raising, because polling must never stop on them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .markers import DEFAULT_MARKERS, MarkerTable


class TaskState(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    COMPLETED = "completed"


@dataclass(frozen=True)
class TaskSnapshot:
    """One sampled read of the page: visible text plus a few DOM facts."""

    body: str = ""
    stop_active: bool = False
    loading: bool = False
    # Answer-bearing blocks in document order (oldest first).
    answer_blocks: tuple[str, ...] = ()

    @classmethod
    def from_page(cls, raw: Any) -> TaskSnapshot:
        """Build a snapshot from the page script's result, tolerating junk."""
        if not isinstance(raw, dict):
            return cls()
        blocks = raw.get("answerBlocks")
        return cls(
            body=str(raw.get("body") or ""),
            stop_active=bool(raw.get("stopActive")),
            loading=bool(raw.get("loading")),
            answer_blocks=tuple(str(b) for b in blocks) if isinstance(blocks, list) else (),
        )


@dataclass
class TaskStatus:
    state: TaskState = TaskState.IDLE
    steps: list[str] = field(default_factory=list)
    current_step: str = ""
    response: str = ""
    has_stop_button: bool = False
    agent_browsing_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.state.value,
            "steps": list(self.steps),
            "currentStep": self.current_step,
            "response": self.response,
            "hasStopButton": self.has_stop_button,
            "agentBrowsingUrl": self.agent_browsing_url,
        }


def _has_working_text(body: str, table: MarkerTable) -> bool:
    return any(phrase in body for phrase in table.working_phrases)


def classify_state(snapshot: TaskSnapshot, table: MarkerTable = DEFAULT_MARKERS) -> TaskState:
    """Apply the precedence rules; the first rule that matches wins."""
    body = snapshot.body
    if snapshot.stop_active or snapshot.loading:
        return TaskState.WORKING
    if table.steps_completed.search(body) or table.finished_marker in body:
        return TaskState.COMPLETED
    working_text = _has_working_text(body, table)
    if table.reviewed_sources.search(body) and not working_text:
        return TaskState.COMPLETED
    if working_text:
        return TaskState.WORKING
    return TaskState.IDLE


def extract_steps(body: str, table: MarkerTable = DEFAULT_MARKERS) -> tuple[list[str], str]:
    """Return (recent distinct steps in page order, most recent step)."""
    found: list[tuple[int, int, str]] = []
    for rank, pattern in enumerate(table.step_patterns):
        for match in pattern.finditer(body):
            text = match.group(0).strip()[: table.step_max_chars]
            if text:
                found.append((match.start(), rank, text))
    if not found:
        return [], ""
    found.sort()

    steps: list[str] = []
    seen: set[str] = set()
    for _, _, text in found:
        if text not in seen:
            seen.add(text)
            steps.append(text)
    return steps[-table.step_window :], found[-1][2]


def _slice_until(text: str, start: int, markers: tuple[str, ...]) -> str:
    end = len(text)
    for marker in markers:
        idx = text.find(marker, start)
        if start < idx < end:
            end = idx
    return text[start:end].strip()


def extract_response(snapshot: TaskSnapshot, table: MarkerTable = DEFAULT_MARKERS) -> str:
    """Pull the current answer out of a completed page.

    The page is a running transcript, so the most recent answer block wins,
    not the largest one.
    """
    response = ""
    for block in reversed(snapshot.answer_blocks):
        text = block.strip()
        if len(text) > table.min_answer_chars and not text.startswith(table.answer_skip_prefixes):
            response = text
            break

    body = snapshot.body
    if not response:
        match = table.reviewed_sources.search(body)
        if match:
            response = _slice_until(body, match.end(), table.sources_end_markers)

    if len(response) < table.min_answer_chars:
        idx = body.find(table.completion_marker)
        if idx > -1:
            after = body[idx + len(table.completion_marker) :]
            candidate = _slice_until(after, 0, table.completion_end_markers)
            if candidate:
                response = candidate

    return response[: table.response_max_chars]


def classify(
    snapshot: TaskSnapshot,
    table: MarkerTable = DEFAULT_MARKERS,
    *,
    agent_browsing_url: str = "",
) -> TaskStatus:
    state = classify_state(snapshot, table)
    steps, current = extract_steps(snapshot.body, table)
    response = extract_response(snapshot, table) if state is TaskState.COMPLETED else ""
    return TaskStatus(
        state=state,
        steps=steps,
        current_step=current,
        response=response,
        has_stop_button=snapshot.stop_active,
        agent_browsing_url=agent_browsing_url,
    )


def format_status(status: TaskStatus) -> str:
    """Render a status the way a human-facing poll reports it."""
    lines = [f"Status: {status.state.value.upper()}"]
    if status.agent_browsing_url:
        lines.append(f"Browsing: {status.agent_browsing_url}")
    if status.steps:
        lines.append("")
        lines.append("Recent steps:")
        lines.extend(f"  • {step}" for step in status.steps)
    if status.current_step and status.state is TaskState.WORKING:
        lines.append("")
        lines.append(f"Current: {status.current_step}")
    if status.state is TaskState.COMPLETED and status.response:
        lines.append("")
        lines.append("--- Response ---")
        lines.append(status.response)
    elif status.state is TaskState.WORKING and status.has_stop_button:
        lines.append("")
        lines.append("[Agent is working - use stop() to interrupt if needed]")
    return "\n".join(lines)


__all__ = [
    "TaskSnapshot",
    "TaskState",
    "TaskStatus",
    "classify",
    "classify_state",
    "extract_response",
    "extract_steps",
    "format_status",
]
