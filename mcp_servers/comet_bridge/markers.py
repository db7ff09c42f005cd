"""Site vocabulary and DOM selectors for the Perplexity/Comet assistant page.

These tables are data, not logic: the classifier in `status.py` and the page
scripts in `page.py` take them as parameters, so a UI change on the site only
means a new table.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class MarkerTable:
    """Text markers used to classify a snapshot of the assistant page."""

    steps_completed: re.Pattern[str] = re.compile(r"(\d+) steps? completed", re.IGNORECASE)
    finished_marker: str = "Finished"
    reviewed_sources: re.Pattern[str] = re.compile(r"Reviewed \d+ sources?", re.IGNORECASE)
    working_phrases: tuple[str, ...] = (
        "Working…",
        "Working...",
        "Searching",
        "Reviewing sources",
        "Preparing to assist",
        "Clicking",
        "Typing:",
        "Navigating to",
        "Reading",
        "Analyzing",
    )
    step_patterns: tuple[re.Pattern[str], ...] = (
        re.compile(r"Preparing to assist[^\n]*"),
        re.compile(r"Clicking[^\n]*"),
        re.compile(r"Typing:[^\n]*"),
        re.compile(r"Navigating[^\n]*"),
        re.compile(r"Reading[^\n]*"),
        re.compile(r"Searching[^\n]*"),
        re.compile(r"Found[^\n]*"),
    )
    # Answer blocks starting with these belong to other widgets.
    answer_skip_prefixes: tuple[str, ...] = ("Related",)
    # Text that ends the answer after a "Reviewed N sources" marker.
    sources_end_markers: tuple[str, ...] = ("Related", "Ask a follow-up", "Ask anything", "Share", "Copy")
    completion_marker: str = "steps completed"
    # Text that ends the answer after a "N steps completed" marker.
    completion_end_markers: tuple[str, ...] = ("Related", "Ask a follow-up", "Ask anything", "Sources")
    step_window: int = 5
    step_max_chars: int = 100
    min_answer_chars: int = 5
    response_max_chars: int = 3000


@dataclass(frozen=True)
class PageSelectors:
    """CSS selectors and labels used by the page scripts."""

    input: tuple[str, ...] = (
        '[contenteditable="true"]',
        'textarea[placeholder*="Ask"]',
        'textarea[placeholder*="Search"]',
        "textarea",
        'input[type="text"]',
    )
    answer: str = '[class*="prose"]'
    loading: tuple[str, ...] = ('[class*="animate-spin"]', '[class*="animate-pulse"]', ".spinner")
    # aria-label fragments (lowercase) marking a stop affordance; a square <rect> icon also counts.
    stop_labels: tuple[str, ...] = ("stop",)
    stop_buttons: tuple[str, ...] = (
        'button[aria-label*="Stop"]',
        'button[aria-label*="Cancel"]',
        'button[aria-label*="Pause"]',
    )
    submit: tuple[str, ...] = (
        'button[aria-label*="Submit"]',
        'button[aria-label*="Send"]',
        'button[aria-label*="Ask"]',
        'button[type="submit"]',
        'button:has(svg[class*="arrow"])',
        'button:has(svg[class*="send"])',
    )
    # aria-label fragments (lowercase) of buttons near the input that are not "submit".
    submit_excluded_labels: tuple[str, ...] = (
        "search",
        "research",
        "labs",
        "learn",
        "mode",
        "source",
        "attach",
        "add",
        "voice",
        "micro",
        "record",
    )
    busy_indicator: str = '[class*="animate"]'
    modes: dict[str, str] = field(
        default_factory=lambda: {
            "search": "Search",
            "research": "Research",
            "labs": "Labs",
            "learn": "Learn",
        }
    )


MODE_DESCRIPTIONS: dict[str, str] = {
    "search": "Basic web search",
    "research": "Deep research with comprehensive analysis",
    "labs": "Analytics, visualizations, and coding",
    "learn": "Educational content and explanations",
}

AGENTIC_PREFIX = "Take control of my browser and "

DEFAULT_MARKERS = MarkerTable()
DEFAULT_SELECTORS = PageSelectors()


__all__ = [
    "AGENTIC_PREFIX",
    "DEFAULT_MARKERS",
    "DEFAULT_SELECTORS",
    "MODE_DESCRIPTIONS",
    "MarkerTable",
    "PageSelectors",
]
