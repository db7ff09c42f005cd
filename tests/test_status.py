from __future__ import annotations

from mcp_servers.comet_bridge.markers import MarkerTable
from mcp_servers.comet_bridge.status import (
    TaskSnapshot,
    TaskState,
    TaskStatus,
    classify,
    classify_state,
    extract_response,
    extract_steps,
    format_status,
)


def test_stop_button_beats_completion_text() -> None:
    snap = TaskSnapshot(body="Clicking submit\n3 steps completed", stop_active=True)
    status = classify(snap)
    assert status.state is TaskState.WORKING
    assert status.response == ""
    assert status.has_stop_button is True


def test_loading_indicator_means_working() -> None:
    assert classify_state(TaskSnapshot(body="Finished", loading=True)) is TaskState.WORKING


def test_steps_completed_means_completed() -> None:
    assert classify_state(TaskSnapshot(body="Searching the web\n4 steps completed\nDone.")) is TaskState.COMPLETED


def test_reviewed_sources_extracts_answer() -> None:
    status = classify(TaskSnapshot(body="Reviewed 4 sources\nAnswer text here\nRelated"))
    assert status.state is TaskState.COMPLETED
    assert status.response == "Answer text here"


def test_reviewed_sources_with_working_text_is_working() -> None:
    body = "Reviewed 2 sources\nReading https://example.com"
    assert classify_state(TaskSnapshot(body=body)) is TaskState.WORKING


def test_plain_page_is_idle() -> None:
    status = classify(TaskSnapshot(body="Ask anything"))
    assert status.state is TaskState.IDLE
    assert status.steps == []
    assert status.current_step == ""


def test_empty_snapshot_is_idle() -> None:
    assert classify(TaskSnapshot.from_page(None)).state is TaskState.IDLE
    assert classify(TaskSnapshot.from_page({"body": None, "answerBlocks": "junk"})).state is TaskState.IDLE


def test_latest_answer_block_wins() -> None:
    snap = TaskSnapshot(
        body="2 steps completed",
        answer_blocks=(
            "An older and much longer answer from the previous question in this thread",
            "The newest answer",
            "Related questions",
        ),
    )
    assert extract_response(snap) == "The newest answer"


def test_completion_marker_fallback() -> None:
    snap = TaskSnapshot(body="Clicking the button\n3 steps completed\nThe page title is Example.\nAsk a follow-up")
    assert extract_response(snap) == "The page title is Example."


def test_response_is_truncated() -> None:
    table = MarkerTable(response_max_chars=10)
    snap = TaskSnapshot(body="Finished", answer_blocks=("x" * 50,))
    assert extract_response(snap, table) == "x" * 10


def test_steps_are_deduplicated_in_page_order() -> None:
    body = "Searching for flights\nClicking Search\nSearching for flights\nReading results"
    steps, current = extract_steps(body)
    assert steps == ["Searching for flights", "Clicking Search", "Reading results"]
    assert current == "Reading results"


def test_steps_keep_last_window() -> None:
    body = "\n".join(f"Clicking button {i}" for i in range(8))
    steps, current = extract_steps(body)
    assert steps == [f"Clicking button {i}" for i in range(3, 8)]
    assert current == "Clicking button 7"


def test_long_steps_are_clipped() -> None:
    steps, _ = extract_steps("Typing: " + "a" * 300)
    assert len(steps[0]) == 100


def test_classifier_is_stateless() -> None:
    snap = TaskSnapshot(body="Reviewed 3 sources\nSame answer\nShare")
    assert classify(snap) == classify(snap)


def test_format_status_completed() -> None:
    status = TaskStatus(
        state=TaskState.COMPLETED,
        steps=["Reading docs"],
        response="All done",
        agent_browsing_url="https://docs.example/",
    )
    text = format_status(status)
    assert text.startswith("Status: COMPLETED")
    assert "Browsing: https://docs.example/" in text
    assert "  • Reading docs" in text
    assert text.endswith("--- Response ---\nAll done")


def test_format_status_working_hint() -> None:
    status = TaskStatus(state=TaskState.WORKING, current_step="Clicking next", has_stop_button=True)
    text = format_status(status)
    assert "Current: Clicking next" in text
    assert "stop()" in text
