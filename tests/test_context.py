"""Tests for context builders and prompt templates."""

from __future__ import annotations

from codestream.ai.context import (
    CURSOR_MARKER,
    DocumentSnapshot,
    Position,
    SelectionRange,
    build_selection_context,
    build_trigger_context,
    calculate_end_position,
    display_language,
    inline_language,
)
from codestream.ai.prompts import (
    action_messages,
    action_params,
    completion_messages,
    completion_prompt,
)

from tests.helpers import make_context


def test_trigger_context_windows_document_around_cursor() -> None:
    lines = [f"row {index}" for index in range(200)]
    snapshot = DocumentSnapshot(text="\n".join(lines), cursor=Position(150, 5), file_name="main.py")

    context = build_trigger_context(snapshot)

    assert context.language == "python"
    assert context.before_cursor.startswith("row 50\n")
    assert context.before_cursor.endswith("row 1")
    assert context.line_after_cursor == "50"
    assert context.after_cursor.splitlines()[-1] == "row 170"
    assert context.next_lines.splitlines() == [f"row {index}" for index in range(151, 156)]
    assert context.tail_after_cursor.startswith("50row 151\n")
    assert context.tail_after_cursor.count("\n") == 9
    assert context.total_lines == 200
    assert CURSOR_MARKER in context.content
    assert not context.at_line_end


def test_fingerprint_tracks_content_and_cursor() -> None:
    first = make_context("const a = 1")
    same = make_context("const a = 1")
    moved = make_context("const a = 1", line=0, ch=5)

    assert first.fingerprint == same.fingerprint
    assert first.fingerprint != moved.fingerprint


def test_snapshot_clamps_cursor() -> None:
    snapshot = DocumentSnapshot(text="ab\ncd", cursor=Position(9, 9))

    assert snapshot.cursor == Position(1, 2)


def test_selection_context_includes_surrounding_lines() -> None:
    text = "\n".join(f"l{index}" for index in range(30))
    snapshot = DocumentSnapshot(
        text=text,
        file_name="lib.rs",
        selection=SelectionRange(start=Position(12, 0), end=Position(10, 0)),
    )

    context = build_selection_context(snapshot)

    assert context is not None
    assert context.language == "Rust"
    assert context.selected_code == "l10\nl11\n"
    assert (context.start_line, context.end_line) == (11, 13)
    assert context.before_context.splitlines() == ["l5", "l6", "l7", "l8", "l9"]
    assert context.after_context.splitlines() == ["l13", "l14", "l15", "l16", "l17"]
    assert context.char_count == len("l10\nl11\n")
    assert context.has_multiple_lines


def test_selection_context_requires_text() -> None:
    assert build_selection_context(DocumentSnapshot(text="abc")) is None


def test_language_maps() -> None:
    assert inline_language("TSX") == "react"
    assert inline_language("zig") == "text"
    assert display_language("index.yml") == "YAML"
    assert display_language("Makefile") == "Plain Text"


def test_calculate_end_position() -> None:
    assert calculate_end_position(Position(3, 4), "abc") == Position(3, 7)
    assert calculate_end_position(Position(3, 4), "a\nbc\ndef") == Position(5, 3)


def test_completion_prompt_marks_cursor() -> None:
    context = make_context("function sum(a, b) {\n  return\n}", line=1)

    prompt = completion_prompt(context)
    messages = completion_messages(context)

    assert f"  return{CURSOR_MARKER}}}" in prompt
    assert 'Text before cursor: "  return"' in prompt
    assert "File: app.js (javascript)" in prompt
    assert messages[0]["role"] == "system"
    assert messages[1]["content"] == prompt


def test_action_messages_include_context_blocks() -> None:
    snapshot = DocumentSnapshot(
        text="a = 1\nb = 2\nc = 3",
        file_name="calc.py",
        selection=SelectionRange(start=Position(1, 0), end=Position(1, 5)),
    )
    context = build_selection_context(snapshot)

    system, user = action_messages("refactor", context)

    assert "refactoring" in system["content"]
    assert "Before:\n```Python\na = 1\n```" in user["content"]
    assert "After:\n```Python\nc = 3\n```" in user["content"]
    assert "Selection: 1 lines, 5 characters" in user["content"]
    assert action_params(1024) == {
        "temperature": 0.7,
        "top_p": 0.9,
        "frequency_penalty": 0.1,
        "presence_penalty": 0.1,
        "max_tokens": 1024,
    }
