"""Tests for :mod:`codestream.ai.sanitizer`."""

from __future__ import annotations

import pytest

from codestream.ai.sanitizer import sanitize_completion, strip_commentary, truncate_text

_SAMPLES = [
    ("```javascript\nconst x = 1;\n```", ""),
    ("Here's the completion: return value;", "}\n"),
    ("foo(bar));", ");\n"),
    ("<p>hello</p></div>", "</div>\n</body>"),
    ("Completion:\n\n\n\n  items.push(x)", "\n"),
    ("x" * 700, ""),
    ("", "anything"),
]


def test_strips_fences_and_prefix_commentary() -> None:
    raw = "```js\nHere's the completion: console.log(value)\n```"

    assert sanitize_completion(raw) == "console.log(value)"


def test_strip_commentary_collapses_blank_runs() -> None:
    assert strip_commentary("a\n\n\n\nb") == "a\n\nb"


def test_truncates_at_line_boundary_past_seventy_percent() -> None:
    text = "a" * 80 + "\n" + "b" * 40

    assert truncate_text(text, 100) == "a" * 80


def test_truncates_mid_line_when_boundary_is_early() -> None:
    text = "a" * 10 + "\n" + "b" * 200

    assert truncate_text(text, 50) == text[:50]


def test_removes_closers_already_after_cursor() -> None:
    assert sanitize_completion("name: value });", " });\nnext();") == "name: value"


def test_removes_closing_tags_already_after_cursor() -> None:
    assert sanitize_completion("<span>Hi</span></div>", "</div>\n") == "<span>Hi</span>"


def test_keeps_closers_that_are_not_in_tail() -> None:
    assert sanitize_completion("call(arg)", "\nreturn;") == "call(arg)"


def test_drops_text_already_present_after_cursor() -> None:
    assert sanitize_completion("return total;", "\n  return total;\n}") == ""


def test_fences_kept_when_stripping_disabled() -> None:
    raw = "```py\nprint(1)\n```\n"

    assert sanitize_completion(raw, "", max_length=8192, strip_fences=False) == raw.strip()


@pytest.mark.parametrize("raw, tail", _SAMPLES)
def test_sanitize_is_idempotent(raw: str, tail: str) -> None:
    once = sanitize_completion(raw, tail)

    assert sanitize_completion(once, tail) == once


@pytest.mark.parametrize("raw, tail", _SAMPLES)
def test_result_never_ends_with_closer_from_tail(raw: str, tail: str) -> None:
    result = sanitize_completion(raw, tail)

    assert len(result) <= 500
    if result:
        assert not (result[-1] in ")]};,'\"`" and result[-1] in tail)
        assert result not in tail
