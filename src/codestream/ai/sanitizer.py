"""Clean raw model output before it is inserted into a document.

The sanitizer is a pure function of the accumulated text and the document
tail after the cursor. Each rule only ever removes text from the end of an
already-normalized string, which keeps the whole pipeline idempotent.
"""

from __future__ import annotations

import re

__all__ = ["sanitize_completion", "strip_commentary", "truncate_text", "DEFAULT_MAX_LENGTH", "CLOSER_CHARS"]

DEFAULT_MAX_LENGTH = 500
LINE_BREAK_RATIO = 0.7
CLOSER_CHARS = frozenset(")]};,'\"`")

_FENCE_RE = re.compile(r"```[\w+#.-]*\n?")
_PREFIX_RE = re.compile(
    r"^(?:here's the completion:|the completion is:|complete code:|completion:|here's|this completes)",
    re.IGNORECASE,
)
_BLANK_RUN_RE = re.compile(r"\n[ \t]*\n[ \t]*\n(?:[ \t]*\n)*")
_CLOSING_TAG_RE = re.compile(r"</[^<>\s]+>$")


def sanitize_completion(
    raw: str | None,
    tail: str | None = "",
    *,
    max_length: int = DEFAULT_MAX_LENGTH,
    strip_fences: bool = True,
) -> str:
    """Return ``raw`` cleaned for insertion in front of ``tail``.

    Rules, in order: strip fencing and prefix commentary, truncate to
    ``max_length`` (preferring a line boundary past 70% of the limit), drop
    trailing closers that already appear in ``tail``, and drop the whole text
    when ``tail`` already contains it.
    """

    if not raw:
        return ""
    tail = tail or ""

    text = strip_commentary(raw) if strip_fences else raw.strip()
    text = truncate_text(text, max_length)
    if tail:
        text = _strip_duplicate_closers(text, tail)
        if text and text in tail:
            return ""
    return text


def strip_commentary(text: str) -> str:
    """Remove markdown fences, assistant preambles and blank-line runs."""

    previous = None
    current = text
    while current != previous:
        previous = current
        current = _FENCE_RE.sub("", current)
        current = _BLANK_RUN_RE.sub("\n\n", current).strip()
        current = _PREFIX_RE.sub("", current).strip()
    return current


def truncate_text(text: str, max_length: int) -> str:
    if max_length <= 0:
        return ""
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    last_newline = cut.rfind("\n")
    if last_newline > len(cut) * LINE_BREAK_RATIO:
        cut = cut[:last_newline]
    return cut.rstrip()


def _strip_duplicate_closers(text: str, tail: str) -> str:
    while text:
        tag = _CLOSING_TAG_RE.search(text)
        if tag and tag.group(0) in tail:
            text = text[: tag.start()].rstrip()
            continue
        last = text[-1]
        if last in CLOSER_CHARS and last in tail:
            text = text[:-1].rstrip()
            continue
        break
    return text
