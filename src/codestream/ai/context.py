"""Editor snapshots and the contexts built from them for each caller."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Dict, Optional

CURSOR_MARKER = "█CURSOR█"

LINES_BEFORE_CURSOR = 100
LINES_AFTER_CURSOR = 20
NEXT_LINES = 5
TAIL_LINES = 9
SURROUNDING_LINES = 5

INLINE_LANGUAGES: Dict[str, str] = {
    "js": "javascript",
    "ts": "typescript",
    "jsx": "react",
    "tsx": "react",
    "py": "python",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "json": "json",
    "md": "markdown",
    "vue": "vue",
    "php": "php",
    "cpp": "cpp",
    "c": "c",
    "java": "java",
    "go": "go",
    "rs": "rust",
}

DISPLAY_LANGUAGES: Dict[str, str] = {
    ".js": "JavaScript",
    ".ts": "TypeScript",
    ".jsx": "React JSX",
    ".tsx": "React TSX",
    ".py": "Python",
    ".java": "Java",
    ".c": "C",
    ".cpp": "C++",
    ".cs": "C#",
    ".php": "PHP",
    ".rb": "Ruby",
    ".go": "Go",
    ".rs": "Rust",
    ".swift": "Swift",
    ".kt": "Kotlin",
    ".html": "HTML",
    ".css": "CSS",
    ".scss": "SCSS",
    ".json": "JSON",
    ".xml": "XML",
    ".sql": "SQL",
    ".sh": "Shell",
    ".md": "Markdown",
    ".yaml": "YAML",
    ".yml": "YAML",
}


def _hash_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@dataclass(slots=True, frozen=True)
class Position:
    """Zero-based line and character offset inside a document."""

    line: int = 0
    ch: int = 0

    def as_tuple(self) -> tuple[int, int]:
        return (self.line, self.ch)


@dataclass(slots=True, frozen=True)
class SelectionRange:
    """Selection bounds inside the editor widget."""

    start: Position
    end: Position

    def ordered(self) -> "SelectionRange":
        if self.end.as_tuple() < self.start.as_tuple():
            return SelectionRange(start=self.end, end=self.start)
        return self


@dataclass(slots=True)
class DocumentSnapshot:
    """Plain copy of the editor state handed over by the host widget."""

    text: str = ""
    cursor: Position = field(default_factory=Position)
    file_name: str = "untitled"
    selection: Optional[SelectionRange] = None

    def __post_init__(self) -> None:
        self.cursor = clamp_position(self.lines, self.cursor)

    @property
    def lines(self) -> list[str]:
        return self.text.split("\n")

    @property
    def line_count(self) -> int:
        return len(self.lines)

    @property
    def extension(self) -> str:
        suffix = PurePath(self.file_name or "").suffix
        return suffix[1:].lower() if suffix else ""

    def line(self, index: int) -> str:
        lines = self.lines
        return lines[index] if 0 <= index < len(lines) else ""

    def selected_text(self) -> str:
        if self.selection is None:
            return ""
        selection = self.selection.ordered()
        start = offset_of(self.lines, selection.start)
        end = offset_of(self.lines, selection.end)
        return self.text[start:end]


@dataclass(slots=True, frozen=True)
class TriggerContext:
    """Read-only view of the document around the cursor for inline completion."""

    file_name: str
    language: str
    cursor: Position
    before_cursor: str
    after_cursor: str
    current_line: str
    line_before_cursor: str
    line_after_cursor: str
    next_lines: str
    tail_after_cursor: str
    total_lines: int

    @property
    def content(self) -> str:
        """Windowed file text with the cursor marker inserted."""
        return f"{self.before_cursor}{CURSOR_MARKER}{self.after_cursor}"

    @property
    def at_line_end(self) -> bool:
        return not self.line_after_cursor.strip()

    @property
    def fingerprint(self) -> str:
        return _hash_text(f"{self.file_name}\0{self.cursor.line}:{self.cursor.ch}\0{self.content}")


@dataclass(slots=True, frozen=True)
class SelectionContext:
    """Selected code plus a few surrounding lines for a code action."""

    file_name: str
    language: str
    selected_code: str
    before_context: str
    after_context: str
    start_line: int
    end_line: int
    line_count: int
    char_count: int

    @property
    def has_multiple_lines(self) -> bool:
        return self.line_count > 1

    def describe(self) -> str:
        return f"{self.file_name} ({self.language}) • lines {self.start_line}-{self.end_line}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "language": self.language,
            "selected_code": self.selected_code,
            "lines": (self.start_line, self.end_line),
            "line_count": self.line_count,
            "char_count": self.char_count,
        }


def inline_language(extension: str) -> str:
    return INLINE_LANGUAGES.get(extension.lower().lstrip("."), "text")


def display_language(file_name: str) -> str:
    suffix = PurePath(file_name or "").suffix
    return DISPLAY_LANGUAGES.get(suffix, "Plain Text")


def clamp_position(lines: list[str], position: Position) -> Position:
    line = min(max(0, position.line), max(0, len(lines) - 1))
    ch = min(max(0, position.ch), len(lines[line]) if lines else 0)
    if (line, ch) == position.as_tuple():
        return position
    return Position(line=line, ch=ch)


def offset_of(lines: list[str], position: Position) -> int:
    """Convert ``position`` to a character offset into ``"\\n".join(lines)``."""

    position = clamp_position(lines, position)
    return sum(len(line) + 1 for line in lines[: position.line]) + position.ch


def build_trigger_context(snapshot: DocumentSnapshot) -> TriggerContext:
    """Window the document around the cursor.

    Up to 100 lines before and 20 after the cursor line are included. The
    rest of the current line only counts as text after the cursor when it is
    not blank.
    """

    lines = snapshot.lines
    cursor = snapshot.cursor
    last = len(lines) - 1
    start_line = max(0, cursor.line - LINES_BEFORE_CURSOR)
    end_line = min(last, cursor.line + LINES_AFTER_CURSOR)

    current = lines[cursor.line]
    line_before = current[: cursor.ch]
    line_after = current[cursor.ch:]

    before = "".join(f"{line}\n" for line in lines[start_line: cursor.line]) + line_before
    after_parts = [f"{line_after}\n"] if line_after.strip() else []
    after_parts.extend(f"{line}\n" for line in lines[cursor.line + 1: end_line + 1])
    next_lines = "".join(f"{line}\n" for line in lines[cursor.line + 1: cursor.line + 1 + NEXT_LINES])
    tail = line_after + "".join(f"{line}\n" for line in lines[cursor.line + 1: cursor.line + 1 + TAIL_LINES])

    return TriggerContext(
        file_name=snapshot.file_name or "untitled",
        language=inline_language(snapshot.extension),
        cursor=cursor,
        before_cursor=before,
        after_cursor="".join(after_parts),
        current_line=current,
        line_before_cursor=line_before,
        line_after_cursor=line_after,
        next_lines=next_lines.strip(),
        tail_after_cursor=tail,
        total_lines=len(lines),
    )


def build_selection_context(snapshot: DocumentSnapshot) -> Optional[SelectionContext]:
    """Return the selection context, or ``None`` when nothing is selected."""

    if snapshot.selection is None:
        return None
    selection = snapshot.selection.ordered()
    text = snapshot.selected_text()
    if not text.strip():
        return None

    lines = snapshot.lines
    start = clamp_position(lines, selection.start)
    end = clamp_position(lines, selection.end)
    first = max(0, start.line - SURROUNDING_LINES)
    last = min(len(lines) - 1, end.line + SURROUNDING_LINES)
    before = "".join(f"{line}\n" for line in lines[first: start.line])
    after = "".join(f"{line}\n" for line in lines[end.line + 1: last + 1])
    file_name = snapshot.file_name or "untitled"

    return SelectionContext(
        file_name=file_name,
        language=display_language(file_name),
        selected_code=text,
        before_context=before.strip(),
        after_context=after.strip(),
        start_line=start.line + 1,
        end_line=end.line + 1,
        line_count=text.count("\n") + 1,
        char_count=len(text),
    )


def calculate_end_position(start: Position, text: str) -> Position:
    """Return where the cursor lands after inserting ``text`` at ``start``."""

    lines = text.split("\n")
    if len(lines) == 1:
        return Position(line=start.line, ch=start.ch + len(text))
    return Position(line=start.line + len(lines) - 1, ch=len(lines[-1]))


__all__ = [
    "CURSOR_MARKER",
    "Position",
    "SelectionRange",
    "DocumentSnapshot",
    "TriggerContext",
    "SelectionContext",
    "inline_language",
    "display_language",
    "offset_of",
    "build_trigger_context",
    "build_selection_context",
    "calculate_end_position",
]
