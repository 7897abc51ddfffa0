"""Prompt templates for the inline-completion and code-action callers."""

from __future__ import annotations

from typing import Any, Mapping

from .context import CURSOR_MARKER, SelectionContext, TriggerContext
from .errors import PreconditionError

# Sampling defaults for code actions
ACTION_MAX_TOKENS = 8_192
ACTION_SAMPLING: Mapping[str, Any] = {
    "temperature": 0.7,
    "top_p": 0.9,
    "frequency_penalty": 0.1,
    "presence_penalty": 0.1,
}

ACTION_TITLES: Mapping[str, str] = {
    "explain": "Code Explanation",
    "refactor": "Refactoring Suggestions",
    "tests": "Test Generation",
    "documentation": "Documentation Generation",
    "fix": "Code Analysis & Fixes",
}

VALID_ACTIONS: tuple[str, ...] = tuple(ACTION_TITLES)


def inline_system_prompt() -> str:
    return f"""You are an expert code completion assistant. Provide intelligent, contextual code suggestions.

CRITICAL RULES:
1. Complete the code naturally from the cursor position (marked with {CURSOR_MARKER})
2. NEVER duplicate existing code that's already present in the file
3. Only suggest what should be added/completed at the cursor position
4. Consider the full file context to avoid repetition
5. If a line is incomplete, complete ONLY that line
6. If a line is complete, suggest the NEXT logical code
7. Keep suggestions concise (1-3 lines typically)
8. Maintain proper indentation and coding style
9. Return ONLY the code to be inserted, nothing else
10. DO NOT repeat code that already exists before or after the cursor

CONTEXT ANALYSIS:
- Look at the code before the cursor to understand what's already written
- Look at the code after the cursor to see what comes next
- Only suggest the missing piece between these sections
- Never duplicate function names, variable declarations, or existing logic"""


def completion_prompt(context: TriggerContext) -> str:
    """Build the user prompt for an inline completion at the cursor marker."""

    return f"""File: {context.file_name} ({context.language})
Total Lines: {context.total_lines}

FULL FILE CONTEXT:
```{context.language}
{context.content}
```

CURSOR POSITION ANALYSIS:
- Current line: "{context.current_line}"
- Text before cursor: "{context.line_before_cursor}"
- Text after cursor: "{context.line_after_cursor}"
- Next few lines after cursor:
{context.next_lines or 'No lines follow'}

CRITICAL INSTRUCTION: Complete the code at the {CURSOR_MARKER} position.

ANTI-DUPLICATION RULES:
1. NEVER repeat text that appears in "Text after cursor"
2. NEVER repeat any code that already exists in the next few lines
3. If you see closing tags like </div>, </p>, }}, ), ;, etc. after the cursor, DO NOT include them in your suggestion
4. If the current line already has content after the cursor, DO NOT duplicate it
5. Only suggest the missing piece that would naturally go at the cursor position

COMPLETION GUIDELINES:
- If the line is incomplete (like "const name = "), complete just that part
- If the line is complete, suggest the next logical statement
- Maintain proper indentation
- Keep suggestions concise (1-3 lines typically)
- Match the existing code style

Provide ONLY the code to insert at the cursor position:"""


def completion_messages(context: TriggerContext) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": inline_system_prompt()},
        {"role": "user", "content": completion_prompt(context)},
    ]


# -----------------------------------------------------------------------------
# Code actions
# -----------------------------------------------------------------------------

_ACTION_INSTRUCTIONS: Mapping[str, str] = {
    "explain": """Please explain this code clearly and concisely:
- What does this code do?
- How does it work?
- What are the key concepts or patterns?
- Are there any notable implementation details?

Provide a helpful explanation that would be useful for understanding and learning.""",
    "refactor": """Please analyze this code and suggest specific improvements:
- Code structure and organization
- Performance optimizations
- Readability and maintainability
- Best practices compliance
- Error handling improvements

Provide actionable refactoring suggestions with clear explanations.""",
    "tests": """Please generate comprehensive test cases for this code:
- Unit tests for normal operation
- Edge cases and boundary conditions
- Error handling scenarios
- Input validation tests

Generate practical, runnable test code that thoroughly validates the functionality.""",
    "documentation": """Please generate professional documentation for this code:
- Clear function/method descriptions
- Parameter types and descriptions
- Return value documentation
- Usage examples
- Any important notes or warnings

Generate JSDoc-style comments or appropriate documentation for the language.""",
    "fix": """Please analyze this code for potential issues and provide fixes:
- Syntax errors
- Logic bugs
- Performance problems
- Security vulnerabilities
- Best practice violations

Identify specific issues and provide corrected code with explanations.""",
}

_ACTION_SYSTEM_MESSAGES: Mapping[str, str] = {
    "explain": (
        "You are a senior software engineer specializing in clear code explanations. Provide educational, "
        "comprehensive explanations that help developers understand code structure, purpose, and "
        "implementation. Be thorough but concise."
    ),
    "refactor": (
        "You are an expert code reviewer specializing in refactoring and optimization. Analyze code for "
        "improvements in structure, performance, readability, and best practices. Provide specific, "
        "actionable suggestions with clear justifications."
    ),
    "tests": (
        "You are a testing expert who creates comprehensive test suites. Generate thorough, practical test "
        "cases that validate functionality, handle edge cases, and ensure robust code quality. Focus on "
        "real-world testing scenarios."
    ),
    "documentation": (
        "You are a technical documentation specialist. Create clear, comprehensive documentation that helps "
        "developers understand and use code effectively. Follow documentation best practices for the "
        "specific programming language."
    ),
    "fix": (
        "You are a debugging and code quality expert. Systematically identify issues in code including bugs, "
        "performance problems, security vulnerabilities, and best practice violations. Provide precise fixes "
        "with clear explanations."
    ),
}


def _require_action(action: str) -> str:
    if action not in ACTION_TITLES:
        raise PreconditionError.unknown_action(action)
    return action


def action_title(action: str) -> str:
    return ACTION_TITLES[_require_action(action)]


def action_system_message(action: str) -> str:
    return _ACTION_SYSTEM_MESSAGES[_require_action(action)]


def action_prompt(action: str, context: SelectionContext) -> str:
    """Build the user prompt for ``action`` over the selected code."""

    instructions = _ACTION_INSTRUCTIONS[_require_action(action)]
    lang = context.language
    base = (
        f"File: {context.file_name} ({lang})\n"
        f"Lines: {context.start_line}-{context.end_line}\n"
        f"Selection: {context.line_count} lines, {context.char_count} characters\n"
        "\n"
        "Selected Code:\n"
        f"```{lang}\n{context.selected_code}\n```"
    )
    surrounding: list[str] = []
    if context.before_context:
        surrounding.append(f"Before:\n```{lang}\n{context.before_context}\n```")
    if context.after_context:
        surrounding.append(f"After:\n```{lang}\n{context.after_context}\n```")
    if surrounding:
        base += "\n\nContext:\n" + "\n".join(surrounding)
    return f"{base}\n\n{instructions}"


def action_messages(action: str, context: SelectionContext) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": action_system_message(action)},
        {"role": "user", "content": action_prompt(action, context)},
    ]


def action_params(max_tokens: int = ACTION_MAX_TOKENS) -> dict[str, Any]:
    params = dict(ACTION_SAMPLING)
    params["max_tokens"] = max_tokens
    return params


__all__ = [
    "ACTION_TITLES",
    "VALID_ACTIONS",
    "ACTION_SAMPLING",
    "inline_system_prompt",
    "completion_prompt",
    "completion_messages",
    "action_title",
    "action_system_message",
    "action_prompt",
    "action_messages",
    "action_params",
]
