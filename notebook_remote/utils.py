"""
Utility functions for notebook-remote.
"""

import re
from typing import Optional

from rich.text import Text

from notebook_remote.models import CodeCell


ERROR_CATEGORIES = {
    "syntax": ("SyntaxError", "IndentationError", "TabError"),
    "import": ("ImportError", "ModuleNotFoundError"),
    "runtime": (
        "NameError", "TypeError", "ValueError", "AttributeError",
        "KeyError", "IndexError", "ZeroDivisionError",
    ),
    "timeout": ("TimeoutError",),
}

ERROR_SUGGESTIONS = {
    "NameError": "Check if the variable is defined and spelled correctly",
    "ModuleNotFoundError": "Install the missing module using: pip install <module_name>",
    "SyntaxError": "Check your code syntax, brackets, and indentation",
    "IndentationError": "Fix indentation - use consistent spaces or tabs",
    "TypeError": "Check the data types being used in your operation",
    "ValueError": "Check if the value is appropriate for the operation",
    "ImportError": "Check if the module exists and is properly installed",
    "AttributeError": "Check if the object has the attribute you're trying to access",
    "KeyError": "Check if the key exists in the dictionary",
    "IndexError": "Check if the index is within the valid range",
    "ZeroDivisionError": "Cannot divide by zero - check your calculation",
}

_ERROR_NAME_RE = re.compile(r"^Error: (\w+)", re.MULTILINE)
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


def strip_ansi(text: str) -> str:
    """Remove terminal color codes (kernel tracebacks are colored)."""
    return _ANSI_RE.sub("", text)


def error_name(output: str) -> Optional[str]:
    """Exception class name from formatted error output, if any."""
    match = _ERROR_NAME_RE.search(output or "")
    return match.group(1) if match else None


def classify_error(ename: Optional[str]) -> tuple[str, Optional[str]]:
    """
    Map an exception name to a category and a hint.

    Returns:
        Tuple of (category, suggestion or None)
    """
    if not ename:
        return ("unknown", None)
    category = "unknown"
    for name, members in ERROR_CATEGORIES.items():
        if ename in members:
            category = name
            break
    return (category, ERROR_SUGGESTIONS.get(ename))


def format_rich_output(cell: CodeCell):
    """
    Format a cell's output as a Rich renderable.

    Kernel tracebacks carry ANSI colors, which are decoded rather than
    printed raw.
    """
    if cell.has_error:
        text = Text.from_ansi(cell.output.rstrip("\n"), style="red")
        _, suggestion = classify_error(error_name(strip_ansi(cell.output)))
        if suggestion:
            text.append(f"\nHint: {suggestion}", style="dim yellow")
        return text
    if not cell.output:
        return Text("(no output)", style="dim")
    return Text.from_ansi(cell.output.rstrip("\n"))


def get_cell_status(cell: CodeCell) -> tuple[str, str]:
    """
    Get status indicator and style for a cell.

    Returns:
        Tuple of (indicator_string, rich_style)
    """
    if cell.is_executing:
        return ("run", "yellow")
    if cell.has_error:
        return ("err", "red")
    if cell.output:
        return ("ok", "green")
    return ("--", "dim")


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to max_length, adding ellipsis if needed."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
