"""
ANSI styling for operator log lines.

Colour is used only when stdout is a TTY and NO_COLOR is unset. Escapes are
complete per call so a styled line never leaves the terminal in a colour.
"""

from __future__ import annotations

import os
import sys


def _supports_color(stream) -> bool:
    if os.getenv("NO_COLOR") is not None:
        return False
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except (OSError, ValueError):
        return False


_COLOR_ENABLED = _supports_color(sys.stdout)


def set_color(enabled: bool) -> None:
    global _COLOR_ENABLED
    _COLOR_ENABLED = enabled


class SGR:
    RESET = "\x1b[0m"
    BOLD = "\x1b[1m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    YELLOW = "\x1b[33m"
    CYAN = "\x1b[36m"
    GRAY = "\x1b[90m"


def style(text: str, *codes: str) -> str:
    if not _COLOR_ENABLED or not text:
        return text
    return "".join(codes) + text + SGR.RESET


def dim(text: str) -> str:
    return style(text, SGR.GRAY)


def success(text: str) -> str:
    return style(text, SGR.GREEN)


def warn(text: str) -> str:
    return style(text, SGR.YELLOW)


def error(text: str) -> str:
    return style(text, SGR.BOLD, SGR.RED)


def usage(verb: str, args: str, summary: str) -> str:
    return f"  {style(f'{verb:<6}', SGR.CYAN)} {args:<12} {dim(summary)}"


__all__ = [
    "SGR",
    "set_color",
    "style",
    "dim",
    "success",
    "warn",
    "error",
    "usage",
]
