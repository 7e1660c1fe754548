"""Terminal text helpers — ANSI stripping, sanitizing, log previews."""

from __future__ import annotations

import re

_ANSI_RE = re.compile(
    r"\x1b\[[0-9;?]*[ -/]*[@-~]"  # CSI sequences
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC sequences
    r"|\x1b[@-Z\\-_]"  # two-byte escapes
)

PREVIEW_CHARS = 100


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_binary_output(text: str) -> str:
    """Remove binary garbage from output.

    Keeps printable chars, tabs, newlines, and carriage returns.
    Strips everything else (control chars, undefined code points, format chars).
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n", "\r"):
            cleaned.append(ch)
        elif cp >= 32 and cp not in range(0x7F, 0xA0):
            if cp not in range(0xFFF9, 0xFFFC):
                cleaned.append(ch)
    return "".join(cleaned)


def clean_terminal_text(text: str) -> str:
    """ANSI-strip and sanitize a chunk of PTY output."""
    return sanitize_binary_output(strip_ansi(text))


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    """Shorten text for log metadata."""
    return text if len(text) <= limit else text[:limit]
