"""Escape-sequence filters for content that bypasses the diff engine.

Preloaded scrollback must not move the client's cursor, clear its screen or
flip it into the alternate buffer; colours (SGR) are kept. The direct-attach
fallback filters the start of the raw multiplexer stream the same way.
"""

from __future__ import annotations

import re


# Cursor motion: home, CUP/HVP, relative moves, next/prev line, column absolute
_CURSOR_MOTION = re.compile(r"\x1b\[(?:\d*(?:;\d*)?[Hf]|\d*[ABCDEFG])")
_CURSOR_VISIBILITY = re.compile(r"\x1b\[\?25[hl]")
_CURSOR_STYLE = re.compile(r"\x1b\[\d* ?q")
_ERASE = re.compile(r"\x1b\[\d*[JK]")
_ALT_SCREEN = re.compile(r"\x1b\[\?(?:1049|47|1047)[hl]")
_SAVE_RESTORE = re.compile(r"\x1b\[[su]|\x1b[78]")
_SCROLL_REGION = re.compile(r"\x1b\[\d*;\d*r")
_FULL_RESET = "\x1bc"

_HISTORY_FILTERS = (
    _CURSOR_MOTION,
    _CURSOR_VISIBILITY,
    _CURSOR_STYLE,
    _ERASE,
    _ALT_SCREEN,
    _SAVE_RESTORE,
    _SCROLL_REGION,
)

_SEAM_CLEAR = re.compile(r"\x1b\[2J")
_SEAM_POSITION = re.compile(r"\x1b\[\d*(?:;\d*)?[Hf]")


def sanitize_history(content: str) -> str:
    """Strip sequences that would disturb the client's scrollback; keep colours."""
    content = content.replace(_FULL_RESET, "")
    for pattern in _HISTORY_FILTERS:
        content = pattern.sub("", content)
    return content


def normalize_crlf(content: str) -> str:
    """Convert any mix of CR, LF and CRLF line endings to CRLF."""
    content = content.replace("\r\n", "\n").replace("\r", "\n")
    return content.replace("\n", "\r\n")


def strip_seam_sequences(data: str) -> str:
    """Remove sequences that would wipe preloaded history during attach."""
    data = data.replace(_FULL_RESET, "")
    data = _ALT_SCREEN.sub("", data)
    data = _SEAM_CLEAR.sub("", data)
    return _SEAM_POSITION.sub("", data)
