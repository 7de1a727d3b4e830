"""Helpers for working with raw terminal output."""

from __future__ import annotations

import re

# CSI, OSC (BEL or ST terminated), DCS/SOS/PM/APC strings, charset
# designations, then any remaining two-byte escape.
_ESCAPE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[PX^_][^\x1b]*\x1b\\"
    r"|\x1b[()*+#%][ -~]"
    r"|\x1b[ -~]"
)
_C1_CSI_RE = re.compile(r"\x9b[0-?]*[ -/]*[@-~]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def strip_control_sequences(text: str) -> str:
    """Remove terminal escape sequences and stray control characters.

    Newlines and tabs survive. Carriage returns are folded into newlines so
    line-oriented matching works on pty output.
    """
    if not text:
        return ""
    clean = _ESCAPE_RE.sub("", text)
    clean = _C1_CSI_RE.sub("", clean)
    clean = clean.replace("\r\n", "\n").replace("\r", "\n")
    return _CONTROL_RE.sub("", clean)


def append_bounded(buffer: str, chunk: str, limit: int) -> str:
    """Append chunk to buffer, keeping only the last ``limit`` characters."""
    combined = buffer + chunk
    if len(combined) > limit:
        return combined[-limit:]
    return combined
