"""Byte/line budget enforcement for final run output."""

from __future__ import annotations

import re

from subagent_manager.config import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_MAX_OUTPUT_LINES
from subagent_manager.schemas import MaxOutputConfig, TruncationResult

_MARKER_RE = re.compile(r"\A\[TRUNCATED: showing first \d+ of \d+ lines, [^\n]*\]\n")


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"


def _utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _line_count(text: str) -> int:
    return len(text.split("\n")) if text else 0


def _within(text: str, max_bytes: int, max_lines: int) -> bool:
    return _utf8_len(text) <= max_bytes and _line_count(text) <= max_lines


def resolve_budget(
    config: MaxOutputConfig | None,
    *,
    default_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    default_lines: int = DEFAULT_MAX_OUTPUT_LINES,
) -> tuple[int, int]:
    """Fill unset fields of a caller budget with the defaults."""
    if config is None:
        return default_bytes, default_lines
    max_bytes = default_bytes if config.bytes is None else max(0, config.bytes)
    max_lines = default_lines if config.lines is None else max(0, config.lines)
    return max_bytes, max_lines


def truncate_output(
    text: str,
    max_bytes: int,
    max_lines: int,
    artifact_path: str | None = None,
) -> TruncationResult:
    """Cap ``text`` to ``max_lines`` lines and ``max_bytes`` UTF-8 bytes.

    The kept text always ends on a complete line. A marker line reporting
    kept/original sizes (and the artifact holding the full output, when known)
    is prepended. Text already carrying a marker whose body fits the budget is
    returned unchanged, so truncation is idempotent.
    """
    text = text or ""
    if _within(text, max_bytes, max_lines):
        return TruncationResult(text=text)
    marker = _MARKER_RE.match(text)
    if marker and _within(text[marker.end():], max_bytes, max_lines):
        return TruncationResult(text=text)

    lines = text.split("\n")
    original_bytes = _utf8_len(text)
    kept_lines = lines[: max(0, max_lines)]
    candidate = "\n".join(kept_lines)

    if _utf8_len(candidate) > max_bytes:
        low, high = 0, len(candidate)
        while low < high:
            mid = (low + high + 1) // 2
            if _utf8_len(candidate[:mid]) <= max_bytes:
                low = mid
            else:
                high = mid - 1
        pieces = candidate[:low].split("\n")
        if low < len(candidate) and candidate[low] != "\n":
            # The cut landed inside a line; keep only complete lines.
            pieces = pieces[:-1]
        candidate = "\n".join(pieces)
        kept_lines = pieces

    kept_count = len(kept_lines) if candidate or len(kept_lines) > 1 else 0
    pointer = f" - full output at {artifact_path}" if artifact_path else ""
    header = (
        f"[TRUNCATED: showing first {kept_count} of {len(lines)} lines, "
        f"{format_bytes(_utf8_len(candidate))} of {format_bytes(original_bytes)}{pointer}]\n"
    )
    return TruncationResult(
        text=header + candidate,
        truncated=True,
        original_bytes=original_bytes,
        original_lines=len(lines),
        artifact_path=artifact_path,
    )
