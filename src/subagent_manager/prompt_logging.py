"""Secret-safe logging of task and system-prompt text."""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Final

PROMPT_DEBUG_ENV: Final[str] = "SUBAGENT_MANAGER_PROMPT_DEBUG"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

_SECRET_PATTERNS = (
    re.compile(
        r"(?i)\b(api[_-]?key|access[_-]?token|client[_-]?secret|authorization|token|secret|password)"
        r"(\s*[:=]\s*)([^\s,;]+)"
    ),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._\-+/=]{10,}"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bsk-(?:ant-|proj-)?[A-Za-z0-9_-]{16,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
)


def is_prompt_debug_enabled() -> bool:
    """Full prompt text is logged only when explicitly enabled or at DEBUG level."""
    raw = os.getenv(PROMPT_DEBUG_ENV, "").strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    return logging.getLogger().isEnabledFor(logging.DEBUG)


def count_secret_hits(text: str) -> int:
    return sum(len(pattern.findall(text)) for pattern in _SECRET_PATTERNS)


def prompt_metadata(prompt: str) -> dict[str, int | str]:
    text = str(prompt or "")
    return {
        "length_chars": len(text),
        "sha256": hashlib.sha256(text.encode("utf-8")).hexdigest()[:16],
        "redaction_hits": count_secret_hits(text),
    }


def format_prompt_log_line(prompt: str, *, label: str = "Task", debug: bool | None = None) -> str:
    text = str(prompt or "")
    if is_prompt_debug_enabled() if debug is None else debug:
        return f"{label}: {text}"
    meta = prompt_metadata(text)
    return (
        f"{label} metadata: len={meta['length_chars']}, sha256={meta['sha256']}, "
        f"redaction_hits={meta['redaction_hits']} (set {PROMPT_DEBUG_ENV}=1 for full text)"
    )
