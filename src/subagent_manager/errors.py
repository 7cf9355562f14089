"""Exception taxonomy and in-band failure detection for subagent runs."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from subagent_manager.messages import first_text_part


class SubagentError(RuntimeError):
    """Base class for orchestration errors."""


class ChainValidationError(SubagentError, ValueError):
    """A request or chain is malformed; raised before any process is spawned."""


class UnknownAgentError(ChainValidationError, KeyError):
    """A step names an agent that is not in the registry."""

    def __init__(self, name: str, available: Iterable[str] = (), *, step: int | None = None) -> None:
        self.name = name
        self.available = sorted(available)
        self.step = step
        where = f" (step {step})" if step is not None else ""
        super().__init__(f"Unknown agent: {name}{where}")

    def __str__(self) -> str:  # KeyError would otherwise repr() the message
        return str(self.args[0]) if self.args else ""


class AsyncLaunchError(SubagentError):
    """The detached async runner could not be started."""


_EXIT_CODE_RE = re.compile(r"exit(?:ed)?\s*(?:with\s*)?(?:code|status)?\s*[:\s]?\s*(\d+)", re.IGNORECASE)
_FAILURE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"command not found",
        r"permission denied",
        r"no such file or directory",
        r"segmentation fault",
        r"killed|terminated",
        r"out of memory",
        r"connection refused",
        r"timeout",
    )
)
_DETAIL_LIMIT = 200


@dataclass(frozen=True, slots=True)
class DetectedError:
    exit_code: int
    error_type: str
    details: str | None = None

    def describe(self) -> str:
        if self.details:
            return f"{self.error_type} failed (exit {self.exit_code}): {self.details}"
        return f"{self.error_type} failed with exit code {self.exit_code}"


def detect_subagent_error(messages: list[dict[str, Any]]) -> DetectedError | None:
    """Scan tool results for failures the child process did not report via its exit code."""
    for message in messages:
        if message.get("role") != "toolResult" or not message.get("isError"):
            continue
        details = first_text_part(message)
        match = _EXIT_CODE_RE.search(details or "")
        return DetectedError(
            exit_code=int(match.group(1)) if match else 1,
            error_type=str(message.get("toolName") or "tool"),
            details=details[:_DETAIL_LIMIT] if details else None,
        )

    for message in messages:
        if message.get("role") != "toolResult" or message.get("toolName") != "bash":
            continue
        output = first_text_part(message)
        if not output:
            continue
        match = _EXIT_CODE_RE.search(output)
        if match and int(match.group(1)) != 0:
            return DetectedError(int(match.group(1)), "bash", output[:_DETAIL_LIMIT])
        if any(pattern.search(output) for pattern in _FAILURE_PATTERNS):
            return DetectedError(1, "bash", output[:_DETAIL_LIMIT])
    return None
