"""Shared helpers for spawning and stopping subordinate agent processes."""

from __future__ import annotations

import asyncio
import logging
import math
import os
import shutil
import subprocess
from collections.abc import Iterable
from contextlib import suppress
from typing import Any

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal


def process_isolation_kwargs() -> dict[str, object]:
    """Return subprocess kwargs that isolate child signal/control handling.

    On Windows the child gets its own process group and no console window so a
    terminating child cannot deliver CTRL_C_EVENT back to this process. On
    POSIX a new session gives the same isolation and lets us signal the whole
    process group on cancellation.
    """
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        flags = new_pg | no_win
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        # Accept copy/paste paths wrapped in shell quotes.
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    return shutil.which(expanded) or expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed usage payloads."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        if not cleaned:
            return 0
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError, OverflowError):
                return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def coerce_float(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def split_tools(tools: Iterable[str] | None) -> tuple[list[str], list[str]]:
    """Partition an allowlist into built-in tool names and extension paths."""
    builtin: list[str] = []
    extensions: list[str] = []
    for tool in tools or ():
        if "/" in tool or tool.endswith((".ts", ".js")):
            extensions.append(tool)
        else:
            builtin.append(tool)
    return builtin, extensions


async def terminate_with_grace(
    proc: asyncio.subprocess.Process,
    *,
    grace_seconds: float,
    process_name: str,
    reason: str,
) -> None:
    """Send a graceful terminate, escalating to a kill if the child outlives ``grace_seconds``."""
    if proc.returncode is not None:
        return
    _signal(proc, "SIGTERM")
    try:
        await asyncio.wait_for(proc.wait(), timeout=max(0.0, grace_seconds))
        return
    except asyncio.TimeoutError:
        logger.warning(
            "%s did not exit within %.1fs after terminate during %s; forcing kill.",
            process_name,
            grace_seconds,
            reason,
        )
    _signal(proc, "SIGKILL")
    try:
        await asyncio.wait_for(proc.wait(), timeout=5.0)
    except asyncio.TimeoutError:  # pragma: no cover - extreme edge case
        logger.warning("%s ignored kill during %s.", process_name, reason)


def _signal(proc: asyncio.subprocess.Process, sig_name: str) -> None:
    """Best-effort signal delivery to the child and, on POSIX, its process group."""
    if os.name != "nt":
        pid = int(getattr(proc, "pid", 0) or 0)
        if pid > 0:
            with suppress(ProcessLookupError, PermissionError, OSError):
                os.killpg(os.getpgid(pid), getattr(signal, sig_name))
    with suppress(ProcessLookupError):
        if sig_name == "SIGKILL":
            proc.kill()
        else:
            proc.terminate()
