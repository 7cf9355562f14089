"""Filesystem helpers: atomic writes, JSONL appends, and private prompt files."""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01
_UNSAFE_NAME_CHARS = re.compile(r"[^\w.-]")

_PATH_LOCKS_GUARD = threading.Lock()
_PATH_LOCKS: dict[str, threading.RLock] = {}


def safe_name(name: str) -> str:
    """Replace characters that are unsafe in file names with underscores."""
    return _UNSAFE_NAME_CHARS.sub("_", str(name or ""))


def _path_lock(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _PATH_LOCKS[key] = lock
    return lock


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize file access for a single process using a per-path lock."""
    with _path_lock(path):
        yield


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        except OSError as exc:
            if exc.errno != 13:
                raise
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text through a sibling temp file so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
        with locked_path(path):
            _replace_file_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def write_json(path: Path, payload: Any, *, indent: int | None = 2) -> None:
    """Serialize ``payload`` and write it atomically."""
    atomic_write_text(path, json.dumps(payload, indent=indent, default=str))


def read_json(path: Path) -> Any | None:
    """Return parsed JSON from ``path`` or ``None`` when missing or malformed."""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return None
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append text under a per-path lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with locked_path(path), path.open("a", encoding=encoding) as handle:
        handle.write(content)


def append_jsonl(path: Path, record: dict[str, Any] | str) -> None:
    """Append one record (or an already-encoded line) to a JSONL file."""
    line = record if isinstance(record, str) else json.dumps(record, default=str)
    append_text(path, f"{line}\n")


@dataclass(frozen=True, slots=True)
class PromptFile:
    """A private temp file holding a system prompt for one child run."""

    directory: Path
    path: Path

    def remove(self) -> None:
        shutil.rmtree(self.directory, ignore_errors=True)


def write_private_prompt(agent: str, prompt: str) -> PromptFile:
    """Write ``prompt`` to an owner-only file inside a fresh temp directory."""
    directory = Path(tempfile.mkdtemp(prefix="subagent-prompt-"))
    path = directory / f"{safe_name(agent)}.md"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(prompt)
    return PromptFile(directory=directory, path=path)


def find_latest_file(directory: Path, suffix: str = ".jsonl") -> Path | None:
    """Return the most recently modified file in ``directory`` with ``suffix``."""
    if not directory.is_dir():
        return None
    candidates: list[tuple[float, Path]] = []
    for entry in directory.iterdir():
        if not entry.name.endswith(suffix):
            continue
        with suppress(OSError):
            candidates.append((entry.stat().st_mtime, entry))
    if not candidates:
        return None
    candidates.sort(key=lambda item: item[0], reverse=True)
    return candidates[0][1]


def find_by_prefix(directory: Path, prefix: str, suffix: str | None = None) -> Path | None:
    """Return the first (sorted) entry of ``directory`` whose name starts with ``prefix``."""
    if not directory.is_dir():
        return None
    entries = sorted(entry.name for entry in directory.iterdir() if entry.name.startswith(prefix))
    if suffix:
        with_suffix = [name for name in entries if name.endswith(suffix)]
        if with_suffix:
            return directory / with_suffix[0]
    if not entries:
        return None
    return directory / entries[0]
