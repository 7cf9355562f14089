"""Tests for atomic writes, JSON helpers, private prompt files, and lookups."""

from __future__ import annotations

import json
import os
import stat
from pathlib import Path

import pytest

import subagent_manager.file_io as file_io

pytestmark = pytest.mark.unit


def test_path_lock_reuses_same_lock_for_resolved_aliases(tmp_path: Path) -> None:
    primary = tmp_path / "runs" / "status.json"
    alias = tmp_path / "runs" / ".." / "runs" / "status.json"

    assert file_io._path_lock(primary) is file_io._path_lock(alias)


def test_replace_file_with_retry_retries_permission_denied_then_succeeds(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    src = tmp_path / "src.txt"
    dst = tmp_path / "dst.txt"
    src.write_text("new-content", encoding="utf-8")
    dst.write_text("old-content", encoding="utf-8")

    attempts = {"count": 0}
    original_replace = Path.replace

    def flaky_replace(self: Path, target: Path) -> Path:
        if self == src and Path(target) == dst and attempts["count"] < 2:
            attempts["count"] += 1
            raise PermissionError("file locked")
        return original_replace(self, target)

    monkeypatch.setattr(Path, "replace", flaky_replace)
    monkeypatch.setattr(file_io.time, "sleep", lambda _seconds: None)

    file_io._replace_file_with_retry(src, dst)

    assert attempts["count"] == 2
    assert dst.read_text(encoding="utf-8") == "new-content"


def test_atomic_write_text_cleans_temp_file_when_replace_raises(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    path = tmp_path / "async" / "status.json"

    def busy(_src: Path, _dst: Path) -> None:
        raise PermissionError("busy")

    monkeypatch.setattr(file_io, "_replace_file_with_retry", busy)

    with pytest.raises(PermissionError):
        file_io.atomic_write_text(path, "content")

    assert list(path.parent.glob(f"{path.name}.*.tmp")) == []


def test_write_and_read_json(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "data.json"
    file_io.write_json(path, {"a": 1, "where": tmp_path})
    assert file_io.read_json(path) == {"a": 1, "where": str(tmp_path)}


def test_read_json_tolerates_missing_empty_and_malformed(tmp_path: Path) -> None:
    assert file_io.read_json(tmp_path / "missing.json") is None
    empty = tmp_path / "empty.json"
    empty.write_text("  ", encoding="utf-8")
    assert file_io.read_json(empty) is None
    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    assert file_io.read_json(broken) is None


def test_append_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    file_io.append_jsonl(path, {"type": "one"})
    file_io.append_jsonl(path, '{"type": "two"}')
    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["type"] for line in lines] == ["one", "two"]


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_private_prompt_is_owner_only_and_removable() -> None:
    prompt = file_io.write_private_prompt("scout/agent", "secret prompt")
    try:
        assert prompt.path.name == "scout_agent.md"
        assert prompt.path.read_text(encoding="utf-8") == "secret prompt"
        assert stat.S_IMODE(prompt.path.stat().st_mode) == 0o600
    finally:
        prompt.remove()
    assert not prompt.directory.exists()


def test_find_latest_file(tmp_path: Path) -> None:
    old = tmp_path / "old.jsonl"
    new = tmp_path / "new.jsonl"
    old.write_text("", encoding="utf-8")
    new.write_text("", encoding="utf-8")
    (tmp_path / "other.txt").write_text("", encoding="utf-8")
    os.utime(old, (1_000, 1_000))
    os.utime(new, (2_000, 2_000))
    assert file_io.find_latest_file(tmp_path) == new
    assert file_io.find_latest_file(tmp_path / "missing") is None


def test_find_by_prefix_prefers_suffix(tmp_path: Path) -> None:
    (tmp_path / "abc123").mkdir()
    (tmp_path / "abc123.json").write_text("{}", encoding="utf-8")
    assert file_io.find_by_prefix(tmp_path, "abc", ".json") == tmp_path / "abc123.json"
    assert file_io.find_by_prefix(tmp_path, "abc") == tmp_path / "abc123"
    assert file_io.find_by_prefix(tmp_path, "zzz") is None


def test_safe_name() -> None:
    assert file_io.safe_name("a/b c:d") == "a_b_c_d"
