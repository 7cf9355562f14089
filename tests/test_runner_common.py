"""Tests for shared process helpers."""

from __future__ import annotations

import asyncio
import os
import stat
import sys
import time
from pathlib import Path

import pytest

from subagent_manager.runner_common import (
    coerce_float,
    coerce_int,
    process_isolation_kwargs,
    resolve_binary,
    split_tools,
    terminate_with_grace,
)


def _make_executable(tmp_path: Path, name: str) -> Path:
    path = tmp_path / name
    if os.name == "nt":
        path.write_text("@echo off\r\nexit /b 0\r\n", encoding="utf-8")
    else:
        path.write_text("#!/usr/bin/env sh\nexit 0\n", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


def test_coerce_int_handles_loose_values() -> None:
    assert coerce_int(float("nan")) == 0
    assert coerce_int(float("inf")) == 0
    assert coerce_int("1,234") == 1234
    assert coerce_int("12.9") == 12
    assert coerce_int(None) == 0
    assert coerce_int("tokens") == 0


def test_coerce_float_rejects_non_numeric() -> None:
    assert coerce_float("0.25") == 0.25
    assert coerce_float(True) == 0.0
    assert coerce_float(float("nan")) == 0.0
    assert coerce_float({}) == 0.0


def test_resolve_binary_expands_environment_variables(monkeypatch, tmp_path: Path) -> None:
    var_name = "SUBAGENT_MANAGER_TEST_BIN_DIR"
    monkeypatch.setenv(var_name, str(tmp_path))

    if os.name == "nt":
        tool = _make_executable(tmp_path, "agent-tool.cmd")
        configured = f"%{var_name}%\\{tool.name}"
    else:
        tool = _make_executable(tmp_path, "agent-tool")
        configured = f"${var_name}/{tool.name}"

    resolved = resolve_binary(configured)
    assert Path(resolved).resolve() == tool.resolve()


def test_resolve_binary_accepts_wrapped_quotes(tmp_path: Path) -> None:
    tool = _make_executable(tmp_path, "agent tool.cmd" if os.name == "nt" else "agent tool")
    resolved = resolve_binary(f'"{tool}"')
    assert Path(resolved).resolve() == tool.resolve()
    assert resolve_binary("  ") == ""


def test_split_tools_separates_extensions() -> None:
    assert split_tools(["read", "bash", "./ext/tool.ts", "plugin.js", "lib/x"]) == (
        ["read", "bash"],
        ["./ext/tool.ts", "plugin.js", "lib/x"],
    )
    assert split_tools(None) == ([], [])


@pytest.mark.skipif(os.name == "nt", reason="POSIX session isolation")
def test_process_isolation_uses_new_session() -> None:
    assert process_isolation_kwargs() == {"start_new_session": True}


@pytest.mark.integration
@pytest.mark.skipif(os.name == "nt", reason="POSIX signal semantics")
def test_terminate_with_grace_escalates_to_kill() -> None:
    stubborn = "import signal, time\nsignal.signal(signal.SIGTERM, signal.SIG_IGN)\nprint('ready', flush=True)\ntime.sleep(30)\n"

    async def scenario() -> tuple[int | None, float]:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            stubborn,
            stdout=asyncio.subprocess.PIPE,
            **process_isolation_kwargs(),
        )
        assert proc.stdout is not None
        await proc.stdout.readline()
        started = time.monotonic()
        await terminate_with_grace(proc, grace_seconds=0.2, process_name="stubborn", reason="test")
        return proc.returncode, time.monotonic() - started

    returncode, elapsed = asyncio.run(scenario())
    assert returncode is not None
    assert returncode != 0
    assert elapsed < 10
