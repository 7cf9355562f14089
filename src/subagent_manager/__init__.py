"""Subagent Manager - delegate work to subordinate agent runs as single tasks, parallel batches, or chains."""

from importlib.metadata import PackageNotFoundError, version

from subagent_manager.schemas import RunResult, SubagentRequest, ToolResponse

__all__ = ["RunResult", "SubagentRequest", "ToolResponse"]

try:
    __version__ = version("subagent-manager")
except PackageNotFoundError:
    __version__ = "0.0.0"
