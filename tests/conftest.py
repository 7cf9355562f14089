"""Shared pytest configuration: marker registration, execution ordering, and common fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from subagent_manager.agents import AgentDefinition, AgentRegistry
from subagent_manager.config import Settings


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that spawn long-running processes")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings whose every directory lives under the test's tmp_path."""
    return Settings(
        async_dir=tmp_path / "async-runs",
        results_dir=tmp_path / "async-results",
        chain_runs_dir=tmp_path / "chain-runs",
        temp_artifacts_dir=tmp_path / "artifacts",
        user_agents_dir=tmp_path / "user-agents",
        user_skills_dir=tmp_path / "user-skills",
        progress_throttle_ms=0,
        kill_grace_seconds=0.5,
        job_linger_seconds=10.0,
    )


@pytest.fixture()
def registry() -> AgentRegistry:
    return AgentRegistry.from_definitions(
        [
            AgentDefinition(name="scout", description="Finds things"),
            AgentDefinition(name="planner", description="Plans things"),
            AgentDefinition(name="worker", description="Does things"),
            AgentDefinition(name="reviewer", description="Reviews things", output="review.md"),
        ]
    )
