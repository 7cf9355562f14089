"""Tests for agent discovery from frontmatter files and skill resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from subagent_manager.agents import AgentDefinition, discover_agents, find_project_agents_dir, split_frontmatter
from subagent_manager.config import Settings
from subagent_manager.errors import UnknownAgentError
from subagent_manager.skills import build_skill_injection, normalize_skill_input, resolve_skills

pytestmark = pytest.mark.unit


def _write_agent(directory: Path, name: str, body: str = "You are helpful.", **meta: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    header = "\n".join([f"name: {name}", *(f"{key}: {value}" for key, value in meta.items())])
    path = directory / f"{name}.md"
    path.write_text(f"---\n{header}\n---\n\n{body}\n", encoding="utf-8")
    return path


def _write_skill(root: Path, name: str, content: str) -> Path:
    path = root / name / "SKILL.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"---\nname: {name}\n---\n{content}\n", encoding="utf-8")
    return path


class TestFrontmatter:
    def test_split(self):
        meta, body = split_frontmatter("---\nname: a\ntools: [read, bash]\n---\nBody text\n")
        assert meta == {"name": "a", "tools": ["read", "bash"]}
        assert body == "Body text"

    def test_no_frontmatter(self):
        assert split_frontmatter("plain") == ({}, "plain")

    def test_invalid_yaml_is_treated_as_body(self):
        meta, _ = split_frontmatter("---\nname: [unclosed\n---\nbody")
        assert meta == {}


class TestAgentDefinition:
    def test_from_markdown(self, tmp_path: Path):
        path = _write_agent(
            tmp_path,
            "scout",
            description="Fast recon",
            model="claude-haiku",
            tools="read, bash, ./ext/tool.ts",
            skills="git, docs",
            output="context.md",
            defaultReads="plan.md",
            defaultProgress="true",
        )
        agent = AgentDefinition.from_markdown(path, source="project")
        assert agent is not None
        assert agent.name == "scout"
        assert agent.tools == ("read", "bash", "./ext/tool.ts")
        assert agent.skills == ("git", "docs")
        assert agent.output == "context.md"
        assert agent.default_reads == ("plan.md",)
        assert agent.default_progress is True
        assert agent.system_prompt == "You are helpful."
        assert agent.source == "project"

    def test_file_without_name_is_skipped(self, tmp_path: Path):
        path = tmp_path / "anon.md"
        path.write_text("---\ndescription: x\n---\nbody", encoding="utf-8")
        assert AgentDefinition.from_markdown(path) is None

    def test_wire_round_trip_preserves_defaults(self, tmp_path: Path):
        agent = AgentDefinition(name="a", skills=("s",), default_reads=("r.md",), output="o.md")
        assert AgentDefinition.from_wire(agent.to_wire()) == agent


class TestDiscovery:
    def test_project_agents_shadow_user_agents(self, tmp_path: Path):
        settings = Settings(user_agents_dir=tmp_path / "user")
        _write_agent(tmp_path / "user", "scout", description="user scout")
        _write_agent(tmp_path / "user", "planner")
        project = tmp_path / "repo"
        _write_agent(project / ".pi" / "agents", "scout", description="project scout")
        nested = project / "src" / "pkg"
        nested.mkdir(parents=True)

        assert find_project_agents_dir(nested) == (project / ".pi" / "agents").resolve()

        both = discover_agents(nested, "both", settings)
        assert sorted(both.names()) == ["planner", "scout"]
        assert both.require("scout").description == "project scout"

        user_only = discover_agents(nested, "user", settings)
        assert user_only.require("scout").description == "user scout"

        project_only = discover_agents(nested, "project", settings)
        assert project_only.names() == ["scout"]

    def test_require_unknown_lists_available(self, registry):
        with pytest.raises(UnknownAgentError) as info:
            registry.require("ghost", step=3)
        assert "step 3" in str(info.value)
        assert "scout" in info.value.available


class TestSkills:
    def test_normalize_skill_input(self):
        assert normalize_skill_input(False) is False
        assert normalize_skill_input(None) is None
        assert normalize_skill_input(True) is None
        assert normalize_skill_input("a, b,a,,") == ["a", "b"]
        assert normalize_skill_input(["x", " y "]) == ["x", "y"]

    def test_project_skill_shadows_user_skill(self, tmp_path: Path):
        cwd = tmp_path / "repo"
        user_dir = tmp_path / "user-skills"
        _write_skill(cwd / ".pi" / "skills", "git", "project git")
        _write_skill(user_dir, "git", "user git")
        _write_skill(user_dir, "docs", "user docs")

        resolved, missing = resolve_skills(["git", "docs", "nope"], cwd, user_dir)
        assert [(skill.name, skill.source) for skill in resolved] == [("git", "project"), ("docs", "user")]
        assert resolved[0].content == "project git"
        assert missing == ["nope"]

    def test_injection_wraps_each_skill(self, tmp_path: Path):
        _write_skill(tmp_path, "docs", "Write docs.")
        resolved, _ = resolve_skills(["docs"], tmp_path / "none", tmp_path)
        assert build_skill_injection(resolved) == '<skill name="docs">\nWrite docs.\n</skill>'
