"""Agent definitions discovered from Markdown files with YAML frontmatter."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from subagent_manager.config import Settings
from subagent_manager.errors import UnknownAgentError
from subagent_manager.schemas import AgentScope

logger = logging.getLogger(__name__)


def split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split a document into its YAML frontmatter mapping and body."""
    normalized = content.replace("\r\n", "\n")
    if not normalized.startswith("---"):
        return {}, normalized
    end = normalized.find("\n---", 3)
    if end == -1:
        return {}, normalized
    try:
        meta = yaml.safe_load(normalized[3:end]) or {}
    except yaml.YAMLError as exc:
        logger.warning("YAML frontmatter parse error: %s", exc)
        return {}, normalized
    if not isinstance(meta, dict):
        meta = {}
    return meta, normalized[end + 4 :].strip()


def _as_name_list(value: Any) -> tuple[str, ...] | None:
    if value is None or value is False:
        return None
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        return None
    names = tuple(dict.fromkeys(item.strip() for item in items if item and item.strip()))
    return names or None


@dataclass(frozen=True, slots=True)
class AgentDefinition:
    """An immutable agent profile: model, tools, system prompt, and chain defaults."""

    name: str
    description: str = ""
    model: str | None = None
    tools: tuple[str, ...] | None = None
    system_prompt: str = ""
    skills: tuple[str, ...] | None = None
    output: str | None = None
    default_reads: tuple[str, ...] | None = None
    default_progress: bool | None = None
    source: str = "user"
    file_path: str | None = None

    @classmethod
    def from_markdown(cls, path: Path, *, source: str = "user") -> AgentDefinition | None:
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not read agent file %s: %s", path, exc)
            return None
        meta, body = split_frontmatter(content)
        name = str(meta.get("name") or "").strip()
        if not name:
            logger.debug("Skipping agent file without a name: %s", path)
            return None
        output = meta.get("output")
        progress = meta.get("defaultProgress", meta.get("default_progress"))
        return cls(
            name=name,
            description=str(meta.get("description") or "").strip(),
            model=str(meta["model"]).strip() if meta.get("model") else None,
            tools=_as_name_list(meta.get("tools")),
            system_prompt=body,
            skills=_as_name_list(meta.get("skills", meta.get("skill"))),
            output=str(output).strip() if isinstance(output, str) and output.strip() else None,
            default_reads=_as_name_list(meta.get("defaultReads", meta.get("default_reads"))),
            default_progress=bool(progress) if progress is not None else None,
            source=source,
            file_path=str(path),
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "model": self.model,
            "tools": list(self.tools) if self.tools else None,
            "systemPrompt": self.system_prompt,
            "skills": list(self.skills) if self.skills else None,
            "output": self.output,
            "defaultReads": list(self.default_reads) if self.default_reads else None,
            "defaultProgress": self.default_progress,
            "source": self.source,
            "filePath": self.file_path,
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> AgentDefinition:
        def _tuple(key: str) -> tuple[str, ...] | None:
            value = data.get(key)
            return tuple(value) if value else None

        return cls(
            name=str(data["name"]),
            description=str(data.get("description") or ""),
            model=data.get("model"),
            tools=_tuple("tools"),
            system_prompt=str(data.get("systemPrompt") or ""),
            skills=_tuple("skills"),
            output=data.get("output"),
            default_reads=_tuple("defaultReads"),
            default_progress=data.get("defaultProgress"),
            source=str(data.get("source") or "user"),
            file_path=data.get("filePath"),
        )


@dataclass(slots=True)
class AgentRegistry:
    """Read-only name -> definition lookup loaded once per orchestration."""

    _agents: dict[str, AgentDefinition] = field(default_factory=dict)

    @classmethod
    def from_definitions(cls, definitions: Iterable[AgentDefinition]) -> AgentRegistry:
        agents: dict[str, AgentDefinition] = {}
        for definition in definitions:
            agents[definition.name] = definition
        return cls(agents)

    def get(self, name: str) -> AgentDefinition | None:
        return self._agents.get(name)

    def require(self, name: str, *, step: int | None = None) -> AgentDefinition:
        agent = self._agents.get(name)
        if agent is None:
            raise UnknownAgentError(name, self._agents, step=step)
        return agent

    def names(self) -> list[str]:
        return list(self._agents)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __iter__(self) -> Iterator[AgentDefinition]:
        return iter(self._agents.values())

    def __len__(self) -> int:
        return len(self._agents)


def find_project_agents_dir(cwd: Path) -> Path | None:
    """Return the nearest ``.pi/agents`` directory at or above ``cwd``."""
    current = cwd.resolve()
    for candidate in (current, *current.parents):
        agents_dir = candidate / ".pi" / "agents"
        if agents_dir.is_dir():
            return agents_dir
    return None


def _load_dir(directory: Path | None, source: str) -> list[AgentDefinition]:
    if directory is None or not directory.is_dir():
        return []
    found: list[AgentDefinition] = []
    for path in sorted(directory.glob("*.md")):
        definition = AgentDefinition.from_markdown(path, source=source)
        if definition is not None:
            found.append(definition)
    return found


def discover_agents(cwd: Path, scope: AgentScope, settings: Settings) -> AgentRegistry:
    """Load agents for ``scope``; project definitions shadow user ones of the same name."""
    definitions: list[AgentDefinition] = []
    if scope in ("user", "both"):
        definitions.extend(_load_dir(settings.user_agents_dir, "user"))
    if scope in ("project", "both"):
        definitions.extend(_load_dir(find_project_agents_dir(cwd), "project"))
    registry = AgentRegistry.from_definitions(definitions)
    logger.debug("Discovered %d agent(s) for scope=%s: %s", len(registry), scope, registry.names())
    return registry
