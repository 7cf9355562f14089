"""Skill lookup and system-prompt injection."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from subagent_manager.agents import split_frontmatter

logger = logging.getLogger(__name__)

_MAX_CACHE_SIZE = 50
_skill_cache: OrderedDict[str, tuple[float, ResolvedSkill]] = OrderedDict()


@dataclass(frozen=True, slots=True)
class ResolvedSkill:
    name: str
    path: str
    content: str
    source: Literal["project", "user"]


def normalize_skill_input(value: Any) -> list[str] | Literal[False] | None:
    """Normalize a skill parameter.

    ``False`` disables skills, ``True``/``None`` mean "use the default", and a
    comma-separated string or list becomes a deduplicated ordered list.
    """
    if value is False:
        return False
    if value is True or value is None:
        return None
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        return None
    return list(dict.fromkeys(item.strip() for item in items if item.strip()))


def resolve_skill_path(name: str, cwd: Path, user_skills_dir: Path) -> tuple[Path, Literal["project", "user"]] | None:
    project_path = (cwd / ".pi" / "skills" / name / "SKILL.md").resolve()
    if project_path.is_file():
        return project_path, "project"
    user_path = user_skills_dir / name / "SKILL.md"
    if user_path.is_file():
        return user_path, "user"
    return None


def _read_skill(name: str, path: Path, source: Literal["project", "user"]) -> ResolvedSkill | None:
    key = str(path)
    try:
        mtime = path.stat().st_mtime
        cached = _skill_cache.get(key)
        if cached is not None and cached[0] == mtime:
            return cached[1]
        _, body = split_frontmatter(path.read_text(encoding="utf-8"))
    except OSError as exc:
        logger.debug("Could not read skill %s at %s: %s", name, path, exc)
        return None
    skill = ResolvedSkill(name=name, path=key, content=body, source=source)
    _skill_cache[key] = (mtime, skill)
    while len(_skill_cache) > _MAX_CACHE_SIZE:
        _skill_cache.popitem(last=False)
    return skill


def resolve_skills(
    names: list[str] | tuple[str, ...],
    cwd: Path,
    user_skills_dir: Path,
) -> tuple[list[ResolvedSkill], list[str]]:
    """Return ``(resolved, missing)`` for the requested skill names."""
    resolved: list[ResolvedSkill] = []
    missing: list[str] = []
    for raw in names:
        name = raw.strip()
        if not name:
            continue
        location = resolve_skill_path(name, cwd, user_skills_dir)
        skill = _read_skill(name, *location) if location is not None else None
        if skill is None:
            missing.append(name)
        else:
            resolved.append(skill)
    return resolved, missing


def build_skill_injection(skills: list[ResolvedSkill]) -> str:
    return "\n\n".join(f'<skill name="{skill.name}">\n{skill.content}\n</skill>' for skill in skills)
