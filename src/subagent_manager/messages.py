"""Helpers for reading the message records a subordinate agent streams back."""

from __future__ import annotations

from typing import Any

_PREVIEW_KEYS = ("command", "path", "file_path", "pattern", "query", "url", "task", "describe", "search")


def extract_text_from_content(content: Any) -> str:
    """Flatten the text parts of a message ``content`` field."""
    if not content:
        return ""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "text" and "text" in part:
            texts.append(str(part["text"]))
        elif part_type == "tool_result" and "content" in part:
            inner = extract_text_from_content(part["content"])
            if inner:
                texts.append(inner)
        elif "text" in part:
            texts.append(str(part["text"]))
    return "\n".join(texts)


def first_text_part(message: dict[str, Any]) -> str | None:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return None
    for part in content:
        if isinstance(part, dict) and part.get("type") == "text":
            return str(part.get("text", ""))
    return None


def get_final_output(messages: list[dict[str, Any]]) -> str:
    """Return the first text part of the last assistant message that has one."""
    for message in reversed(messages):
        if message.get("role") != "assistant":
            continue
        text = first_text_part(message)
        if text is not None:
            return text
    return ""


def _clip(value: str, limit: int) -> str:
    return value if len(value) <= limit else f"{value[: limit - 3]}..."


def extract_tool_args_preview(args: dict[str, Any] | None) -> str:
    """Summarize tool arguments in one short line for progress displays."""
    if not isinstance(args, dict):
        return ""
    tool = args.get("tool")
    if isinstance(tool, str) and tool:
        # MCP-style proxy call: show server/tool and a slice of its arguments.
        server = args.get("server")
        prefix = f"{server}/" if isinstance(server, str) and server else ""
        tool_args = args.get("args")
        suffix = f" {tool_args[:40]}" if isinstance(tool_args, str) and tool_args else ""
        return f"{prefix}{tool}{suffix}"

    for key in _PREVIEW_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return _clip(value, 60)

    for key, value in args.items():
        if isinstance(value, str) and value:
            return f"{key}={_clip(value, 50)}"
    return ""
