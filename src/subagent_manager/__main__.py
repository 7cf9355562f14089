"""CLI entrypoint for subagent-manager."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError

from subagent_manager.config import load_settings
from subagent_manager.executor import ProgressUpdate
from subagent_manager.formatters import format_duration
from subagent_manager.schemas import MaxOutputConfig, SubagentRequest, ToolResponse
from subagent_manager.service import SubagentService

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from cwd, its parent, or package root so it's found regardless of cwd."""
    # src/subagent_manager/__main__.py -> repository root
    package_root = Path(__file__).resolve().parent.parent.parent
    for dir_ in (Path.cwd(), Path.cwd().parent, package_root):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--async", dest="run_async", action="store_true", help="Run detached in the background.")
    parser.add_argument("--cwd", type=str, default="", help="Working directory for the subagents.")
    parser.add_argument(
        "--scope",
        choices=("user", "project", "both"),
        default="user",
        help="Which agent directories to load (default: user).",
    )
    parser.add_argument("--no-artifacts", action="store_true", help="Do not write per-run artifact files.")
    parser.add_argument("--max-lines", type=int, default=None, help="Truncate final output to N lines.")
    parser.add_argument("--max-bytes", type=int, default=None, help="Truncate final output to N bytes.")
    parser.add_argument("--skill", type=str, default="", help="Comma-separated skills to inject.")
    parser.add_argument("--include-progress", action="store_true", help="Include progress records in JSON output.")
    parser.add_argument("--json", action="store_true", help="Print the full JSON response instead of text.")


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported modes."""
    p = argparse.ArgumentParser(
        prog="subagent-manager",
        description="Delegate tasks to subordinate agents: single runs, parallel batches, and chains.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--config", type=str, default="", help="Path to a JSON settings file.")
    sub = p.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run one agent on one task.")
    run_p.add_argument("--agent", required=True, help="Agent name.")
    run_p.add_argument("--task", required=True, help="Task text.")
    run_p.add_argument("--output", type=str, default="", help="Write findings to this file name.")
    _add_run_options(run_p)

    parallel_p = sub.add_parser("parallel", help="Run a JSON list of {agent, task} items concurrently.")
    parallel_p.add_argument("--file", required=True, help="JSON file holding the task list.")
    _add_run_options(parallel_p)

    chain_p = sub.add_parser("chain", help="Run a JSON chain of sequential/parallel steps.")
    chain_p.add_argument("--file", required=True, help="JSON file holding the chain steps.")
    _add_run_options(chain_p)

    request_p = sub.add_parser("request", help="Execute a full JSON request document.")
    request_p.add_argument("--file", required=True, help="JSON file holding the request.")
    request_p.add_argument("--json", action="store_true", help="Print the full JSON response instead of text.")

    status_p = sub.add_parser("status", help="Inspect an async run.")
    status_p.add_argument("--id", dest="run_id", type=str, default="", help="Run id or id prefix.")
    status_p.add_argument("--dir", dest="run_dir", type=str, default="", help="Async run directory.")

    agents_p = sub.add_parser("agents", help="List discovered agents.")
    agents_p.add_argument("--scope", choices=("user", "project", "both"), default="both")
    agents_p.add_argument("--cwd", type=str, default="")

    sub.add_parser("cleanup", help="Purge stale chain directories and temp artifacts.")

    serve_p = sub.add_parser("serve", help="Serve the HTTP status API.")
    serve_p.add_argument("--host", type=str, default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=5089, help="Port (default 5089)")
    return p


def _read_json_file(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _request_from_args(args: argparse.Namespace) -> SubagentRequest:
    data: dict[str, Any] = {
        "agentScope": args.scope,
        "artifacts": not args.no_artifacts,
        "includeProgress": args.include_progress,
    }
    if args.run_async:
        data["async"] = True
    if args.cwd:
        data["cwd"] = args.cwd
    if args.skill:
        data["skill"] = args.skill
    if args.max_lines is not None or args.max_bytes is not None:
        data["maxOutput"] = MaxOutputConfig(lines=args.max_lines, bytes=args.max_bytes).to_wire()
    if args.command == "run":
        data.update(agent=args.agent, task=args.task)
        if args.output:
            data["output"] = args.output
    elif args.command == "parallel":
        data["tasks"] = _read_json_file(args.file)
    else:
        data["chain"] = _read_json_file(args.file)
    return SubagentRequest.model_validate(data)


def _print_progress(update: ProgressUpdate) -> None:
    for progress in update.details.progress or ():
        if progress.current_tool:
            logger.info(
                "[%s] %s %s (%s)",
                progress.agent,
                progress.current_tool,
                progress.current_tool_args or "",
                format_duration(progress.duration_ms),
            )


def _emit(response: ToolResponse, as_json: bool) -> int:
    if as_json:
        print(json.dumps(response.to_wire(), indent=2))
    else:
        print(response.text)
        for result in response.details.results:
            for warning in result.warnings:
                print(f"warning: {result.agent}: {warning}", file=sys.stderr)
    return 1 if response.is_error else 0


def _run_request(service: SubagentService, request: SubagentRequest, as_json: bool) -> int:
    response = asyncio.run(service.execute(request, on_update=_print_progress))
    return _emit(response, as_json)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate mode."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if not args.command:
        parser.print_help()
        return 1

    settings = load_settings(Path(args.config) if args.config else None)
    cwd = Path(getattr(args, "cwd", "") or Path.cwd())
    service = SubagentService(settings, cwd=cwd)
    if args.command != "cleanup":
        service.startup()

    if args.command in ("run", "parallel", "chain"):
        try:
            request = _request_from_args(args)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            print(f"Invalid request: {exc}", file=sys.stderr)
            return 1
        return _run_request(service, request, args.json)

    if args.command == "request":
        try:
            request = SubagentRequest.model_validate(_read_json_file(args.file))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            print(f"Invalid request: {exc}", file=sys.stderr)
            return 1
        return _run_request(service, request, args.json)

    if args.command == "status":
        response = service.status(run_id=args.run_id or None, run_dir=args.run_dir or None)
        return _emit(response, as_json=False)

    if args.command == "agents":
        registry = service.agents(args.scope)
        if not len(registry):
            print("No agents found.")
            return 0
        for agent in registry:
            model = f" [{agent.model}]" if agent.model else ""
            print(f"{agent.name}{model} ({agent.source}): {agent.description}")
        return 0

    if args.command == "cleanup":
        removed = service.startup(force=True)
        print(f"Removed {removed['chainDirs']} chain dir(s) and {removed['artifacts']} artifact file(s).")
        return 0

    if args.command == "serve":
        from subagent_manager.web import serve

        serve(service, host=args.host, port=args.port)
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
