"""HTTP status API for subagent runs and async jobs (Flask)."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from flask import Flask, jsonify, request
from pydantic import ValidationError

from subagent_manager.async_jobs.manager import AsyncJobManager
from subagent_manager.schemas import SubagentRequest
from subagent_manager.service import SubagentService

logger = logging.getLogger(__name__)


def create_app(service: SubagentService, manager: AsyncJobManager | None = None) -> Flask:
    """Build the API around one service and the job manager of its hosting session."""
    jobs = manager or service.manager
    app = Flask(__name__)

    @app.route("/api/health")
    def api_health():
        """Lightweight liveness endpoint."""
        return jsonify(
            {
                "ok": True,
                "time_epoch_ms": int(time.time() * 1000),
                "session_id": jobs.session_id,
                "jobs": len(jobs.jobs),
            }
        )

    @app.route("/api/agents")
    def api_agents():
        scope = request.args.get("scope", "user")
        if scope not in ("user", "project", "both"):
            return jsonify({"error": f"Invalid scope: {scope}"}), 400
        registry = service.agents(scope)  # type: ignore[arg-type]
        return jsonify({"agents": [agent.to_wire() for agent in registry]})

    @app.route("/api/jobs")
    def api_jobs():
        return jsonify({"jobs": [job.to_wire() for job in jobs.poll_once()]})

    @app.route("/api/jobs/<job_id>")
    def api_job_detail(job_id: str):
        response = service.status(run_id=job_id)
        if response.is_error:
            return jsonify({"error": response.text}), 404
        return jsonify({"id": job_id, "text": response.text})

    @app.route("/api/subagent", methods=["POST"])
    def api_subagent():
        data = request.get_json(silent=True) or {}
        try:
            subagent_request = SubagentRequest.model_validate(data)
        except ValidationError as exc:
            return jsonify({"error": f"Invalid request: {exc}"}), 400
        response = asyncio.run(service.execute(subagent_request))
        return jsonify(response.to_wire()), (400 if response.is_error else 200)

    @app.route("/api/session", methods=["POST"])
    def api_session():
        data = request.get_json(silent=True) or {}
        session_id = str(data.get("sessionId") or "").strip() or None
        cwd = str(data.get("cwd") or "").strip()
        jobs.reset_session(session_id, Path(cwd) if cwd else None)
        return jsonify({"sessionId": jobs.session_id, "cwd": str(jobs.base_cwd)})

    @app.route("/api/completions")
    def api_completions():
        jobs.scan_results()
        return jsonify({"completions": [result.to_wire() for result in jobs.drain_completions()]})

    return app


def serve(service: SubagentService, *, host: str = "127.0.0.1", port: int = 5089) -> None:
    app = create_app(service)
    logger.info("Subagent API listening on http://%s:%d", host, port)
    app.run(host=host, port=port, debug=False, threaded=True)
