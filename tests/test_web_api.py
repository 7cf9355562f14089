"""API tests for the Flask status and execution endpoints."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from subagent_manager.async_jobs.manager import AsyncJobManager
from subagent_manager.config import Settings
from subagent_manager.executor import RunOptions
from subagent_manager.file_io import write_json
from subagent_manager.schemas import AsyncResult, RunResult
from subagent_manager.service import SubagentService
from subagent_manager.web import create_app

pytestmark = pytest.mark.integration


class EchoRunner:
    async def run(self, agent_name: str, task: str, options: RunOptions | None = None) -> RunResult:
        await asyncio.sleep(0)
        return RunResult(
            agent=agent_name,
            task=task,
            messages=[{"role": "assistant", "content": [{"type": "text", "text": f"echo {task}"}]}],
        )


@pytest.fixture()
def service(settings: Settings, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SubagentService:
    settings.user_agents_dir.mkdir(parents=True)
    (settings.user_agents_dir / "scout.md").write_text(
        "---\nname: scout\ndescription: recon\n---\nLook around.\n", encoding="utf-8"
    )
    def spawner(cmd: list[str], _async_dir: Path) -> int:
        Path(cmd[-1]).unlink(missing_ok=True)
        return 1

    manager = AsyncJobManager(settings, session_id="web-session", cwd=tmp_path, spawner=spawner)
    svc = SubagentService(settings, manager=manager, cwd=tmp_path)
    monkeypatch.setattr(svc, "executor", lambda _registry, _cwd: EchoRunner())
    return svc


@pytest.fixture()
def client(service: SubagentService):
    app = create_app(service)
    app.config.update(TESTING=True)
    with app.test_client() as test_client:
        yield test_client


def test_health(client) -> None:
    payload = client.get("/api/health").get_json()
    assert payload["ok"] is True
    assert payload["session_id"] == "web-session"
    assert payload["jobs"] == 0


def test_agents(client) -> None:
    response = client.get("/api/agents?scope=user")
    assert response.status_code == 200
    agents = response.get_json()["agents"]
    assert [agent["name"] for agent in agents] == ["scout"]
    assert agents[0]["systemPrompt"] == "Look around."

    assert client.get("/api/agents?scope=everywhere").status_code == 400


def test_execute_single(client) -> None:
    response = client.post("/api/subagent", json={"agent": "scout", "task": "hello", "share": False})
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["text"] == "echo hello"
    assert payload["details"]["mode"] == "single"
    assert payload["isError"] is False


def test_execute_rejects_invalid_payloads(client) -> None:
    response = client.post("/api/subagent", json={"agent": "scout", "task": "x", "agentScope": "galaxy"})
    assert response.status_code == 400
    assert response.get_json()["error"].startswith("Invalid request")

    response = client.post("/api/subagent", json={"agent": "ghost", "task": "x", "share": False})
    assert response.status_code == 400
    assert response.get_json()["text"] == "Unknown agent: ghost"


def test_async_job_listing_and_detail(client, service: SubagentService) -> None:
    launched = client.post("/api/subagent", json={"agent": "scout", "task": "bg", "async": True, "share": False})
    async_id = launched.get_json()["details"]["asyncId"]

    jobs = client.get("/api/jobs").get_json()["jobs"]
    assert [job["asyncId"] for job in jobs] == [async_id]
    assert jobs[0]["status"] == "queued"

    detail = client.get(f"/api/jobs/{async_id}")
    assert detail.status_code == 200
    assert "State: queued" in detail.get_json()["text"]

    assert client.get("/api/jobs/unknown-id").status_code == 404


def test_completions_are_scoped_to_session(client, service: SubagentService, tmp_path: Path) -> None:
    results_dir = service.settings.results_dir
    results_dir.mkdir(parents=True, exist_ok=True)
    write_json(results_dir / "mine.json", AsyncResult(id="mine", success=True, session_id="web-session").to_wire())
    write_json(results_dir / "theirs.json", AsyncResult(id="theirs", success=True, session_id="other").to_wire())

    completions = client.get("/api/completions").get_json()["completions"]

    assert [item["id"] for item in completions] == ["mine"]
    assert not (results_dir / "mine.json").exists()
    assert (results_dir / "theirs.json").exists()


def test_session_reset(client, service: SubagentService, tmp_path: Path) -> None:
    payload = client.post("/api/session", json={"sessionId": "next", "cwd": str(tmp_path)}).get_json()
    assert payload == {"sessionId": "next", "cwd": str(tmp_path.resolve())}
    assert service.manager.session_id == "next"
