from __future__ import annotations

import asyncio
import json
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp.test_utils import AioHTTPTestCase, make_mocked_request

from agentbox.devserver.manager import DevServerManager
from agentbox.engine.config import EngineConfig
from agentbox.engine.engine import AgentEngine
from agentbox.engine.errors import CredentialNotFoundError
from agentbox.server.app import AgentBoxServer
from agentbox.shared.models.session_log import LogStatus

from conftest import LIST_FILES_EVENTS, FakeSupervisor


def _parse_sse(text: str) -> list[dict]:
    frames = []
    for block in text.strip().split("\n\n"):
        frame = {}
        for line in block.split("\n"):
            key, _, value = line.partition(": ")
            frame[key] = value
        frames.append(frame)
    return frames


class TestAgentBoxServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        self.config = EngineConfig(data_root=Path(self.tmpdir))
        self.supervisor = FakeSupervisor(self.config)
        self.engine = AgentEngine(self.config, supervisor=self.supervisor)
        # Left behind by a previous server process.
        self.stale = self.engine.log_store.create_pending("demo", "stale")

        runtime = MagicMock()
        runtime.ensure_image = AsyncMock()
        self.devservers = DevServerManager(self.config, runtime)
        self.box_server = AgentBoxServer(self.engine, self.devservers)
        return self.box_server.app

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["timestamp"].endswith("Z")

    async def test_startup_recovers_abandoned_logs(self):
        log = self.engine.log_store.get("demo", self.stale.id)
        assert log.status is LogStatus.ERROR

    async def test_one_shot_run(self):
        resp = await self.client.post("/agent", json={"prompt": "list files", "project": "demo"})
        assert resp.status == 200
        data = await resp.json()
        assert data["exitCode"] == 0
        assert json.loads(data["response"])["type"] == "result"

        resp = await self.client.get(f"/logs/demo/{data['id']}")
        log = await resp.json()
        assert log["status"] == "completed"
        assert log["events"] == LIST_FILES_EVENTS

    async def test_invalid_bodies(self):
        resp = await self.client.post("/agent", json={"prompt": "", "project": "demo"})
        assert resp.status == 400
        assert "prompt" in (await resp.json())["error"]

        resp = await self.client.post("/agent/stream", json={"prompt": "x", "project": "a/b"})
        assert resp.status == 400

        resp = await self.client.post("/agent", data="not json",
                                      headers={"Content-Type": "application/json"})
        assert resp.status == 400

    async def test_setup_error_is_500_before_stream(self):
        self.supervisor.prepare = AsyncMock(
            side_effect=CredentialNotFoundError("CLAUDE_CODE_OAUTH_TOKEN", ".env"),
        )
        resp = await self.client.post("/agent/stream", json={"prompt": "x", "project": "demo"})
        assert resp.status == 500
        assert resp.content_type == "application/json"
        assert "claude setup-token" in (await resp.json())["error"]

        resp = await self.client.post("/agent", json={"prompt": "x", "project": "demo"})
        assert resp.status == 500

    async def test_stream_run_with_thread(self):
        resp = await self.client.post("/threads/demo", json={"title": "chat"})
        assert resp.status == 201
        thread = await resp.json()

        resp = await self.client.post(
            "/agent/stream",
            json={"prompt": "list files", "project": "demo", "threadId": thread["id"]},
        )
        assert resp.status == 200
        assert resp.content_type == "text/event-stream"
        frames = _parse_sse(await resp.text())
        assert [f["id"] for f in frames] == ["1", "2", "3", "4", "5"]
        assert [f["event"] for f in frames] == ["system", "assistant", "user", "assistant", "result"]
        assert [json.loads(f["data"]) for f in frames] == LIST_FILES_EVENTS

        resp = await self.client.get(f"/threads/demo/{thread['id']}")
        detail = await resp.json()
        assert detail["sessionId"] == "sess-1"
        assert len(detail["logIds"]) == 1
        assert detail["logs"][0]["prompt"] == "list files"

        resp = await self.client.get(f"/threads/demo/{thread['id']}/timeline")
        timeline = await resp.json()
        assert [g["kind"] for g in timeline["groups"]] == [
            "user", "system", "tool-group", "assistant-text", "result",
        ]

    async def test_unknown_thread_is_404(self):
        resp = await self.client.post(
            "/agent/stream", json={"prompt": "x", "project": "demo", "threadId": "thr_0"},
        )
        assert resp.status == 404
        resp = await self.client.get("/threads/demo/thr_0")
        assert resp.status == 404
        resp = await self.client.patch("/threads/demo/thr_0", json={"title": "t"})
        assert resp.status == 404

    async def test_thread_crud(self):
        resp = await self.client.post("/threads/demo", json={})
        assert resp.status == 400
        resp = await self.client.post("/threads/demo", json={"title": "first"})
        thread = await resp.json()
        resp = await self.client.patch(f"/threads/demo/{thread['id']}", json={"title": "renamed"})
        assert (await resp.json())["title"] == "renamed"
        resp = await self.client.get("/threads/demo")
        data = await resp.json()
        assert [t["title"] for t in data["threads"]] == ["renamed"]

    async def test_projects(self):
        resp = await self.client.post("/projects", json={"name": "new-app"})
        assert resp.status == 201
        resp = await self.client.post("/projects", json={"name": "bad name"})
        assert resp.status == 400
        resp = await self.client.get("/projects")
        assert "new-app" in (await resp.json())["projects"]

    async def test_logs(self):
        resp = await self.client.get("/logs/demo")
        data = await resp.json()
        assert data["logs"] == [self.stale.id]
        resp = await self.client.get("/logs/demo/missing")
        assert resp.status == 404
        resp = await self.client.get("/logs/bad.name")
        assert resp.status == 400

    async def test_cancel_unknown_run(self):
        resp = await self.client.post("/agent/demo/nope/cancel")
        assert resp.status == 404

    async def test_devserver_routes(self):
        resp = await self.client.post("/devserver/start", json={})
        assert resp.status == 400
        resp = await self.client.get("/devserver/status/demo")
        assert resp.status == 404
        resp = await self.client.get("/devserver/detect/demo")
        assert resp.status == 404

        project_dir = self.config.workspace_dir / "web"
        project_dir.mkdir(parents=True)
        (project_dir / "package.json").write_text(json.dumps({"scripts": {"start": "node ."}}))
        resp = await self.client.get("/devserver/detect/web")
        assert (await resp.json())["command"] == "bun run start"


@pytest.mark.asyncio
async def test_devserver_log_stream_propagates_cancellation(config: EngineConfig) -> None:
    engine = AgentEngine(config, supervisor=FakeSupervisor(config))
    devservers = MagicMock()
    first_line = asyncio.Event()
    closed = asyncio.Event()

    async def stream_logs(project):
        try:
            yield "listening on :5173\n"
            first_line.set()
            await asyncio.Event().wait()
        finally:
            closed.set()

    devservers.stream_logs = stream_logs
    box_server = AgentBoxServer(engine, devservers, recover_on_startup=False)
    request = make_mocked_request(
        "GET", "/devserver/logs/demo", match_info={"project": "demo"},
    )

    task = asyncio.create_task(box_server._handle_devserver_logs(request))
    await asyncio.wait_for(first_line.wait(), 5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert closed.is_set()
