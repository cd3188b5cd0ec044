"""HTTP/SSE server exposing the agent engine.

Routes mirror the engine API: one-shot and streamed runs, cancellation,
projects, threads (with timeline projection), session logs and dev
preview servers. Streamed runs use Server-Sent Events; every frame
carries the event type, the JSON payload and a per-run sequence id.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any

from aiohttp import web

from agentbox.devserver.manager import DevServerManager
from agentbox.engine.coordinator import RelayFrame
from agentbox.engine.engine import AgentEngine, RunRequest
from agentbox.engine.errors import (
    DevServerError,
    InvalidProjectError,
    SetupError,
    ThreadNotFoundError,
)
from agentbox.engine.supervisor import validate_project
from agentbox.engine.timeline import project_timeline, timeline_from_logs
from agentbox.shared.models.session_log import utcnow_iso

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_json(request: web.Request) -> Any:
    if not request.can_read_body:
        return {}
    try:
        return await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "request body is not valid JSON"}),
            content_type="application/json",
        )


class AgentBoxServer:
    """aiohttp application around one AgentEngine."""

    def __init__(
        self,
        engine: AgentEngine,
        devservers: DevServerManager | None = None,
        host: str = "0.0.0.0",
        port: int = 3847,
        recover_on_startup: bool = True,
    ) -> None:
        self._engine = engine
        self._devservers = devservers or DevServerManager(engine.config, engine.runtime)
        self._host = host
        self._port = port
        self._recover_on_startup = recover_on_startup
        self._background: set[asyncio.Task] = set()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/agent", self._handle_agent)
        r.add_post("/agent/stream", self._handle_agent_stream)
        r.add_post("/agent/{project}/{log_id}/cancel", self._handle_cancel)
        r.add_get("/projects", self._handle_list_projects)
        r.add_post("/projects", self._handle_create_project)
        r.add_get("/threads/{project}", self._handle_list_threads)
        r.add_post("/threads/{project}", self._handle_create_thread)
        r.add_get("/threads/{project}/{thread_id}", self._handle_get_thread)
        r.add_patch("/threads/{project}/{thread_id}", self._handle_rename_thread)
        r.add_get("/threads/{project}/{thread_id}/timeline", self._handle_thread_timeline)
        r.add_get("/logs/{project}", self._handle_list_logs)
        r.add_get("/logs/{project}/{log_id}", self._handle_get_log)
        r.add_post("/devserver/start", self._handle_devserver_start)
        r.add_post("/devserver/stop", self._handle_devserver_stop)
        r.add_get("/devserver/status/{project}", self._handle_devserver_status)
        r.add_get("/devserver/detect/{project}", self._handle_devserver_detect)
        r.add_get("/devserver/logs/{project}", self._handle_devserver_logs)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        if not self._recover_on_startup:
            return
        recovered = await asyncio.to_thread(self._engine.recover_all)
        for project, ids in recovered.items():
            logger.warning(
                "Marked %d interrupted run(s) in %s as error: %s",
                len(ids), project, ", ".join(ids),
            )

    async def _on_shutdown(self, app: web.Application) -> None:
        for project, log_id in self._engine.active_runs():
            self._engine.cancel(project, log_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info("agentbox server listening on http://%s:%d", self._host, self._port)
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── Handlers: agent ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "timestamp": utcnow_iso()})

    async def _parse_run_request(self, request: web.Request) -> RunRequest:
        body = await _read_json(request)
        return RunRequest.from_body(body)

    async def _handle_agent(self, request: web.Request) -> web.Response:
        try:
            run_request = await self._parse_run_request(request)
        except (ValueError, InvalidProjectError) as exc:
            return _error(str(exc), 400)
        try:
            result = await asyncio.shield(self._spawn(self._engine.run_once(run_request)))
        except ThreadNotFoundError as exc:
            return _error(str(exc), 404)
        except SetupError as exc:
            logger.error("Agent setup failed for %s: %s", run_request.project, exc)
            return _error(str(exc), 500)
        return web.json_response(result)

    async def _handle_agent_stream(self, request: web.Request) -> web.StreamResponse:
        try:
            run_request = await self._parse_run_request(request)
        except (ValueError, InvalidProjectError) as exc:
            return _error(str(exc), 400)

        response = web.StreamResponse(status=200, headers=SSE_HEADERS)

        async def subscriber(frame: RelayFrame) -> None:
            if not response.prepared:
                await response.prepare(request)
            await response.write(frame.to_sse())

        run = self._spawn(self._engine.run(run_request, subscriber))
        try:
            outcome = await asyncio.shield(run)
        except ThreadNotFoundError as exc:
            return _error(str(exc), 404)
        except SetupError as exc:
            logger.error("Agent setup failed for %s: %s", run_request.project, exc)
            if response.prepared:
                return response
            return _error(str(exc), 500)

        logger.info(
            "Stream for %s/%s done req=%s status=%s persisted=%s",
            run_request.project, outcome.log.id, request.get("req_id", "?"),
            outcome.status.value, outcome.persisted,
        )
        if not response.prepared:
            await response.prepare(request)
        try:
            await response.write_eof()
        except ConnectionResetError:
            pass
        return response

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        project = request.match_info["project"]
        log_id = request.match_info["log_id"]
        if not self._engine.cancel(project, log_id):
            return _error("no active run with that id", 404)
        return web.json_response({"ok": True, "project": project, "id": log_id})

    # ── Handlers: projects ──

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        projects = await asyncio.to_thread(self._engine.list_projects)
        return web.json_response({"projects": projects})

    async def _handle_create_project(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        name = body.get("name") if isinstance(body, dict) else None
        if not isinstance(name, str):
            return _error("name is required", 400)
        try:
            path = await asyncio.to_thread(self._engine.create_project, name)
        except InvalidProjectError as exc:
            return _error(str(exc), 400)
        return web.json_response({"name": name, "path": str(path)}, status=201)

    # ── Handlers: threads ──

    def _project_param(self, request: web.Request) -> str:
        project = request.match_info["project"]
        try:
            return validate_project(project)
        except InvalidProjectError as exc:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": str(exc)}), content_type="application/json",
            )

    async def _handle_list_threads(self, request: web.Request) -> web.Response:
        project = self._project_param(request)
        threads = await asyncio.to_thread(self._engine.threads.list_threads, project)
        return web.json_response({"project": project, "threads": [t.to_dict() for t in threads]})

    async def _handle_create_thread(self, request: web.Request) -> web.Response:
        project = self._project_param(request)
        body = await _read_json(request)
        title = body.get("title") if isinstance(body, dict) else None
        if not isinstance(title, str) or not title:
            return _error("title is required", 400)
        thread = await asyncio.to_thread(self._engine.threads.create_thread, project, title)
        return web.json_response(thread.to_dict(), status=201)

    async def _handle_get_thread(self, request: web.Request) -> web.Response:
        project = self._project_param(request)
        thread_id = request.match_info["thread_id"]
        detail = await asyncio.to_thread(
            self._engine.threads.get_thread_detail, project, thread_id,
        )
        if detail is None:
            return _error("thread not found", 404)
        return web.json_response(detail.to_dict())

    async def _handle_rename_thread(self, request: web.Request) -> web.Response:
        project = self._project_param(request)
        thread_id = request.match_info["thread_id"]
        body = await _read_json(request)
        title = body.get("title") if isinstance(body, dict) else None
        if not isinstance(title, str) or not title:
            return _error("title is required", 400)
        thread = await asyncio.to_thread(
            self._engine.threads.rename_thread, project, thread_id, title,
        )
        if thread is None:
            return _error("thread not found", 404)
        return web.json_response(thread.to_dict())

    async def _handle_thread_timeline(self, request: web.Request) -> web.Response:
        project = self._project_param(request)
        thread_id = request.match_info["thread_id"]
        detail = await asyncio.to_thread(
            self._engine.threads.get_thread_detail, project, thread_id,
        )
        if detail is None:
            return _error("thread not found", 404)
        groups = project_timeline(timeline_from_logs(detail.logs))
        return web.json_response({
            "project": project,
            "threadId": thread_id,
            "sessionId": detail.thread.session_id,
            "groups": [g.to_dict() for g in groups],
        })

    # ── Handlers: logs ──

    async def _handle_list_logs(self, request: web.Request) -> web.Response:
        project = self._project_param(request)
        logs = await asyncio.to_thread(self._engine.log_store.list_ids, project)
        return web.json_response({"project": project, "logs": logs})

    async def _handle_get_log(self, request: web.Request) -> web.Response:
        project = self._project_param(request)
        log = await asyncio.to_thread(
            self._engine.log_store.get, project, request.match_info["log_id"],
        )
        if log is None:
            return _error("log not found", 404)
        return web.json_response(log.to_dict())

    # ── Handlers: dev preview ──

    async def _handle_devserver_start(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        if not isinstance(body, dict) or not body.get("project"):
            return _error("project is required", 400)
        port = body.get("port")
        try:
            server = await self._devservers.start(
                body["project"],
                command=body.get("command"),
                container_port=int(port) if port is not None else None,
            )
        except InvalidProjectError as exc:
            return _error(str(exc), 400)
        except (DevServerError, SetupError) as exc:
            return _error(str(exc), 500)
        return web.json_response({
            "url": server.url,
            "port": server.port,
            "containerPort": server.container_port,
            "command": server.command,
            "status": server.status,
        })

    async def _handle_devserver_stop(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        if not isinstance(body, dict) or not body.get("project"):
            return _error("project is required", 400)
        try:
            await self._devservers.stop(body["project"])
        except InvalidProjectError as exc:
            return _error(str(exc), 400)
        except DevServerError as exc:
            return _error(str(exc), 500)
        return web.json_response({"ok": True})

    async def _handle_devserver_status(self, request: web.Request) -> web.Response:
        server = self._devservers.status(request.match_info["project"])
        if server is None:
            return _error("no dev server for this project", 404)
        return web.json_response(server.to_dict())

    async def _handle_devserver_detect(self, request: web.Request) -> web.Response:
        project = self._project_param(request)
        try:
            detected = self._devservers.detect(project)
        except DevServerError as exc:
            return _error(str(exc), 404)
        return web.json_response(detected.to_dict())

    async def _handle_devserver_logs(self, request: web.Request) -> web.StreamResponse:
        project = self._project_param(request)
        if self._devservers.status(project) is None:
            return _error("no dev server for this project", 404)

        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        seq = 0
        lines = self._devservers.stream_logs(project)
        try:
            async for chunk in lines:
                seq += 1
                data = "\n".join(f"data: {line}" for line in chunk.split("\n"))
                await response.write(f"id: {seq}\nevent: log\n{data}\n\n".encode("utf-8"))
        except ConnectionResetError:
            logger.info("Dev server log stream for %s closed by client", project)
        except DevServerError as exc:
            logger.warning("Dev server log stream for %s failed: %s", project, exc)
        finally:
            await lines.aclose()
        return response
