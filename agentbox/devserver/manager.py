"""Dev preview servers: one detached container per project.

The project's workspace is mounted into the agent image and its dev
command (detected from package.json or given explicitly) runs in the
background with a host port published. State is in memory only; a stale
container left by a previous server process is removed by name before
every start.
"""
from __future__ import annotations

import asyncio
import json
import logging
import socket
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentbox.engine.config import EngineConfig
from agentbox.engine.errors import DevServerError, NoFreePortError
from agentbox.engine.supervisor import WORKSPACE_MOUNT, ContainerRuntime, validate_project

logger = logging.getLogger(__name__)

_DEFAULT_CONTAINER_PORT = 5173


@dataclass(frozen=True)
class DetectedCommand:
    command: str
    container_port: int
    url_scheme: str = "http"
    # Some toolchains (Expo) advertise their own port to devices, so the
    # host side has to match it.
    fixed_host_port: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "command": self.command,
            "containerPort": self.container_port,
            "urlScheme": self.url_scheme,
        }
        if self.fixed_host_port is not None:
            data["fixedHostPort"] = self.fixed_host_port
        return data


@dataclass
class DevServer:
    project: str
    command: str
    port: int
    container_port: int
    url_scheme: str = "http"
    container_id: str = ""
    status: str = "starting"  # starting | running | stopped | error
    error: str | None = None
    started_at: int = 0  # epoch ms

    @property
    def url(self) -> str:
        host = get_lan_ip() if self.url_scheme == "exp" else "localhost"
        return f"{self.url_scheme}://{host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "url": self.url,
            "port": self.port,
            "containerPort": self.container_port,
            "command": self.command,
            "status": self.status,
            "error": self.error,
            "startedAt": self.started_at,
        }


def get_lan_ip() -> str:
    """First non-loopback IPv4 address of this host, else ``localhost``."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # UDP connect sends nothing; it only selects the outbound interface.
        sock.connect(("10.255.255.255", 1))
        address = sock.getsockname()[0]
    except OSError:
        return "localhost"
    finally:
        sock.close()
    if address.startswith("127."):
        return "localhost"
    return address


def detect_command(project_dir: Path) -> DetectedCommand | None:
    """Guess the dev command from ``package.json``. None if nothing fits."""
    try:
        pkg = json.loads((project_dir / "package.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(pkg, dict):
        return None
    scripts = pkg.get("scripts") or {}
    deps: dict[str, Any] = {}
    deps.update(pkg.get("dependencies") or {})
    deps.update(pkg.get("devDependencies") or {})

    if "expo" in deps:
        return DetectedCommand(
            "bunx expo start --lan --port 8081", 8081, url_scheme="exp", fixed_host_port=8081,
        )
    dev = scripts.get("dev")
    if isinstance(dev, str) and dev:
        if "vite" in deps or "vite" in dev:
            return DetectedCommand("bun run dev -- --host 0.0.0.0", 5173)
        if "next" in deps or "next" in dev:
            return DetectedCommand("bun run dev -- -H 0.0.0.0", 3000)
        return DetectedCommand("bun run dev", 3000)
    if scripts.get("start"):
        return DetectedCommand("bun run start", 3000)
    return None


class DevServerManager:
    """Start, stop and inspect per-project preview containers."""

    def __init__(self, config: EngineConfig, runtime: ContainerRuntime | None = None) -> None:
        self._config = config
        self._runtime = runtime or ContainerRuntime(config)
        self._servers: dict[str, DevServer] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def container_name(project: str) -> str:
        return f"devserver-{project}"

    def _project_dir(self, project: str) -> Path:
        return Path(self._config.workspace_dir) / project

    def detect(self, project: str) -> DetectedCommand:
        validate_project(project)
        detected = detect_command(self._project_dir(project))
        if detected is None:
            raise DevServerError(
                project,
                "could not detect a dev command: no package.json or no dev/start script",
            )
        return detected

    def status(self, project: str) -> DevServer | None:
        return self._servers.get(project)

    def _next_free_port(self, project: str) -> int:
        used = {
            s.port for name, s in self._servers.items()
            if name != project and s.status in ("starting", "running")
        }
        for port in range(self._config.devserver_port_min, self._config.devserver_port_max + 1):
            if port not in used:
                return port
        raise NoFreePortError(
            project, self._config.devserver_port_min, self._config.devserver_port_max,
        )

    async def _exec(self, project: str, *args: str) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DevServerError(project, f"cannot run {args[0]}: {exc}") from exc
        stdout, stderr = await proc.communicate()
        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _remove_container(self, project: str) -> None:
        name = self.container_name(project)
        cli = self._config.container_cli
        # Either may fail when no such container exists.
        await self._exec(project, cli, "stop", name)
        await self._exec(project, cli, "rm", name)

    async def start(
        self,
        project: str,
        command: str | None = None,
        container_port: int | None = None,
    ) -> DevServer:
        validate_project(project)
        await self._remove_container(project)
        await self._runtime.ensure_image()

        detected = detect_command(self._project_dir(project))
        cmd = command or (detected.command if detected else None)
        if not cmd:
            raise DevServerError(project, "no command given and none could be detected")
        c_port = container_port or (
            detected.container_port if detected else _DEFAULT_CONTAINER_PORT
        )
        scheme = detected.url_scheme if detected else "http"

        async with self._lock:
            if detected is not None and detected.fixed_host_port is not None:
                host_port = detected.fixed_host_port
            else:
                host_port = self._next_free_port(project)
            server = DevServer(
                project=project,
                command=cmd,
                port=host_port,
                container_port=c_port,
                url_scheme=scheme,
                started_at=int(time.time() * 1000),
            )
            self._servers[project] = server

        args = [
            self._config.container_cli,
            "run",
            "-d",
            "--name", self.container_name(project),
            "-p", f"{host_port}:{c_port}",
            "--volume", f"{self._project_dir(project)}:{WORKSPACE_MOUNT}",
            "--entrypoint", "/bin/bash",
            self._config.image_name,
            "-c",
            f"cd {WORKSPACE_MOUNT} && {cmd}",
        ]
        logger.info(
            "Starting dev server for %s: %s (host:%d -> container:%d)",
            project, cmd, host_port, c_port,
        )
        try:
            rc, stdout, stderr = await self._exec(project, *args)
        except DevServerError as exc:
            server.status = "error"
            server.error = exc.reason
            raise
        if rc != 0:
            server.status = "error"
            server.error = stderr.strip() or f"container run failed (exit {rc})"
            raise DevServerError(project, server.error)

        server.container_id = stdout.strip()
        server.status = "running"
        logger.info(
            "Dev server for %s running at %s (container %s)",
            project, server.url, server.container_id[:12],
        )
        return server

    async def stop(self, project: str) -> None:
        validate_project(project)
        logger.info("Stopping dev server for %s", project)
        await self._remove_container(project)
        server = self._servers.get(project)
        if server is not None:
            server.status = "stopped"
        logger.info("Stopped dev server for %s", project)

    async def stream_logs(self, project: str) -> AsyncIterator[str]:
        """Follow the container's stdout and stderr, merged, as text chunks."""
        validate_project(project)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._config.container_cli, "logs", "-f", self.container_name(project),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DevServerError(project, f"cannot follow logs: {exc}") from exc

        queue: asyncio.Queue[str | None] = asyncio.Queue()

        async def pump(stream: asyncio.StreamReader | None) -> None:
            try:
                if stream is None:
                    return
                while True:
                    chunk = await stream.read(4096)
                    if not chunk:
                        break
                    await queue.put(chunk.decode("utf-8", errors="replace"))
            finally:
                await queue.put(None)

        pumps = [
            asyncio.create_task(pump(proc.stdout)),
            asyncio.create_task(pump(proc.stderr)),
        ]
        open_streams = len(pumps)
        try:
            while open_streams:
                item = await queue.get()
                if item is None:
                    open_streams -= 1
                    continue
                yield item
        finally:
            for task in pumps:
                task.cancel()
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            await proc.wait()
