"""Process supervisor for containerized agent runs.

Builds the ``container run`` invocation for one prompt, spawns it with
asyncio.create_subprocess_exec (array-based, no shell) and exposes its
stdout as an async byte stream. A timeout or an explicit cancel kills
the process and marks it interrupted; that is not an error, the
coordinator turns it into an ``interrupted`` result event.

ContainerRuntime holds the only state shared between concurrent runs:
whether the container system is up and whether the agent image exists.
Both checks run under one asyncio.Lock so concurrent first runs do the
expensive setup exactly once.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from dotenv import dotenv_values

from .config import EngineConfig
from .errors import (
    ContainerSystemError,
    CredentialNotFoundError,
    ImageBuildError,
    InvalidProjectError,
    ProcessLaunchError,
)

logger = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024
_PROJECT_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")

# Container-side mount points
WORKSPACE_MOUNT = "/workspace"
NOTES_MOUNT = "/notes"
# The agent keeps per-project session state here; mounting it from the
# host is what keeps resumption tokens valid across runs.
STATE_MOUNT = "/home/dev/.claude/projects/-workspace"


def validate_project(project: str) -> str:
    """Return *project* unchanged, or raise InvalidProjectError."""
    if not isinstance(project, str) or not _PROJECT_NAME_RE.match(project):
        raise InvalidProjectError(str(project))
    return project


@dataclass
class RunOptions:
    """Per-run options. Unset values fall back to EngineConfig defaults."""
    model: str | None = None
    resume: str | None = None
    timeout: float | None = None  # seconds
    cpus: int | None = None
    memory: str | None = None


def load_credential(config: EngineConfig) -> str:
    """Return the agent token from the environment, then the env file."""
    token = os.environ.get(config.credential_env_var)
    if token:
        return token
    env_file = Path(config.env_file)
    if env_file.is_file():
        value = dotenv_values(env_file).get(config.credential_env_var)
        if value and value.strip():
            return value.strip()
    raise CredentialNotFoundError(config.credential_env_var, str(env_file))


def build_container_args(
    config: EngineConfig,
    project: str,
    prompt: str,
    token: str,
    options: RunOptions | None = None,
) -> list[str]:
    """Build the argv for one non-interactive, stream-json agent run.

    Creates the per-project notes and state directories on the host.
    """
    opts = options or RunOptions()
    project_path = Path(config.workspace_dir) / project
    notes_path = Path(config.notes_dir) / project
    state_path = Path(config.state_dir) / project
    notes_path.mkdir(parents=True, exist_ok=True)
    state_path.mkdir(parents=True, exist_ok=True)
    cpus = opts.cpus if opts.cpus is not None else config.default_cpus
    memory = opts.memory or config.default_memory

    args = [
        config.container_cli,
        "run",
        "--rm",
        "--cpus", str(cpus),
        "--memory", memory,
        "--env", f"{config.credential_env_var}={token}",
        "--volume", f"{project_path}:{WORKSPACE_MOUNT}",
        "--volume", f"{notes_path}:{NOTES_MOUNT}",
        "--volume", f"{state_path}:{STATE_MOUNT}",
        config.image_name,
        "-p",
        "--verbose",
        "--output-format", "stream-json",
    ]
    if opts.resume:
        args.extend(["--resume", opts.resume])
    if opts.model:
        args.extend(["--model", opts.model])
    args.append(prompt)
    return args


def redact_args(args: list[str], token: str) -> list[str]:
    """Copy of *args* safe to log."""
    return [a.replace(token, "***") if token else a for a in args]


class ContainerRuntime:
    """Memoized, single-flight readiness of the container system and image."""

    def __init__(self, config: EngineConfig) -> None:
        self._config = config
        self._lock = asyncio.Lock()
        self._system_started = False
        self._image_ready = False

    @property
    def image_ready(self) -> bool:
        return self._image_ready

    async def _exec(self, *args: str, capture: bool = True) -> tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE if capture else None,
                stderr=asyncio.subprocess.PIPE if capture else None,
            )
        except FileNotFoundError as exc:
            raise ContainerSystemError(
                f"'{args[0]}' CLI not found"
            ) from exc
        stdout, _ = await proc.communicate()
        text = stdout.decode("utf-8", errors="replace") if stdout else ""
        return proc.returncode if proc.returncode is not None else -1, text

    async def _ensure_system_started(self) -> None:
        if self._system_started:
            return
        cli = self._config.container_cli
        rc, _ = await self._exec(cli, "system", "info")
        if rc != 0:
            logger.info("Container system not running, starting it...")
            rc, _ = await self._exec(
                cli, "system", "start", "--enable-kernel-install", capture=False,
            )
            if rc != 0:
                raise ContainerSystemError(
                    f"`{cli} system start` exited with {rc}; start it manually"
                )
            await asyncio.sleep(self._config.system_start_settle_seconds)
            logger.info("Container system started")
        self._system_started = True

    async def ensure_image(self) -> None:
        """Start the container system and build the image if needed."""
        if self._system_started and self._image_ready:
            return
        async with self._lock:
            await self._ensure_system_started()
            if self._image_ready:
                return
            cli = self._config.container_cli
            image = self._config.image_name
            _, listing = await self._exec(cli, "image", "ls")
            if image in listing:
                self._image_ready = True
                return

            container_dir = Path(self._config.container_dir)
            logger.info("Building %s image from %s...", image, container_dir)
            rc, _ = await self._exec(
                cli, "build",
                "--tag", image,
                "--file", str(container_dir / "Dockerfile"),
                str(container_dir),
                capture=False,
            )
            if rc != 0:
                raise ImageBuildError(image, rc)
            logger.info("Built %s image", image)
            self._image_ready = True


class AgentProcess:
    """A running agent subprocess.

    ``stdout_chunks()`` yields raw stdout bytes until EOF. ``drain_stderr()``
    forwards stderr to diagnostic logging. Both must be consumed before
    ``wait()`` is meaningful.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        project: str,
        timeout: float | None = None,
    ) -> None:
        self._proc = proc
        self.project = project
        self.interrupted = False
        self.interrupt_reason: str | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        if timeout is not None and timeout > 0:
            loop = asyncio.get_running_loop()
            self._timeout_handle = loop.call_later(
                timeout, self._on_timeout, timeout,
            )

    @property
    def pid(self) -> int | None:
        return getattr(self._proc, "pid", None)

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    def _on_timeout(self, timeout: float) -> None:
        logger.info(
            "Agent run for %s timed out after %.1fs, killing process",
            self.project, timeout,
        )
        self.cancel("timeout")

    def cancel(self, reason: str = "cancelled") -> bool:
        """Kill the process. Returns False if it had already exited."""
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        if self._proc.returncode is not None:
            return False
        self.interrupted = True
        self.interrupt_reason = reason
        try:
            self._proc.kill()
        except ProcessLookupError:
            return False
        logger.info(
            "Killed agent process pid=%s for %s (reason=%s)",
            self.pid, self.project, reason,
        )
        return True

    async def stdout_chunks(self) -> AsyncIterator[bytes]:
        stream = self._proc.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_SIZE)
            if not chunk:
                break
            yield chunk

    async def drain_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_SIZE)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info("agent stderr [%s]: %s", self.project, text)

    async def wait(self) -> int:
        rc = await self._proc.wait()
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        return rc


class ProcessSupervisor:
    """Launches containerized agent runs."""

    def __init__(
        self,
        config: EngineConfig,
        runtime: ContainerRuntime | None = None,
    ) -> None:
        self._config = config
        self.runtime = runtime or ContainerRuntime(config)

    async def prepare(self) -> str:
        """Run every setup check and return the credential.

        Raises a SetupError subclass when the run cannot start.
        """
        token = load_credential(self._config)
        await self.runtime.ensure_image()
        return token

    async def start(
        self,
        project: str,
        prompt: str,
        options: RunOptions | None = None,
        *,
        token: str | None = None,
    ) -> AgentProcess:
        validate_project(project)
        opts = options or RunOptions()
        if token is None:
            token = await self.prepare()
        try:
            args = build_container_args(self._config, project, prompt, token, opts)
        except OSError as exc:
            raise ProcessLaunchError(self._config.container_cli, str(exc)) from exc
        timeout = (
            opts.timeout if opts.timeout is not None
            else self._config.default_timeout_seconds
        )

        logger.info(
            "Starting agent for project %s (cpus=%s, memory=%s, model=%s, resume=%s, timeout=%s)",
            project,
            opts.cpus if opts.cpus is not None else self._config.default_cpus,
            opts.memory or self._config.default_memory,
            opts.model or "<default>",
            opts.resume or "<new>",
            timeout,
        )
        logger.info("Prompt: %.100s%s", prompt, "..." if len(prompt) > 100 else "")
        logger.debug("Agent argv: %s", redact_args(args, token))

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessLaunchError(args[0], str(exc)) from exc
        return AgentProcess(proc, project, timeout=timeout)
