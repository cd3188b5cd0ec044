from __future__ import annotations

import asyncio
import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentbox.engine.config import EngineConfig
from agentbox.engine.errors import (
    ContainerSystemError,
    CredentialNotFoundError,
    ImageBuildError,
    InvalidProjectError,
    ProcessLaunchError,
)
from agentbox.engine.supervisor import (
    AgentProcess,
    ContainerRuntime,
    ProcessSupervisor,
    RunOptions,
    build_container_args,
    load_credential,
    redact_args,
    validate_project,
)

from conftest import FakeProc


def test_validate_project() -> None:
    assert validate_project("my-app_2") == "my-app_2"
    for bad in ("", "../etc", "a b", "x/y", "dot.name"):
        with pytest.raises(InvalidProjectError):
            validate_project(bad)


def test_build_container_args(tmp_path: Path) -> None:
    config = EngineConfig(data_root=tmp_path)
    args = build_container_args(
        config, "demo", "list files", "tok",
        RunOptions(model="opus", resume="sess-1", cpus=2, memory="8g"),
    )
    assert args[:3] == ["container", "run", "--rm"]
    assert args[args.index("--cpus") + 1] == "2"
    assert args[args.index("--memory") + 1] == "8g"
    assert "CLAUDE_CODE_OAUTH_TOKEN=tok" in args
    volumes = [args[i + 1] for i, a in enumerate(args) if a == "--volume"]
    assert volumes == [
        f"{tmp_path / 'workspace' / 'demo'}:/workspace",
        f"{tmp_path / 'notes' / 'demo'}:/notes",
        f"{tmp_path / 'state' / 'demo'}:/home/dev/.claude/projects/-workspace",
    ]
    image_at = args.index("claude-dev-env")
    assert args[image_at + 1:image_at + 5] == ["-p", "--verbose", "--output-format", "stream-json"]
    assert args[args.index("--resume") + 1] == "sess-1"
    assert args[args.index("--model") + 1] == "opus"
    assert args[-1] == "list files"
    assert (tmp_path / "notes" / "demo").is_dir()
    assert (tmp_path / "state" / "demo").is_dir()


def test_build_container_args_defaults(tmp_path: Path) -> None:
    config = EngineConfig(data_root=tmp_path)
    args = build_container_args(config, "demo", "hi", "tok")
    assert args[args.index("--cpus") + 1] == "4"
    assert args[args.index("--memory") + 1] == "4g"
    assert "--resume" not in args
    assert "--model" not in args


def test_redact_args() -> None:
    assert redact_args(["--env", "X=secret"], "secret") == ["--env", "X=***"]


def test_load_credential_prefers_environment(tmp_path: Path) -> None:
    config = EngineConfig(data_root=tmp_path)
    (tmp_path / ".env").write_text("CLAUDE_CODE_OAUTH_TOKEN=from-file\n")
    with patch.dict(os.environ, {"CLAUDE_CODE_OAUTH_TOKEN": "from-env"}):
        assert load_credential(config) == "from-env"


def test_load_credential_from_env_file(tmp_path: Path) -> None:
    config = EngineConfig(data_root=tmp_path)
    (tmp_path / ".env").write_text("# token\nCLAUDE_CODE_OAUTH_TOKEN=from-file\n")
    with patch.dict(os.environ, {}, clear=True):
        assert load_credential(config) == "from-file"


def test_missing_credential_raises(tmp_path: Path) -> None:
    config = EngineConfig(data_root=tmp_path)
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(CredentialNotFoundError) as exc_info:
            load_credential(config)
    assert "claude setup-token" in str(exc_info.value)
    assert exc_info.value.env_var == "CLAUDE_CODE_OAUTH_TOKEN"


def _completed(returncode: int, stdout: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, b""))
    return proc


@pytest.mark.asyncio
async def test_ensure_image_is_single_flight(tmp_path: Path) -> None:
    config = EngineConfig(data_root=tmp_path)
    runtime = ContainerRuntime(config)
    calls: list[tuple] = []

    async def fake_exec(*args, **kwargs):
        calls.append(args[1:3])
        await asyncio.sleep(0.01)
        if args[1:3] == ("image", "ls"):
            return _completed(0, b"REPOSITORY\nother-image\n")
        return _completed(0)

    with patch("agentbox.engine.supervisor.asyncio.create_subprocess_exec", side_effect=fake_exec):
        await asyncio.gather(*(runtime.ensure_image() for _ in range(5)))
        await runtime.ensure_image()

    assert calls.count(("system", "info")) == 1
    assert calls.count(("image", "ls")) == 1
    assert calls.count(("build", "--tag")) == 1
    assert runtime.image_ready


@pytest.mark.asyncio
async def test_ensure_image_starts_system_when_down(tmp_path: Path) -> None:
    config = EngineConfig(data_root=tmp_path, system_start_settle_seconds=0)
    runtime = ContainerRuntime(config)
    results = iter([_completed(1), _completed(0), _completed(0, b"claude-dev-env latest\n")])

    with patch("agentbox.engine.supervisor.asyncio.create_subprocess_exec",
               new_callable=MagicMock,
               side_effect=lambda *a, **k: asyncio.sleep(0, next(results))) as spawn:
        await runtime.ensure_image()

    invoked = [c.args[1:3] for c in spawn.call_args_list]
    assert invoked == [("system", "info"), ("system", "start"), ("image", "ls")]


@pytest.mark.asyncio
async def test_ensure_image_build_failure(tmp_path: Path) -> None:
    config = EngineConfig(data_root=tmp_path)
    runtime = ContainerRuntime(config)
    results = iter([_completed(0), _completed(0, b""), _completed(2)])
    with patch("agentbox.engine.supervisor.asyncio.create_subprocess_exec",
               new_callable=MagicMock,
               side_effect=lambda *a, **k: asyncio.sleep(0, next(results))):
        with pytest.raises(ImageBuildError) as exc_info:
            await runtime.ensure_image()
    assert exc_info.value.exit_code == 2
    assert not runtime.image_ready


@pytest.mark.asyncio
async def test_missing_container_cli(tmp_path: Path) -> None:
    runtime = ContainerRuntime(EngineConfig(data_root=tmp_path))
    with patch("agentbox.engine.supervisor.asyncio.create_subprocess_exec",
               side_effect=FileNotFoundError("container")):
        with pytest.raises(ContainerSystemError):
            await runtime.ensure_image()


@pytest.mark.asyncio
async def test_start_spawns_without_shell(tmp_path: Path) -> None:
    config = EngineConfig(data_root=tmp_path)
    supervisor = ProcessSupervisor(config)
    fake = FakeProc([b""])
    with patch("agentbox.engine.supervisor.asyncio.create_subprocess_exec",
               new=AsyncMock(return_value=fake)) as spawn:
        process = await supervisor.start("demo", "hi; rm -rf /", token="tok")
    args = spawn.call_args.args
    assert args[0] == "container"
    assert args[-1] == "hi; rm -rf /"
    assert spawn.call_args.kwargs["stdin"] == asyncio.subprocess.DEVNULL
    assert process.pid == 4242


@pytest.mark.asyncio
async def test_start_launch_failure(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(EngineConfig(data_root=tmp_path))
    with patch("agentbox.engine.supervisor.asyncio.create_subprocess_exec",
               new=AsyncMock(side_effect=PermissionError("denied"))):
        with pytest.raises(ProcessLaunchError):
            await supervisor.start("demo", "hi", token="tok")


@pytest.mark.asyncio
async def test_start_rejects_bad_project(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(EngineConfig(data_root=tmp_path))
    with pytest.raises(InvalidProjectError):
        await supervisor.start("../x", "hi", token="tok")


@pytest.mark.asyncio
async def test_timeout_kills_process() -> None:
    fake = FakeProc([b'{"type": "system"}\n'], hang=True)
    process = AgentProcess(fake, "demo", timeout=0.05)
    chunks = [c async for c in process.stdout_chunks()]
    await process.wait()

    assert chunks == [b'{"type": "system"}\n']
    assert fake.killed
    assert process.interrupted
    assert process.interrupt_reason == "timeout"


@pytest.mark.asyncio
async def test_cancel_after_exit_is_noop() -> None:
    fake = FakeProc([])
    process = AgentProcess(fake, "demo")
    await process.wait()
    assert process.cancel() is False
    assert not process.interrupted
