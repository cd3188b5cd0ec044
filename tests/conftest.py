from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from agentbox.engine.config import EngineConfig
from agentbox.engine.supervisor import AgentProcess, ProcessSupervisor, RunOptions

LIST_FILES_EVENTS = [
    {"type": "system", "subtype": "init", "session_id": "sess-1", "model": "claude-sonnet"},
    {
        "type": "assistant",
        "message": {"content": [
            {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
        ]},
    },
    {
        "type": "user",
        "message": {"content": [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "a.txt\nb.txt"},
        ]},
    },
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "Done."}]}},
    {"type": "result", "subtype": "success", "is_error": False, "num_turns": 2,
     "total_cost_usd": 0.01, "result": "Done."},
]


def to_jsonl(events: list[dict]) -> bytes:
    return b"".join(json.dumps(e).encode() + b"\n" for e in events)


class FakeStream:
    """asyncio.StreamReader stand-in fed from a list of chunks.

    With ``hang=True`` it blocks after the last chunk until ``close()``.
    """

    def __init__(self, chunks: list[bytes], hang: bool = False) -> None:
        self._chunks = list(chunks)
        self._hang = hang
        self._closed = asyncio.Event()

    def close(self) -> None:
        self._closed.set()

    async def read(self, n: int = -1) -> bytes:
        await asyncio.sleep(0)
        if self._chunks:
            return self._chunks.pop(0)
        if self._hang and not self._closed.is_set():
            await self._closed.wait()
        return b""


class FakeProc:
    def __init__(self, stdout: list[bytes], stderr: list[bytes] | None = None,
                 exit_code: int = 0, hang: bool = False) -> None:
        self.stdout = FakeStream(stdout, hang=hang)
        self.stderr = FakeStream(stderr or [])
        self.pid = 4242
        self.returncode: int | None = None
        self._exit_code = exit_code
        self.killed = False

    def kill(self) -> None:
        self.killed = True
        self.stdout.close()

    async def wait(self) -> int:
        if self.returncode is None:
            self.returncode = -9 if self.killed else self._exit_code
        return self.returncode


class FakeSupervisor(ProcessSupervisor):
    """Supervisor whose runs replay canned stdout instead of a container."""

    def __init__(self, config: EngineConfig, scripts: list[dict] | None = None) -> None:
        super().__init__(config)
        self.scripts = list(scripts or [])
        self.started: list[tuple[str, str, RunOptions]] = []
        self.last_process: AgentProcess | None = None

    async def prepare(self) -> str:
        return "test-token"

    async def start(self, project, prompt, options=None, *, token=None) -> AgentProcess:
        opts = options or RunOptions()
        self.started.append((project, prompt, opts))
        script = self.scripts.pop(0) if self.scripts else {"stdout": [to_jsonl(LIST_FILES_EVENTS)]}
        proc = FakeProc(
            script.get("stdout", []),
            stderr=script.get("stderr"),
            exit_code=script.get("exit_code", 0),
            hang=script.get("hang", False),
        )
        self.last_process = AgentProcess(proc, project, timeout=opts.timeout)
        return self.last_process


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(data_root=tmp_path)
