"""Typed agent events parsed from the agent's stream-json output.

Each JSON object the agent prints becomes one immutable event. The
original payload is kept verbatim in ``raw`` so relaying and persisting
never lose fields this module does not model. Objects with an
unrecognized ``type`` become UnknownEvent instead of failing.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any

# Event types end up on an SSE `event:` line.
_EVENT_TYPE_RE = re.compile(r"[A-Za-z0-9_.:-]+")


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    name: str
    input: Any = None
    tool_use_id: str | None = None


ContentBlock = TextBlock | ToolUseBlock


@dataclass(frozen=True)
class AgentEvent:
    """Base event. ``raw`` is the exact JSON object emitted by the agent."""
    event_type: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.raw)


@dataclass(frozen=True)
class SystemEvent(AgentEvent):
    event_type: str = "system"
    subtype: str | None = None
    session_id: str | None = None
    model: str | None = None

    @property
    def resumption_token(self) -> str | None:
        """Token announced by session initialization, if this is one."""
        if self.subtype == "init" and self.session_id:
            return self.session_id
        return None


@dataclass(frozen=True)
class AssistantEvent(AgentEvent):
    event_type: str = "assistant"
    blocks: tuple[ContentBlock, ...] = ()

    @property
    def texts(self) -> list[str]:
        return [b.text for b in self.blocks if isinstance(b, TextBlock)]

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]


@dataclass(frozen=True)
class UserEvent(AgentEvent):
    """Tool result echo. Never a human turn."""
    event_type: str = "user"


@dataclass(frozen=True)
class ResultEvent(AgentEvent):
    event_type: str = "result"
    is_error: bool = False
    num_turns: int | None = None
    total_cost_usd: float | None = None
    result: str | None = None
    interrupted: bool = False


@dataclass(frozen=True)
class UnknownEvent(AgentEvent):
    pass


def _parse_blocks(message: Any) -> tuple[ContentBlock, ...]:
    if not isinstance(message, dict):
        return ()
    content = message.get("content")
    if not isinstance(content, list):
        return ()
    blocks: list[ContentBlock] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text" and isinstance(block.get("text"), str) and block["text"]:
            blocks.append(TextBlock(text=block["text"]))
        elif kind == "tool_use" and isinstance(block.get("name"), str) and block["name"]:
            tool_id = block.get("id")
            blocks.append(ToolUseBlock(
                name=block["name"],
                input=copy.deepcopy(block.get("input")),
                tool_use_id=tool_id if isinstance(tool_id, str) else None,
            ))
    return tuple(blocks)


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Convert one decoded JSON object into a typed event."""
    raw = copy.deepcopy(data)
    event_type = raw.get("type")

    if event_type == "system":
        return SystemEvent(
            raw=raw,
            subtype=_opt_str(raw.get("subtype")),
            session_id=_opt_str(raw.get("session_id")),
            model=_opt_str(raw.get("model")),
        )
    if event_type == "assistant":
        return AssistantEvent(raw=raw, blocks=_parse_blocks(raw.get("message")))
    if event_type == "user":
        return UserEvent(raw=raw)
    if event_type == "result":
        turns = raw.get("num_turns")
        cost = raw.get("total_cost_usd")
        return ResultEvent(
            raw=raw,
            is_error=bool(raw.get("is_error")),
            num_turns=turns if isinstance(turns, int) else None,
            total_cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
            result=_opt_str(raw.get("result")),
            interrupted=bool(raw.get("interrupted")),
        )
    return UnknownEvent(
        event_type=(
            event_type
            if isinstance(event_type, str) and _EVENT_TYPE_RE.fullmatch(event_type)
            else "unknown"
        ),
        raw=raw,
    )


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Plain JSON-serializable payload for an event."""
    return event.to_dict()


def interrupted_result() -> ResultEvent:
    """Terminal event synthesized when the process is killed before finishing."""
    return ResultEvent(
        raw={
            "type": "result",
            "subtype": "interrupted",
            "is_error": True,
            "interrupted": True,
        },
        is_error=True,
        interrupted=True,
    )
