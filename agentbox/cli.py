"""agentbox: command line client for a running agentbox server."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import AsyncIterator
from typing import Any

import aiohttp
from rich.console import Console, Group
from rich.markdown import Markdown as RichMarkdown
from rich.text import Text

from agentbox.engine.events import AssistantEvent, ResultEvent, SystemEvent, dict_to_event

DEFAULT_SERVER = "http://localhost:3847"

console = Console()
err_console = Console(stderr=True)


class ClientError(Exception):
    def __init__(self, status: int, message: str):
        self.status = status
        super().__init__(f"Error ({status}): {message}")


async def _request(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    body: dict[str, Any] | None = None,
) -> Any:
    async with session.request(method, url, json=body) as resp:
        try:
            data = await resp.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            data = {"error": await resp.text()}
        if resp.status >= 400:
            message = data.get("error") if isinstance(data, dict) else data
            raise ClientError(resp.status, str(message))
        return data


async def iter_sse(resp: aiohttp.ClientResponse) -> AsyncIterator[tuple[str, str]]:
    """Yield ``(event, data)`` pairs from a text/event-stream response."""
    event = "message"
    data_lines: list[str] = []
    async for raw in resp.content:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event, data_lines = "message", []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
    if data_lines:
        yield event, "\n".join(data_lines)


# ── Rendering ──

def _esc(text: str) -> str:
    """Escape Rich markup characters in dynamic content."""
    return text.replace("[", "\\[")


def _result_line(event: dict[str, Any]) -> Text:
    if event.get("interrupted"):
        return Text("■ interrupted", style="bold yellow")
    parts = []
    if event.get("num_turns") is not None:
        parts.append(f"{event['num_turns']} turns")
    cost = event.get("total_cost_usd")
    if isinstance(cost, (int, float)):
        parts.append(f"${cost:.4f}")
    detail = f" ({', '.join(parts)})" if parts else ""
    if event.get("is_error"):
        return Text(f"✗ error{detail}", style="bold red")
    return Text(f"✓ done{detail}", style="bold green")


def render_group(group: dict[str, Any]):
    kind = group.get("kind")
    if kind == "user":
        return Text.from_markup(f"[bold cyan]❯[/bold cyan] {_esc(group.get('text', ''))}")
    if kind == "assistant-text":
        return RichMarkdown(group.get("text", ""))
    if kind == "tool-group":
        lines = []
        for tool in group.get("tools", []):
            mark = "[green]✓[/green]" if "result" in tool else "[dim]…[/dim]"
            lines.append(Text.from_markup(f"  {mark} [magenta]{_esc(tool.get('name', '?'))}[/magenta]"))
        return Group(*lines)
    if kind == "system":
        event = group.get("event", {})
        model = event.get("model") or "?"
        return Text(f"session {event.get('subtype', '?')} · model {model}", style="dim")
    if kind == "result":
        return _result_line(group.get("event", {}))
    return Text("")


def render_live_event(data: dict[str, Any]) -> None:
    event = dict_to_event(data)
    if isinstance(event, SystemEvent) and event.subtype == "init":
        console.print(Text(f"session started · model {event.model or '?'}", style="dim"))
    elif isinstance(event, AssistantEvent):
        for text in event.texts:
            console.print(RichMarkdown(text))
        for tool in event.tool_uses:
            console.print(Text.from_markup(f"  [magenta]→ {_esc(tool.name)}[/magenta]"))
    elif isinstance(event, ResultEvent):
        console.print(_result_line(data))


# ── Commands ──

async def _run(args) -> int:
    base = args.server.rstrip("/")
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None)) as session:
        if args.list_projects:
            data = await _request(session, "GET", f"{base}/projects")
            if not data["projects"]:
                console.print("No projects found.")
            else:
                console.print("Projects:")
                for name in data["projects"]:
                    console.print(f"  {name}")
            return 0

        if args.list_logs:
            data = await _request(session, "GET", f"{base}/logs/{args.project}")
            if not data["logs"]:
                console.print(f'No logs for project "{args.project}".')
            else:
                console.print(f'Logs for "{args.project}":')
                for log_id in data["logs"]:
                    console.print(f"  {log_id}")
            return 0

        if args.get_log:
            data = await _request(session, "GET", f"{base}/logs/{args.project}/{args.get_log}")
            print(json.dumps(data, indent=2, ensure_ascii=False))
            return 0

        if args.show_thread:
            data = await _request(
                session, "GET", f"{base}/threads/{args.project}/{args.show_thread}/timeline",
            )
            for group in data["groups"]:
                console.print(render_group(group))
            return 0

        body: dict[str, Any] = {"prompt": args.prompt, "project": args.project}
        if args.model:
            body["model"] = args.model
        if args.timeout is not None:
            body["timeout"] = args.timeout
        if args.thread:
            body["threadId"] = args.thread

        console.print(f'Sending prompt to project "{args.project}"...', style="dim")
        if not args.stream:
            data = await _request(session, "POST", f"{base}/agent", body)
            console.print(
                f"\nCompleted in {data['duration'] / 1000:.1f}s "
                f"(exit code: {data['exitCode']})\n"
            )
            print(data["response"])
            return 0 if data["exitCode"] == 0 else 1

        exit_code = 1
        async with session.post(f"{base}/agent/stream", json=body) as resp:
            if resp.status >= 400:
                data = await resp.json(content_type=None)
                raise ClientError(resp.status, str(data.get("error", data)))
            async for event_type, payload in iter_sse(resp):
                try:
                    data = json.loads(payload)
                except ValueError:
                    continue
                render_live_event(data)
                if event_type == "result":
                    exit_code = 1 if data.get("is_error") else 0
        return exit_code


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentbox",
        description="Run a prompt against a project on an agentbox server",
    )
    parser.add_argument("prompt", nargs="?", help="Prompt to run")
    parser.add_argument("--project", metavar="NAME", help="Project name")
    parser.add_argument(
        "--server", metavar="URL", default=DEFAULT_SERVER,
        help=f"Server URL (default: {DEFAULT_SERVER})",
    )
    parser.add_argument("--model", help="Model to use")
    parser.add_argument("--timeout", type=int, metavar="MS", help="Timeout in milliseconds")
    parser.add_argument("--stream", action="store_true", help="Print events as they arrive")
    parser.add_argument("--thread", metavar="ID", help="Continue a thread")
    parser.add_argument("--list-projects", action="store_true", help="List all projects")
    parser.add_argument("--list-logs", action="store_true", help="List logs for a project")
    parser.add_argument("--get-log", metavar="ID", help="Print one log entry")
    parser.add_argument("--show-thread", metavar="ID", help="Render a thread's timeline")
    args = parser.parse_args(argv)

    needs_project = args.list_logs or args.get_log or args.show_thread or args.prompt
    if not args.list_projects and not needs_project:
        parser.print_usage(sys.stderr)
        sys.exit(1)
    if needs_project and not args.list_projects and not args.project:
        err_console.print("--project is required for this command")
        sys.exit(1)

    try:
        code = asyncio.run(_run(args))
    except ClientError as exc:
        err_console.print(str(exc), style="red")
        sys.exit(1)
    except aiohttp.ClientError as exc:
        err_console.print(f"Cannot reach {args.server}: {exc}", style="red")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
