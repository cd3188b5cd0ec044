"""Dev preview servers for project workspaces."""
from __future__ import annotations

__all__ = [
    "DetectedCommand",
    "DevServer",
    "DevServerManager",
    "detect_command",
]

from agentbox.devserver.manager import DetectedCommand, DevServer, DevServerManager, detect_command
