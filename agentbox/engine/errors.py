"""Exception hierarchy for the agent session engine.

Setup errors are fatal to a run and are raised before any session log
reaches ``streaming``. Everything that happens after streaming starts is
reflected in the persisted log status instead of being raised.
"""
from __future__ import annotations


class AgentBoxError(Exception):
    """Base exception for all agentbox errors."""


class SetupError(AgentBoxError):
    """A run could not be started."""


class CredentialNotFoundError(SetupError):
    """No agent credential in the environment or the env file."""
    def __init__(self, env_var: str, env_file: str):
        self.env_var = env_var
        self.env_file = env_file
        super().__init__(
            "No Claude Code token found. Run `claude setup-token` on the host "
            f"to generate one, then add it to {env_file} as {env_var}=<token>"
        )


class ContainerSystemError(SetupError):
    """The container runtime is not running and could not be started."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Container system unavailable: {reason}")


class ImageBuildError(SetupError):
    """Building the agent container image failed."""
    def __init__(self, image: str, exit_code: int | None):
        self.image = image
        self.exit_code = exit_code
        super().__init__(
            f"Failed to build container image {image} (exit code {exit_code})"
        )


class ProcessLaunchError(SetupError):
    """The agent subprocess could not be spawned."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to launch '{command}': {reason}")


class InvalidProjectError(AgentBoxError):
    """Project name is not a safe directory name."""
    def __init__(self, project: str):
        self.project = project
        super().__init__(
            f"Invalid project name {project!r}: must be alphanumeric "
            "with hyphens/underscores only"
        )


class ThreadNotFoundError(AgentBoxError):
    """Referenced thread does not exist in the project."""
    def __init__(self, project: str, thread_id: str):
        self.project = project
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} not found in project {project}")


class DevServerError(AgentBoxError):
    """Dev preview container failed to start or could not be configured."""
    def __init__(self, project: str, reason: str):
        self.project = project
        self.reason = reason
        super().__init__(f"Dev server for {project}: {reason}")


class NoFreePortError(DevServerError):
    """Every host port in the preview range is taken."""
    def __init__(self, project: str, port_min: int, port_max: int):
        self.port_min = port_min
        self.port_max = port_max
        super().__init__(project, f"no free ports in range {port_min}-{port_max}")
