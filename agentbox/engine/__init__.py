"""agentbox engine: run a coding agent in a container, relay and persist its events."""
from .config import EngineConfig
from .events import (
    AgentEvent,
    AssistantEvent,
    ResultEvent,
    SystemEvent,
    UnknownEvent,
    UserEvent,
    dict_to_event,
    event_to_dict,
)
from .errors import (
    AgentBoxError,
    ContainerSystemError,
    CredentialNotFoundError,
    DevServerError,
    ImageBuildError,
    InvalidProjectError,
    NoFreePortError,
    ProcessLaunchError,
    SetupError,
    ThreadNotFoundError,
)

__all__ = [
    # Engine (lazy import)
    "AgentEngine",
    "RunRequest",
    "RunOutcome",
    "RelayFrame",
    # Config
    "EngineConfig",
    "load_yaml_config",
    # Events
    "AgentEvent",
    "AssistantEvent",
    "ResultEvent",
    "SystemEvent",
    "UnknownEvent",
    "UserEvent",
    "dict_to_event",
    "event_to_dict",
    # Timeline (lazy import)
    "UserTurn",
    "project_timeline",
    "timeline_from_logs",
    # Errors
    "AgentBoxError",
    "ContainerSystemError",
    "CredentialNotFoundError",
    "DevServerError",
    "ImageBuildError",
    "InvalidProjectError",
    "NoFreePortError",
    "ProcessLaunchError",
    "SetupError",
    "ThreadNotFoundError",
]


def __getattr__(name: str):
    if name in ("AgentEngine", "RunRequest"):
        from . import engine
        return getattr(engine, name)
    if name in ("RunOutcome", "RelayFrame"):
        from . import coordinator
        return getattr(coordinator, name)
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name in ("UserTurn", "project_timeline", "timeline_from_logs"):
        from . import timeline
        return getattr(timeline, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
