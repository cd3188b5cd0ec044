"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTBOX_* env vars
or the ``engine:`` section of a YAML config (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Agent session engine configuration."""

    # Root for all host-side state. The directories below default to
    # subdirectories of it when left unset.
    data_root: Path = field(default_factory=Path.cwd)
    workspace_dir: Path | None = None
    notes_dir: Path | None = None
    state_dir: Path | None = None
    logs_dir: Path | None = None
    container_dir: Path | None = None
    env_file: Path | None = None

    # Container runtime
    container_cli: str = "container"
    image_name: str = "claude-dev-env"
    credential_env_var: str = "CLAUDE_CODE_OAUTH_TOKEN"
    # Pause after `container system start` before the service is usable.
    system_start_settle_seconds: float = 2.0

    # Run defaults
    default_cpus: int = 4
    default_memory: str = "4g"
    # None disables the timeout.
    default_timeout_seconds: float | None = None

    # Opportunistic flush thresholds while streaming
    flush_char_threshold: int = 500
    flush_event_threshold: int = 10

    # Dev preview host port range (inclusive)
    devserver_port_min: int = 4000
    devserver_port_max: int = 4099

    # Logging
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.data_root = Path(self.data_root)
        root = self.data_root
        self.workspace_dir = Path(self.workspace_dir or root / "workspace")
        self.notes_dir = Path(self.notes_dir or root / "notes")
        self.state_dir = Path(self.state_dir or root / "state")
        self.logs_dir = Path(self.logs_dir or root / "logs")
        self.container_dir = Path(self.container_dir or root / "container")
        self.env_file = Path(self.env_file or root / ".env")

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTBOX_* environment variables."""
        box_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTBOX_")
        }
        if box_vars:
            logger.info(
                "EngineConfig.from_env: AGENTBOX_* env overrides: %s",
                ", ".join(sorted(box_vars)),
            )
        else:
            logger.debug("EngineConfig.from_env: no AGENTBOX_* env vars set, using defaults")

        timeout = os.getenv("AGENTBOX_DEFAULT_TIMEOUT")
        return cls(
            data_root=Path(os.getenv("AGENTBOX_ROOT") or Path.cwd()),
            workspace_dir=_env_path("AGENTBOX_WORKSPACE_DIR"),
            notes_dir=_env_path("AGENTBOX_NOTES_DIR"),
            state_dir=_env_path("AGENTBOX_STATE_DIR"),
            logs_dir=_env_path("AGENTBOX_LOGS_DIR"),
            container_dir=_env_path("AGENTBOX_CONTAINER_DIR"),
            env_file=_env_path("AGENTBOX_ENV_FILE"),
            container_cli=os.getenv("AGENTBOX_CONTAINER_CLI", cls.container_cli),
            image_name=os.getenv("AGENTBOX_IMAGE", cls.image_name),
            default_cpus=int(os.getenv(
                "AGENTBOX_DEFAULT_CPUS", str(cls.default_cpus)
            )),
            default_memory=os.getenv(
                "AGENTBOX_DEFAULT_MEMORY", cls.default_memory
            ),
            default_timeout_seconds=float(timeout) if timeout else None,
            flush_char_threshold=int(os.getenv(
                "AGENTBOX_FLUSH_CHARS", str(cls.flush_char_threshold)
            )),
            flush_event_threshold=int(os.getenv(
                "AGENTBOX_FLUSH_EVENTS", str(cls.flush_event_threshold)
            )),
            devserver_port_min=int(os.getenv(
                "AGENTBOX_DEVSERVER_PORT_MIN", str(cls.devserver_port_min)
            )),
            devserver_port_max=int(os.getenv(
                "AGENTBOX_DEVSERVER_PORT_MAX", str(cls.devserver_port_max)
            )),
            log_level=os.getenv("AGENTBOX_LOG_LEVEL", cls.log_level).upper(),
        )

    def with_overrides(self, overrides: dict) -> EngineConfig:
        """Return a copy with fields replaced from a plain mapping.

        Unknown keys are ignored. Overriding ``data_root`` re-derives every
        directory that is not itself overridden.
        """
        known = {f.name for f in fields(self)}
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        if "data_root" in overrides:
            for name in _DERIVED_DIRS:
                values[name] = None
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown engine config key: %s", key)
                continue
            values[key] = value
        return EngineConfig(**values)


_DERIVED_DIRS = (
    "workspace_dir", "notes_dir", "state_dir", "logs_dir", "container_dir", "env_file",
)


def _env_path(name: str) -> Path | None:
    value = os.getenv(name)
    return Path(value) if value else None
