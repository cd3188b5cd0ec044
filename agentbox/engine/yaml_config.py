"""YAML configuration loader.

Loads a single YAML file layered on top of the AGENTBOX_* environment.
When no YAML is given, env vars work exactly as before.

Example YAML:
    engine:
      data_root: /srv/agentbox
      image_name: claude-dev-env
      default_cpus: 2
      default_memory: 8g
      default_timeout_seconds: 900
      flush_char_threshold: 500
      flush_event_threshold: 10

    devserver:
      port_min: 4000
      port_max: 4099
"""
from __future__ import annotations

import logging
from pathlib import Path

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

_PATH_KEYS = {
    "data_root", "workspace_dir", "notes_dir", "state_dir",
    "logs_dir", "container_dir", "env_file",
}


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Parse *path* and return *base* (or the env config) with its overrides.

    Raises FileNotFoundError for a missing file and ValueError when the
    document is not a mapping.
    """
    config_path = Path(path).expanduser()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{config_path}: top level must be a mapping")

    base = base or EngineConfig.from_env()
    overrides: dict = {}

    engine_section = raw.get("engine") or {}
    if not isinstance(engine_section, dict):
        raise ValueError(f"{config_path}: 'engine' must be a mapping")
    for key, value in engine_section.items():
        if key in _PATH_KEYS and value is not None:
            value = _resolve_path(value, config_path.parent)
        overrides[key] = value

    devserver_section = raw.get("devserver") or {}
    if "port_min" in devserver_section:
        overrides["devserver_port_min"] = int(devserver_section["port_min"])
    if "port_max" in devserver_section:
        overrides["devserver_port_max"] = int(devserver_section["port_max"])

    logger.info(
        "Loaded YAML config %s (%d override(s))", config_path, len(overrides),
    )
    return base.with_overrides(overrides)


def _resolve_path(value: str, relative_to: Path) -> Path:
    """Resolve a config path relative to the YAML file's directory."""
    p = Path(str(value)).expanduser()
    if not p.is_absolute():
        p = relative_to / p
    return p
