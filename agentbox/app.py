"""agentbox server entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_PORT = 3847


def _configure_logging(log_dir: Path, level: str) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentbox-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentbox-server",
        description="agentbox: run coding agents in containers over HTTP",
    )
    parser.add_argument(
        "--host", default="0.0.0.0",
        help="Interface to bind (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port", type=int, default=int(os.getenv("PORT", DEFAULT_PORT)),
        help=f"Port to listen on (default: $PORT or {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./agentbox.yaml if present)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Log at DEBUG level",
    )
    args = parser.parse_args(argv)

    import yaml

    from agentbox.engine.config import EngineConfig
    from agentbox.engine.yaml_config import load_yaml_config

    config = EngineConfig.from_env()
    config_path = Path(args.config) if args.config else Path.cwd() / "agentbox.yaml"
    if args.config or config_path.exists():
        try:
            config = load_yaml_config(config_path, base=config)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            print(f"agentbox-server: cannot load config {config_path}: {exc}", file=sys.stderr)
            sys.exit(2)
    else:
        config_path = None

    level = "DEBUG" if args.verbose else config.log_level
    log_file = _configure_logging(Path(config.logs_dir), level)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting agentbox server host=%s port=%s root=%s config=%s log=%s",
        args.host, args.port, config.data_root, config_path or "<none>", log_file,
    )

    from agentbox.engine.engine import AgentEngine
    from agentbox.server.app import AgentBoxServer

    engine = AgentEngine(config)
    server = AgentBoxServer(engine, host=args.host, port=args.port)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
