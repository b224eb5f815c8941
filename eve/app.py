"""Eve workspace server: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _configure_logging(log_dir: Path, level: str) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "eve-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
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


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="eve",
        description="Eve: web workspace for CLI and local LLM sessions",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (default: $PORT or 3000)",
    )
    parser.add_argument(
        "--host", default=None,
        help="Bind address (default: $HOST or 0.0.0.0)",
    )
    parser.add_argument(
        "--data-dir", metavar="DIR",
        help="Data directory (default: $EVE_DATA_DIR or ~/.eve)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: <data-dir>/eve.yaml)",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Log at DEBUG level",
    )
    args = parser.parse_args()

    from eve.engine.config import ServerConfig
    from eve.engine.yaml_config import load_yaml_config
    from eve.shared.services.process_cleanup import PidRegistry, cleanup_stale_processes
    from eve.web.server import EveServer

    base = ServerConfig.from_env()
    if args.data_dir:
        base = replace(base, data_dir=args.data_dir)
    loaded = load_yaml_config(args.config, base)
    config = loaded.server
    # Command-line flags beat both the environment and the YAML file.
    if args.port is not None:
        config = replace(config, port=args.port)
    if args.host:
        config = replace(config, host=args.host)
    if args.verbose:
        config = replace(config, log_level="DEBUG")

    log_file = _configure_logging(config.data_path / "logs", config.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting Eve server host=%s port=%s data_dir=%s config=%s log=%s",
        config.host, config.port, config.data_path, args.config or "<default>", log_file,
    )

    try:
        reaped = cleanup_stale_processes(
            PidRegistry(config.data_path / "pids.json"),
            current_pid=os.getpid(),
            log=logger.info,
        )
        if reaped:
            logger.warning("Reaped %d stale child process(es) at startup", reaped)
    except OSError:
        logger.exception("Startup stale-process cleanup failed")

    server = EveServer(config, lmstudio=loaded.lmstudio)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
