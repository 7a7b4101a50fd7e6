# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/deploy_flake/logging/log.py

from __future__ import annotations

import logging
from pathlib import Path
from datetime import datetime, timezone
import uuid

DEFAULT_LOG_DIR = Path.home() / ".deploy-flake" / "logs"
LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(message)s"

# paramiko is chatty at INFO (every auth attempt, every channel); only its
# warnings belong in our log file
TRANSPORT_LOGGER = "paramiko"


def _reset(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "deploy_flake",
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    One log file per invocation, named after its run_id:
      - file: full trace at DEBUG (every remote command, exit code, build line)
      - console (stderr): INFO, or DEBUG with --verbose
      - paramiko warnings go to the file only
    Returns (logger, run_id, log_path); the run_id tags every lifecycle event.
    """
    run_id = str(uuid.uuid4())

    base_dir = Path(base_dir) if base_dir is not None else DEFAULT_LOG_DIR
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    logger = logging.getLogger(name)
    _reset(logger)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(fh)
    logger.addHandler(ch)

    transport = logging.getLogger(TRANSPORT_LOGGER)
    transport.setLevel(logging.WARNING)
    transport.propagate = False
    _reset(transport)
    transport.addHandler(fh)

    logger.info("=== deploy-flake run started ===")
    logger.info(f"run_id={run_id}")
    logger.info(f"log_file={log_path}")

    return logger, run_id, log_path
