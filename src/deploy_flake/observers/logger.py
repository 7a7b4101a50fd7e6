# src/deploy_flake/observers/logger.py
from __future__ import annotations
import logging
from .events import BaseEvent, HostDeployFailed


class LoggerObserver:
    """Mirrors events into the run log; host failures also reach the console."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "run_id", "host"))
        level = logging.WARNING if isinstance(event, HostDeployFailed) else logging.DEBUG

        self.logger.log(level, f"[{d['host'] or 'run'}] [EVENT] {etype}: {msg}")
