# src/deploy_flake/observers/jsonfile.py
from __future__ import annotations
import json
import threading
from pathlib import Path
from .interface import Observer
from .events import BaseEvent


class JsonFileObserver(Observer):
    """Appends every event as one JSON object per line (JSONL), next to the run's log file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # host workers emit concurrently; lines must not interleave
        self._lock = threading.Lock()

    def notify(self, event: BaseEvent) -> None:
        line = json.dumps({"type": event.__class__.__name__, **event.dict()}, default=str)
        with self._lock, self.path.open("a") as f:
            f.write(line + "\n")
