# src/deploy_flake/observers/dispatcher.py
from __future__ import annotations
import logging
import threading
from typing import List
from .events import BaseEvent

log = logging.getLogger("deploy_flake")


class EventBus:
    """Fans events out to observers. Shared by all host workers, so delivery is serialized."""

    def __init__(self, observers: List = None):
        self._observers = observers or []
        self._lock = threading.Lock()

    def emit(self, event: BaseEvent) -> None:
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception as exc:
                    # observers must not break deploys
                    log.debug("observer %r failed on %s: %s", ob, event.__class__.__name__, exc)
