# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/observers/interface.py

from __future__ import annotations
from typing import Protocol
from .events import BaseEvent


class Observer(Protocol):
    """
    Receives lifecycle events of a deploy run.

    notify() is called on the host worker thread that emitted the event,
    one event at a time across all hosts. Exceptions are logged and dropped.
    """

    def notify(self, event: BaseEvent) -> None: ...
