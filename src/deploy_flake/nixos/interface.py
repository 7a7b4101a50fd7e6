# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/interface.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Protocol


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of one remote command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""
    command: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


class RemoteSession(Protocol):
    """
    Contract for one authenticated connection to a target host.

    Implementations raise RemoteConnectionError when the transport fails;
    a command that ran and exited non-zero is a normal CommandResult.
    """

    host: str

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> CommandResult:
        ...

    def close(self) -> None:
        ...
