# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/gate.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import GateFailure
from .interface import RemoteSession
from .models import BuiltSystem
from ..utils.ssh_runner import shq

log = logging.getLogger("deploy_flake")


@dataclass(frozen=True)
class GateResult:
    script: Optional[str]     # None: no self-check configured
    output: str = ""


class PreActivateGate:
    """
    Runs an operator-supplied self-check shipped inside the built closure.
    Must pass before the configuration may become the boot default.
    """

    def __init__(self, *, sudo: bool = False, timeout: Optional[float] = None):
        self.sudo = sudo
        self.timeout = timeout

    def check(self, session: RemoteSession, built: BuiltSystem, script_path: Optional[str]) -> GateResult:
        if not script_path:
            return GateResult(script=None)

        executable = built.path(script_path)
        log.info("[%s] Running self-check %s", session.host, executable)
        res = session.run(shq(executable), sudo=self.sudo, timeout=self.timeout)
        if not res.ok:
            raise GateFailure(
                f"Self-check {script_path} rejected {built.store_path} (rc={res.returncode})",
                output=res.output,
            )
        return GateResult(script=script_path, output=res.output)
