# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/transfer.py

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from typing import List, Optional

from ..config.models import SSHSettings
from .errors import TransferError
from .models import Target

log = logging.getLogger("deploy_flake")


class ClosureTransfer:
    """
    Copies a store closure to a target with `nix copy --to ssh://...`.
    - Testable by mocking subprocess.run.
    """

    def __init__(self, ssh: Optional[SSHSettings] = None, *, nix: str = "nix", timeout: Optional[float] = None):
        self.ssh = ssh or SSHSettings()
        self.nix = nix
        self.timeout = timeout

    def _ssh_opts(self, target: Target) -> List[str]:
        opts = ["-o", f"ConnectTimeout={int(self.ssh.connect_timeout)}"]
        port = target.port or self.ssh.port
        if port != 22:
            opts += ["-p", str(port)]
        if self.ssh.key_path:
            opts += ["-i", str(self.ssh.key_path.expanduser())]
        return opts

    def _env(self, target: Target) -> dict:
        env = dict(os.environ)
        extra = " ".join(shlex.quote(o) for o in self._ssh_opts(target))
        env["NIX_SSHOPTS"] = f"{env['NIX_SSHOPTS']} {extra}" if env.get("NIX_SSHOPTS") else extra
        return env

    def transfer(self, target: Target, closure: str) -> str:
        destination = target.with_defaults(user=self.ssh.user).destination
        argv = [self.nix, "copy", "--to", f"ssh://{destination}", closure]
        log.debug("[%s] $ %s", target.address, " ".join(argv))

        try:
            cp = subprocess.run(
                argv,
                check=False,
                text=True,
                capture_output=True,
                env=self._env(target),
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise TransferError(f"Could not execute {self.nix!r}", context="Is nix installed?") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransferError(
                f"Copying {closure} to {destination} timed out after {self.timeout}s",
            ) from exc

        if cp.returncode != 0:
            raise TransferError(
                f"Copying {closure} to {destination} failed (rc={cp.returncode})",
                context=(cp.stderr or "").strip() or None,
                output=f"{cp.stdout or ''}\n{cp.stderr or ''}".strip(),
            )
        log.info("[%s] Copied closure %s", target.address, closure)
        return closure
