# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/committer.py

from __future__ import annotations

import logging
from typing import Optional

from .errors import CommitError
from .interface import RemoteSession
from .models import ActivationMode, BuiltSystem
from ..utils.ssh_runner import shq

log = logging.getLogger("deploy_flake")

SYSTEM_PROFILE = "/nix/var/nix/profiles/system"


class BootCommitter:
    """
    Makes a tested system the default for the next boot.
    The running system is left alone; this is the one change that survives a reboot.
    """

    def __init__(self, *, profile: str = SYSTEM_PROFILE, timeout: Optional[float] = None):
        self.profile = profile
        self.timeout = timeout

    def commit(self, session: RemoteSession, built: BuiltSystem) -> None:
        res = session.run(
            f"nix-env -p {shq(self.profile)} --set {shq(built.store_path)}",
            sudo=True,
            timeout=self.timeout,
        )
        if not res.ok:
            raise CommitError(
                f"Could not set {built.store_path} as the current generation (rc={res.returncode})",
                output=res.output,
            )

        res = session.run(
            f"{shq(built.switch_script)} {ActivationMode.BOOT.value}",
            sudo=True,
            timeout=self.timeout,
        )
        if not res.ok:
            raise CommitError(
                f"Could not set {built.store_path} up as the boot system (rc={res.returncode})",
                output=res.output,
            )
        log.info("[%s] %s is now the boot default", session.host, built.store_path)
