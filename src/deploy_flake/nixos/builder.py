# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/builder.py

from __future__ import annotations

import json
import logging
from typing import Callable, Optional

from .errors import BuildError
from .flake import system_attr
from .interface import RemoteSession
from .models import BuiltSystem, Target
from ..utils.ssh_runner import shq

log = logging.getLogger("deploy_flake")

BUILD_ARGS = "env -C /tmp nix build -L --no-link"


class RemoteBuilder:
    """Builds a system configuration on the target itself."""

    def __init__(self, *, timeout: Optional[float] = None):
        self.timeout = timeout

    def resolve_profile(self, session: RemoteSession, target: Target) -> str:
        """
        Which nixosConfigurations entry to build: the one the target names,
        else the host's own hostname, else the first label of its address.
        """
        if target.profile:
            return target.profile

        res = session.run("hostname")
        name = res.stdout.strip() if res.ok else ""
        if name:
            return name

        log.warning("[%s] could not query hostname (rc=%s), deriving profile from address",
                    session.host, res.returncode)
        if target.host_label:
            return target.host_label
        raise BuildError(
            f"Could not determine a configuration name for {target.address}",
            context=f"Use {target.address} with an explicit profile: nixos://{target.address}/<profile>",
        )

    def build(
        self,
        session: RemoteSession,
        source: str,
        profile: str,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> BuiltSystem:
        attr = shq(system_attr(source, profile))

        # We run this twice: once to show progress and build output, and a
        # second time with --json to get the output path, which is fast
        # because the result is already built.
        res = session.run(f"{BUILD_ARGS} {attr}", timeout=self.timeout, on_output=on_output)
        if not res.ok:
            raise BuildError(
                f"Could not build configuration {profile!r} (rc={res.returncode})",
                context=f"Source: {source}",
                output=res.output,
            )

        res = session.run(f"{BUILD_ARGS} --json {attr}", timeout=self.timeout)
        if not res.ok:
            raise BuildError(
                f"Could not query the build result for {profile!r} (rc={res.returncode})",
                output=res.output,
            )

        try:
            results = json.loads(res.stdout)
        except ValueError as exc:
            raise BuildError("nix build --json returned unreadable output", output=res.stdout) from exc

        if not isinstance(results, list) or len(results) != 1:
            raise BuildError(f"Did not receive the required number of results: {results!r}")
        try:
            store_path = results[0]["outputs"]["out"]
        except (KeyError, TypeError) as exc:
            raise BuildError(f"Build result has no 'out' output: {results[0]!r}") from exc

        log.info("[%s] Built %s", session.host, store_path)
        return BuiltSystem(store_path=store_path, profile=profile)
