# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/flake.py

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError

log = logging.getLogger("deploy_flake")


@dataclass(frozen=True)
class Flake:
    """
    All the important bits about a local nix flake:
    where its source lives and the store path nix resolved it to.
    """
    dir: Path
    store_path: str

    @classmethod
    def from_path(cls, dir: str | Path, nix: str = "nix") -> "Flake":
        dir = Path(dir).expanduser().resolve()
        argv = [nix, "flake", "metadata", "--json", str(dir)]
        log.debug("$ %s", " ".join(argv))
        try:
            cp = subprocess.run(argv, check=False, text=True, capture_output=True)
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Could not execute {nix!r}", context="Is nix installed?") from exc

        if cp.returncode != 0:
            raise ConfigurationError(
                f"nix flake metadata failed for {dir} (rc={cp.returncode})",
                context=(cp.stderr or "").strip() or None,
            )
        try:
            store_path = json.loads(cp.stdout)["path"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ConfigurationError(f"Unexpected output from nix flake metadata for {dir}") from exc
        return cls(dir=dir, store_path=store_path)


def system_attr(source: str, profile: str) -> str:
    """Flake output attribute of the toplevel system derivation for *profile* in *source*."""
    return f'path:{source}#nixosConfigurations."{profile}".config.system.build.toplevel'
